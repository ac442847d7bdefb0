# ==== BUSINESS LOGIC PACKAGE ==== #

"""
Business logic package for domain rules and policies.

This package contains the lifecycle transition tables, NDR classification
rules, reason codes, refund math, the error taxonomy and the YAML resolution
workflows shared by the NDR, RTO and return engines.
"""
