# ==== SERVICES PACKAGE ==== #

"""
Services package for the reverse-logistics workflow engine.

This package contains the NDR detector, classifier and resolver, the RTO,
disposition and return order engines, the SLA deadline monitor and the
analytics queries backing the stats endpoints.
"""
