# ==== ROUTES PACKAGE ==== #

"""
Routes package for API endpoints.

This package contains the FastAPI route modules for health probes, NDR
tracking and resolution, RTO handling with QC and disposition, and
customer returns.
"""
