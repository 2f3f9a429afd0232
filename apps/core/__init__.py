"""
Core infrastructure shared by the HRMS apps: logging, error handling,
request tracing, authentication glue and the DRF access policy.
"""
