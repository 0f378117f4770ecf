"""Home Server Gallery: a file-backed registry of home services with health checks."""

__version__ = '1.0.0'
