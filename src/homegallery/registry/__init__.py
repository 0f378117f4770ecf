"""
File-backed Service Registry

This package provides:
1. JsonServiceStore — lock-guarded CRUD over a single JSON document
2. ServiceRecord — one tracked service, including legacy address/port fields
3. ServiceStatus — healthy / unhealthy / unknown
"""

from .store import (
    JsonServiceStore,
    ServiceRecord,
    ServiceStatus,
)

__all__ = [
    'JsonServiceStore',
    'ServiceRecord',
    'ServiceStatus',
]
