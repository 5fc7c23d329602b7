"""Tenant (U) resolution and the host cache built on it."""

from .cache import OrgCache, OrgCacheElement, host_of
from .worker import OrgWorker

__all__ = [
    "host_of",
    "OrgCache",
    "OrgCacheElement",
    "OrgWorker",
]
