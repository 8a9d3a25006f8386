"""
Service modules: CRM client, local store, identity resolution and sync
"""

from .ghl_client import GoHighLevelClient, idempotency_key
from .rate_limiter import TokenBucket
from .store import SyncStore
from .identity import IdentityResolver, Resolution, ResolutionStatus
from .operations import SyncOperations, compute_opportunity_value_cents
from .orchestrator import SyncOrchestrator

__all__ = [
    "GoHighLevelClient",
    "idempotency_key",
    "TokenBucket",
    "SyncStore",
    "IdentityResolver",
    "Resolution",
    "ResolutionStatus",
    "SyncOperations",
    "compute_opportunity_value_cents",
    "SyncOrchestrator",
]
