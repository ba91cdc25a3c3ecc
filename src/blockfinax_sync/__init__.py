"""
BlockFinaX sync package.

Event synchronization, incremental caching and gas sponsorship quotas for the
BlockFinaX wallet's trade finance and treasury data.
"""

from .config import NetworkContext, SyncConfig
from .coordinator import IncrementalSyncCoordinator, SyncError
from .engine import SyncEngine
from .fetcher import FetchError, HistoricalEventFetcher
from .models import Decision, EventRecord, PaymentMethod, PreloadStatus, SyncResult
from .preload import BackgroundPreloadOrchestrator
from .quota import GasSponsorshipQuotaEngine
from .session import SessionRegistry

__all__ = [
    "BackgroundPreloadOrchestrator",
    "Decision",
    "EventRecord",
    "FetchError",
    "GasSponsorshipQuotaEngine",
    "HistoricalEventFetcher",
    "IncrementalSyncCoordinator",
    "NetworkContext",
    "PaymentMethod",
    "PreloadStatus",
    "SessionRegistry",
    "SyncConfig",
    "SyncEngine",
    "SyncError",
    "SyncResult",
]
__version__ = "0.1.0"
