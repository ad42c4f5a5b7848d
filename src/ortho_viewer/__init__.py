"""Ortho Viewer package."""

from ortho_viewer.asset_cache import CacheStats, EntryState, ResilientAssetCache
from ortho_viewer.config import (
    AppConfig,
    CacheConfig,
    CoefficientTable,
    DEFAULT_CONFIG,
    ImageManifest,
    RetryPolicy,
    load_coefficients,
    load_manifest,
)
from ortho_viewer.correlation import CorrelationEngine
from ortho_viewer.errors import (
    AssetError,
    ConfigError,
    FailureReason,
    PermanentLoadError,
    TransientLoadError,
)
from ortho_viewer.session import ViewerSession
from ortho_viewer.view_sync import SliceUpdate, ViewSyncState
from ortho_viewer.views import View

__all__ = [
    "__version__",
    "View",
    "AppConfig",
    "CacheConfig",
    "RetryPolicy",
    "DEFAULT_CONFIG",
    "CoefficientTable",
    "ImageManifest",
    "load_coefficients",
    "load_manifest",
    "CorrelationEngine",
    "ViewSyncState",
    "SliceUpdate",
    "ResilientAssetCache",
    "CacheStats",
    "EntryState",
    "ViewerSession",
    "ConfigError",
    "AssetError",
    "TransientLoadError",
    "PermanentLoadError",
    "FailureReason",
]

__version__ = "1.0.0"
