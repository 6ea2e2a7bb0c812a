from .enrichment import Enrichment, EnrichmentEntry, EnrichmentKey
from .pairing import ChangeDiff, ChangeState, PendingChange, RepositoryInfo
from .plugins import (
    CapabilityManifest,
    PluginStoreSnapshot,
    RepositoryDescriptor,
    ScraperDescriptor,
    canonicalize_url,
)
from .streams import (
    AggregationOutcome,
    AggregationQuery,
    ContentType,
    SkipReason,
    SourceOutcome,
    SourceStatus,
    StreamQuality,
    StreamResult,
)

__all__ = [
    "AggregationOutcome",
    "AggregationQuery",
    "CapabilityManifest",
    "ChangeDiff",
    "ChangeState",
    "ContentType",
    "Enrichment",
    "EnrichmentEntry",
    "EnrichmentKey",
    "PendingChange",
    "PluginStoreSnapshot",
    "RepositoryDescriptor",
    "RepositoryInfo",
    "ScraperDescriptor",
    "SkipReason",
    "SourceOutcome",
    "SourceStatus",
    "StreamQuality",
    "StreamResult",
    "canonicalize_url",
]
