from .cache import CachePort
from .enrichment import EnrichmentSourcePort
from .network import LanAddressProvider, QrRendererPort
from .plugin_state import PluginStateRepository
from .sandbox import SandboxPort

__all__ = [
    "CachePort",
    "EnrichmentSourcePort",
    "LanAddressProvider",
    "PluginStateRepository",
    "QrRendererPort",
    "SandboxPort",
]
