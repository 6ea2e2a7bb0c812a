from .repository_management import RepositoryManager, SyncReport
from .repository_pairing import PairingCoordinator
from .stream_aggregation import StreamAggregator

__all__ = ["PairingCoordinator", "RepositoryManager", "StreamAggregator", "SyncReport"]
