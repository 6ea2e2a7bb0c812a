from .app import create_pairing_app
from .server import PairingServer

__all__ = ["PairingServer", "create_pairing_app"]
