from .capabilities import FetchResponse, NetworkError, ScriptContext
from .runtime import SandboxRuntime

__all__ = ["FetchResponse", "NetworkError", "SandboxRuntime", "ScriptContext"]
