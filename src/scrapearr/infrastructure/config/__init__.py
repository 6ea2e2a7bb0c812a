from __future__ import annotations

from .load import load_config
from .schema import (
    AggregatorConfig,
    AppConfig,
    EnvOverrides,
    PairingConfig,
    SandboxConfig,
)

__all__ = [
    "AggregatorConfig",
    "AppConfig",
    "EnvOverrides",
    "PairingConfig",
    "SandboxConfig",
    "load_config",
]
