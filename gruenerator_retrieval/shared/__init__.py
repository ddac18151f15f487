# Shared utilities package
from .config import (
    RetrievalConfig,
    Settings,
    get_config,
    get_settings,
    init_config,
    reload_config,
)

__all__ = [
    "RetrievalConfig",
    "Settings",
    "get_config",
    "get_settings",
    "init_config",
    "reload_config",
]
