"""
NFT Exchange Configuration

Loads all sections of config.toml at startup.
Environment variables override TOML values.
"""

from .loader import (
    MarketConfig,
    MarketSectionConfig,
    LedgerConfig,
    RegistryConfig,
    LoggingConfig,
    load_config,
)

__all__ = [
    "MarketConfig",
    "MarketSectionConfig",
    "LedgerConfig",
    "RegistryConfig",
    "LoggingConfig",
    "load_config",
]
