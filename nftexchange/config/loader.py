"""
NFT Exchange TOML Configuration Loader

Loads all sections of config.toml with environment variable overrides.
Each section is a dataclass with from_dict + apply_env; MarketConfig adds
from_file.

Environment variable mapping:
    [market] exchange_address → NFTX_EXCHANGE_ADDRESS
    [ledger] symbol           → NFTX_PAYMENT_TOKEN_SYMBOL
    [ledger] faucet_amount    → NFTX_FAUCET_AMOUNT
    [registry] base_uri       → NFTX_ASSET_BASE_URI
    [logging] level           → NFTX_LOG_LEVEL
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import tomllib as tomli  # Python 3.11+
except ImportError:
    import tomli  # type: ignore[no-redef]

from .. import constants
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _decimal(value: Any, key: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ConfigurationError(f"{key} must be a decimal number, got {value!r}") from exc


# ---------------------------------------------------------------------------
# Subsection dataclasses — mirror every [section] of config.example.toml
# ---------------------------------------------------------------------------


@dataclass
class MarketSectionConfig:
    """[market] section."""
    exchange_address: str = str(constants.NFTX_EXCHANGE_ADDRESS)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarketSectionConfig":
        return cls(
            exchange_address=data.get("exchange_address", str(constants.NFTX_EXCHANGE_ADDRESS)),
        )

    def apply_env(self) -> None:
        """Override from environment variables."""
        if v := os.environ.get("NFTX_EXCHANGE_ADDRESS"):
            self.exchange_address = v


@dataclass
class LedgerConfig:
    """[ledger] section — the payment token."""
    name: str = str(constants.NFTX_PAYMENT_TOKEN_NAME)
    symbol: str = str(constants.NFTX_PAYMENT_TOKEN_SYMBOL)
    decimals: int = constants.PAYMENT_TOKEN_DEFAULT_DECIMALS
    faucet_amount: Decimal = constants.PAYMENT_TOKEN_FAUCET_AMOUNT

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerConfig":
        return cls(
            name=data.get("name", str(constants.NFTX_PAYMENT_TOKEN_NAME)),
            symbol=data.get("symbol", str(constants.NFTX_PAYMENT_TOKEN_SYMBOL)),
            decimals=data.get("decimals", constants.PAYMENT_TOKEN_DEFAULT_DECIMALS),
            faucet_amount=_decimal(
                data.get("faucet_amount", constants.PAYMENT_TOKEN_FAUCET_AMOUNT),
                "ledger.faucet_amount",
            ),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("NFTX_PAYMENT_TOKEN_NAME"):
            self.name = v
        if v := os.environ.get("NFTX_PAYMENT_TOKEN_SYMBOL"):
            self.symbol = v
        if v := os.environ.get("NFTX_FAUCET_AMOUNT"):
            self.faucet_amount = _decimal(v, "NFTX_FAUCET_AMOUNT")


@dataclass
class RegistryConfig:
    """[registry] section — the asset collection."""
    name: str = str(constants.NFTX_ASSET_NAME)
    symbol: str = str(constants.NFTX_ASSET_SYMBOL)
    base_uri: str = str(constants.NFTX_ASSET_BASE_URI)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RegistryConfig":
        return cls(
            name=data.get("name", str(constants.NFTX_ASSET_NAME)),
            symbol=data.get("symbol", str(constants.NFTX_ASSET_SYMBOL)),
            base_uri=data.get("base_uri", str(constants.NFTX_ASSET_BASE_URI)),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("NFTX_ASSET_BASE_URI"):
            self.base_uri = v


@dataclass
class LoggingConfig:
    """[logging] section."""
    level: str = str(constants.LOG_LEVEL)
    file_output: bool = bool(constants.LOG_FILE_OUTPUT)
    file_path: str = ""      # empty: logs/nftexchange.log

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoggingConfig":
        return cls(
            level=data.get("level", str(constants.LOG_LEVEL)),
            file_output=data.get("file_output", bool(constants.LOG_FILE_OUTPUT)),
            file_path=data.get("file_path", ""),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("NFTX_LOG_LEVEL"):
            self.level = v


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

@dataclass
class MarketConfig:
    """Complete exchange configuration."""
    market: MarketSectionConfig = field(default_factory=MarketSectionConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarketConfig":
        return cls(
            market=MarketSectionConfig.from_dict(data.get("market", {})),
            ledger=LedgerConfig.from_dict(data.get("ledger", {})),
            registry=RegistryConfig.from_dict(data.get("registry", {})),
            logging=LoggingConfig.from_dict(data.get("logging", {})),
        )

    @classmethod
    def from_file(cls, config_path: str) -> "MarketConfig":
        """
        Load configuration from a TOML file.

        A missing file yields defaults (with env overrides applied).
        """
        path = Path(config_path)
        if not path.exists():
            logger.warning("Config file not found: %s — using defaults", config_path)
            cfg = cls()
            cfg.apply_env()
            cfg.validate()
            return cfg

        try:
            with open(path, "rb") as f:
                raw = tomli.load(f)
        except tomli.TOMLDecodeError as exc:
            raise ConfigurationError(f"Invalid TOML in {config_path}: {exc}") from exc

        cfg = cls.from_dict(raw)
        cfg.apply_env()
        cfg.validate()
        return cfg

    # --- env overrides ----------------------------------------------------

    def apply_env(self) -> None:
        self.market.apply_env()
        self.ledger.apply_env()
        self.registry.apply_env()
        self.logging.apply_env()

    def validate(self) -> None:
        """Raise ConfigurationError on values the exchange cannot run with."""
        if not self.market.exchange_address:
            raise ConfigurationError("market.exchange_address must not be empty")
        if not self.ledger.symbol:
            raise ConfigurationError("ledger.symbol must not be empty")
        if not 0 <= int(self.ledger.decimals) <= 18:
            raise ConfigurationError(f"ledger.decimals must be 0-18, got {self.ledger.decimals}")
        if self.ledger.faucet_amount <= 0:
            raise ConfigurationError("ledger.faucet_amount must be positive")
        if not self.registry.symbol:
            raise ConfigurationError("registry.symbol must not be empty")
        if self.logging.level.upper() not in VALID_LOG_LEVELS:
            raise ConfigurationError(f"logging.level must be one of {VALID_LOG_LEVELS}")


def load_config(path: Optional[str] = None) -> MarketConfig:
    """
    Load exchange configuration.

    Resolution order:
        1. Explicit *path* argument
        2. NFTX_CONFIG env var
        3. ./config.toml in current directory
        4. Defaults (with env overrides)
    """
    if path is None:
        path = os.environ.get("NFTX_CONFIG", "config.toml")

    return MarketConfig.from_file(path)
