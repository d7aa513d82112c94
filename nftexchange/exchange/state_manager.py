"""
Market State Manager

Owns one exchange together with its asset registry and payment ledger and
executes MarketTransactions against it.

Responsibilities:
  - Builds the registry, ledger and exchange from MarketConfig
  - Processes MarketTransactions one at a time (nonce-checked)
  - Converts exchange errors into failed results with a stable error type
  - Computes a deterministic state root over listings and bids
  - Provides a read-only query interface

All mutations go through process_transaction(); a failed transaction
leaves exchange, registry and ledger state untouched and does not consume
the sender's nonce.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import MarketConfig
from ..exceptions import MarketException
from ..logger import LogManager, get_logger
from ..tokens.fungible import PaymentToken
from ..tokens.nft import AssetRegistry
from .marketplace import NFTExchange
from .transactions import MarketOpType, MarketTransaction

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Transaction execution result
# ---------------------------------------------------------------------------

class MarketExecResult:
    """Result of executing a single market transaction."""

    __slots__ = ("success", "data", "error", "error_type", "logs")

    def __init__(
        self,
        success: bool = True,
        data: Optional[Dict[str, Any]] = None,
        error: str = "",
        error_type: str = "",
        logs: Optional[List[Dict[str, Any]]] = None,
    ):
        self.success = success
        self.data = data or {}
        self.error = error
        self.error_type = error_type
        self.logs = logs or []

    def __repr__(self) -> str:
        if self.success:
            return f"MarketExecResult(success=True, data={self.data})"
        return f"MarketExecResult(success=False, {self.error_type}: {self.error})"


# ---------------------------------------------------------------------------
# Market State Manager
# ---------------------------------------------------------------------------

class MarketStateManager:
    """
    Single entry point for market state mutations.

    Usage:

        mgr = MarketStateManager.from_config(load_config())
        result = await mgr.process_transaction(tx)
        root = mgr.compute_state_root()
    """

    instance: Optional[MarketStateManager] = None

    def __init__(
        self,
        registry: AssetRegistry,
        ledger: PaymentToken,
        exchange_address: str,
    ) -> None:
        self.registry = registry
        self.ledger = ledger
        self.exchange = NFTExchange(registry, ledger, exchange_address)

        # Per-sender nonces for replay protection
        self._nonces: Dict[str, int] = {}

        self._processed: int = 0
        self._failed: int = 0

    @classmethod
    def from_config(cls, cfg: MarketConfig) -> MarketStateManager:
        """Deploy a registry, a payment token and an exchange from *cfg*."""
        LogManager().reconfigure(
            log_level=cfg.logging.level,
            file_output=bool(cfg.logging.file_output),
            log_file=Path(cfg.logging.file_path) if cfg.logging.file_path else None,
        )
        registry = AssetRegistry(
            name=cfg.registry.name,
            symbol=cfg.registry.symbol,
            base_uri=cfg.registry.base_uri,
        )
        ledger = PaymentToken(
            name=cfg.ledger.name,
            symbol=cfg.ledger.symbol,
            decimals=int(cfg.ledger.decimals),
            faucet_amount=cfg.ledger.faucet_amount,
        )
        mgr = cls(registry, ledger, cfg.market.exchange_address)
        logger.info(
            "Market state manager initialized: %s/%s at %s",
            registry.symbol, ledger.symbol, cfg.market.exchange_address,
        )
        return mgr

    @classmethod
    def get_instance(cls, cfg: Optional[MarketConfig] = None) -> MarketStateManager:
        """Get or create the singleton instance."""
        if cls.instance is None:
            cls.instance = cls.from_config(cfg or MarketConfig())
        return cls.instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton (for testing)."""
        cls.instance = None

    # =====================================================================
    #  Transaction processing
    # =====================================================================

    async def process_transaction(self, tx: MarketTransaction) -> MarketExecResult:
        """
        Execute a single market transaction.

        Returns:
            MarketExecResult with success/failure, result data and the
            exchange events the transaction emitted
        """
        # 1. Structural validation
        try:
            tx.validate_basic()
        except ValueError as e:
            return self._record(tx, MarketExecResult(
                success=False, error=str(e), error_type="InvalidTransaction",
            ))

        # 2. Nonce check (replay protection)
        expected_nonce = self._nonces.get(tx.sender, 0)
        if tx.nonce != expected_nonce:
            return self._record(tx, MarketExecResult(
                success=False,
                error=f"Invalid nonce: expected {expected_nonce}, got {tx.nonce}",
                error_type="InvalidNonce",
            ))

        # 3. Execute
        event_mark = len(self.exchange.events)
        try:
            data = await self._execute_op(tx)
        except MarketException as e:
            logger.info("Market op %s by %s rejected: %s", tx.op_type.name, tx.sender, e)
            return self._record(tx, MarketExecResult(
                success=False, error=str(e), error_type=type(e).__name__,
            ))

        # 4. Consume nonce on success
        self._nonces[tx.sender] = tx.nonce + 1
        logs = [ev.to_dict() for ev in self.exchange.events[event_mark:]]
        return self._record(tx, MarketExecResult(success=True, data=data, logs=logs))

    def _record(self, tx: MarketTransaction, result: MarketExecResult) -> MarketExecResult:
        tx.success = result.success
        tx.result = result.data
        tx.error = result.error
        self._processed += 1
        if not result.success:
            self._failed += 1
        return result

    async def _execute_op(self, tx: MarketTransaction) -> Dict[str, Any]:
        """Dispatch to the exchange operation."""
        p = tx.params
        ex = self.exchange
        token_id = p["token_id"]
        op = tx.op_type

        if op == MarketOpType.CREATE_LISTING:
            listing = await ex.create_listing(tx.sender, token_id, p["price"])
            return listing.to_dict()
        if op == MarketOpType.CHANGE_LISTING_PRICE:
            listing = await ex.change_listing_price(tx.sender, token_id, p["price"])
            return listing.to_dict()
        if op == MarketOpType.REMOVE_LISTING:
            await ex.remove_listing(tx.sender, token_id)
            return {"tokenId": token_id, "status": "unlisted"}
        if op == MarketOpType.BID_ON_TOKEN:
            bid = await ex.bid_on_token(tx.sender, token_id, p["amount"])
            return bid.to_dict()
        if op == MarketOpType.CANCEL_BID:
            bid = await ex.cancel_bid(tx.sender, token_id)
            return {"tokenId": token_id, "refunded": str(bid.amount)}
        if op == MarketOpType.BUY_TOKEN:
            sale = await ex.buy_token(tx.sender, token_id)
            return sale.to_dict()
        if op == MarketOpType.SELL_VIA_BIDDING:
            sale = await ex.sell_via_bidding(tx.sender, token_id)
            return sale.to_dict()
        raise ValueError(f"Unknown op type: {op}")

    # =====================================================================
    #  State root computation
    # =====================================================================

    def compute_state_root(self) -> str:
        """
        Deterministic hash of listing and bid state.

        Listings are hashed in token-id order; bids within a token keep
        insertion order, since that order decides bid-acceptance ties.

        Returns:
            64-char hex string (blake2b-256)
        """
        hasher = hashlib.blake2b(digest_size=32)

        listings = sorted(self.exchange.get_all_listings(), key=lambda l: l.token_id)
        for listing in listings:
            hasher.update(
                f"L:{listing.token_id}:{listing.seller}:{listing.price}".encode()
            )
            for bid in self.exchange.get_all_bids(listing.token_id):
                hasher.update(f"B:{bid.token_id}:{bid.bidder}:{bid.amount}".encode())

        for addr in sorted(self._nonces):
            hasher.update(f"N:{addr}:{self._nonces[addr]}".encode())

        return hasher.hexdigest()

    # =====================================================================
    #  Query interface (read-only)
    # =====================================================================

    def get_nonce(self, address: str) -> int:
        return self._nonces.get(address, 0)

    def get_stats(self) -> Dict[str, Any]:
        """Market-wide statistics."""
        return {
            "listings": self.exchange.total_listings(),
            "total_escrow": str(self.exchange.total_escrow),
            "total_sales": self.exchange.total_sales,
            "total_volume": str(self.exchange.total_volume),
            "processed_txs": self._processed,
            "failed_txs": self._failed,
            "assets_minted": self.registry.total_minted,
            "payment_supply": str(self.ledger.total_supply),
        }
