"""
Market Transaction Types

Defines the envelope for every state-mutating exchange operation. A
transaction names the operation, the calling account, a per-sender nonce
and the operation parameters; the state manager executes transactions one
at a time against the exchange core.

Transaction Types:
  - CREATE_LISTING:        List a token at a fixed price
  - CHANGE_LISTING_PRICE:  Reprice an active listing
  - REMOVE_LISTING:        Unlist a token (refunds all bids)
  - BID_ON_TOKEN:          Escrow a bid on a listed token
  - CANCEL_BID:            Withdraw an active bid
  - BUY_TOKEN:             Buy a listed token at its asking price
  - SELL_VIA_BIDDING:      Accept the maximum bid on a listed token
"""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict


# ---------------------------------------------------------------------------
# Market Operation Types
# ---------------------------------------------------------------------------

class MarketOpType(IntEnum):
    """All market operation types.  Values are part of the tx hash."""
    CREATE_LISTING = 1
    CHANGE_LISTING_PRICE = 2
    REMOVE_LISTING = 3
    BID_ON_TOKEN = 4
    CANCEL_BID = 5
    BUY_TOKEN = 6
    SELL_VIA_BIDDING = 7


REQUIRED_PARAMS: Dict[MarketOpType, tuple] = {
    MarketOpType.CREATE_LISTING: ("token_id", "price"),
    MarketOpType.CHANGE_LISTING_PRICE: ("token_id", "price"),
    MarketOpType.REMOVE_LISTING: ("token_id",),
    MarketOpType.BID_ON_TOKEN: ("token_id", "amount"),
    MarketOpType.CANCEL_BID: ("token_id",),
    MarketOpType.BUY_TOKEN: ("token_id",),
    MarketOpType.SELL_VIA_BIDDING: ("token_id",),
}


def _wire(value: Any) -> Any:
    """JSON form of a param: ints and strings pass through, anything else is str()."""
    return value if isinstance(value, (int, str)) else str(value)


@dataclass
class MarketTransaction:
    """
    One market operation submitted by *sender*.

    The hash covers op_type, sender, nonce and params. The timestamp and
    the execution outcome fields are excluded, so a resubmitted
    transaction keeps its identity.
    """
    op_type: MarketOpType
    sender: str
    nonce: int
    params: Dict[str, Any]
    timestamp: float = 0.0

    # filled in by MarketStateManager
    success: bool = False
    result: Dict[str, Any] = field(default_factory=dict)
    error: str = ""

    def __post_init__(self):
        self.op_type = MarketOpType(self.op_type)  # ValueError on unknown codes
        self.timestamp = self.timestamp or time.time()

    def _canonical_bytes(self) -> bytes:
        body = [int(self.op_type), self.sender, self.nonce,
                {k: _wire(v) for k, v in self.params.items()}]
        return json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")

    def tx_hash(self) -> str:
        """blake2b-256 of the canonical encoding, hex."""
        return hashlib.blake2b(self._canonical_bytes(), digest_size=32).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash(),
            "op_type": int(self.op_type),
            "sender": self.sender,
            "nonce": self.nonce,
            "params": {k: _wire(v) for k, v in self.params.items()},
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> MarketTransaction:
        return cls(
            op_type=MarketOpType(data["op_type"]),
            sender=data["sender"],
            nonce=int(data["nonce"]),
            params=dict(data["params"]),
            timestamp=data.get("timestamp", 0.0),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> MarketTransaction:
        return cls.from_dict(json.loads(raw))

    def validate_basic(self) -> bool:
        """
        Check the envelope without touching market state.

        Raises:
            ValueError: naming the first problem found
        """
        if not self.sender:
            raise ValueError("Transaction has no sender")
        if self.nonce < 0:
            raise ValueError(f"Nonce cannot be negative, got {self.nonce}")
        required = REQUIRED_PARAMS.get(self.op_type)
        if required is None:
            raise ValueError(f"Unsupported market op {self.op_type!r}")

        missing = [key for key in required if key not in self.params]
        if missing:
            raise ValueError(f"{self.op_type.name} requires {', '.join(missing)}")

        token_id = self.params["token_id"]
        if type(token_id) is not int or token_id < 0:
            raise ValueError(f"token_id must be a non-negative integer, got {token_id!r}")
        return True

    def __repr__(self) -> str:
        return (f"MarketTransaction({self.op_type.name} from {self.sender[:16]}, "
                f"nonce={self.nonce}, {self.tx_hash()[:12]})")
