"""
Asset Registry — non-fungible token ownership

ERC-721–style registry of uniquely identified assets:
  - Sequential mint (ids start at FIRST_TOKEN_ID)
  - Owner lookup, per-owner balance, token URI
  - Single-token approval and operator ("approval for all") authorization
  - Authorized third-party transfer (transferFrom)
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from ..logger import get_logger
from ..constants import FIRST_TOKEN_ID

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  EXCEPTIONS
# ══════════════════════════════════════════════════════════════════════

class RegistryError(Exception):
    """Base exception for asset registry operations."""


class NonexistentTokenError(RegistryError):
    """Raised when a token id has never been minted."""


class NotOwnerError(RegistryError):
    """Raised when the declared owner does not own the token."""


class NotApprovedError(RegistryError):
    """Raised when the caller is neither owner, approved, nor operator."""


# ══════════════════════════════════════════════════════════════════════
#  EVENTS
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AssetTransferEvent:
    """Emitted on mint and on every ownership change."""
    collection: str
    sender: str
    recipient: str
    token_id: int
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "Transfer",
            "collection": self.collection,
            "from": self.sender,
            "to": self.recipient,
            "tokenId": self.token_id,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class AssetApprovalEvent:
    """Emitted when a single-token approval is set or cleared."""
    collection: str
    owner: str
    approved: str
    token_id: int
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "Approval",
            "collection": self.collection,
            "owner": self.owner,
            "approved": self.approved,
            "tokenId": self.token_id,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ApprovalForAllEvent:
    """Emitted when an operator is granted or revoked."""
    collection: str
    owner: str
    operator: str
    approved: bool
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "ApprovalForAll",
            "collection": self.collection,
            "owner": self.owner,
            "operator": self.operator,
            "approved": self.approved,
            "timestamp": self.timestamp,
        }


ZERO_ADDRESS = ""


# ══════════════════════════════════════════════════════════════════════
#  ASSET REGISTRY
# ══════════════════════════════════════════════════════════════════════

class AssetRegistry:
    """
    Non-fungible asset registry.

    Mirrors ERC-721 semantics:
        - owner_of(token_id) → address
        - balance_of(address) → int
        - approve(caller, spender, token_id)
        - set_approval_for_all(owner, operator, approved)
        - transfer_from(spender, sender, recipient, token_id)
        - token_uri(token_id) → str
    """

    def __init__(self, name: str, symbol: str, base_uri: str = ""):
        if not name:
            raise RegistryError("Collection name cannot be empty")
        if not symbol:
            raise RegistryError("Collection symbol cannot be empty")

        self.name = name
        self.symbol = symbol
        self.base_uri = base_uri

        self._owners: Dict[int, str] = {}
        self._balances: Dict[str, int] = {}
        self._token_approvals: Dict[int, str] = {}
        self._operators: Set[Tuple[str, str]] = set()  # (owner, operator)
        self._next_token_id = FIRST_TOKEN_ID

        self._events: List[Any] = []
        logger.info(f"Asset registry deployed: {symbol} ({name})")

    # ── Read-only views ───────────────────────────────────────────────

    def exists(self, token_id: int) -> bool:
        return token_id in self._owners

    def owner_of(self, token_id: int) -> str:
        owner = self._owners.get(token_id)
        if owner is None:
            raise NonexistentTokenError(f"Token #{token_id} does not exist")
        return owner

    def balance_of(self, address: str) -> int:
        return self._balances.get(address, 0)

    def get_approved(self, token_id: int) -> Optional[str]:
        self.owner_of(token_id)
        return self._token_approvals.get(token_id)

    def is_approved_for_all(self, owner: str, operator: str) -> bool:
        return (owner, operator) in self._operators

    def is_approved_or_owner(self, spender: str, token_id: int) -> bool:
        owner = self.owner_of(token_id)
        return (
            spender == owner
            or self._token_approvals.get(token_id) == spender
            or self.is_approved_for_all(owner, spender)
        )

    def token_uri(self, token_id: int) -> str:
        self.owner_of(token_id)
        if not self.base_uri:
            return ""
        return f"{self.base_uri}{token_id}"

    @property
    def total_minted(self) -> int:
        return self._next_token_id - FIRST_TOKEN_ID

    @property
    def events(self) -> List[Any]:
        return list(self._events)

    # ── Mint ──────────────────────────────────────────────────────────

    async def mint(self, to: str) -> int:
        """Mint the next sequential token id to *to*."""
        if not to:
            raise RegistryError("Cannot mint to the zero address")

        token_id = self._next_token_id
        self._next_token_id += 1
        self._owners[token_id] = to
        self._balances[to] = self.balance_of(to) + 1

        self._events.append(AssetTransferEvent(
            collection=self.symbol,
            sender=ZERO_ADDRESS,
            recipient=to,
            token_id=token_id,
        ))
        logger.info(f"Mint: {self.symbol} #{token_id} → {to}")
        return token_id

    # ── Authorization ─────────────────────────────────────────────────

    async def approve(self, caller: str, spender: str, token_id: int) -> AssetApprovalEvent:
        """
        Approve *spender* for a single token. An empty spender clears it.

        Only the owner or one of its operators may approve.
        """
        owner = self.owner_of(token_id)
        if spender == owner:
            raise RegistryError("Approval to current owner")
        if caller != owner and not self.is_approved_for_all(owner, caller):
            raise NotApprovedError(
                f"{caller} is not owner nor operator of #{token_id}"
            )

        if spender:
            self._token_approvals[token_id] = spender
        else:
            self._token_approvals.pop(token_id, None)

        event = AssetApprovalEvent(
            collection=self.symbol,
            owner=owner,
            approved=spender,
            token_id=token_id,
        )
        self._events.append(event)
        logger.debug(f"Approve: {owner} → {spender or '<none>'} for #{token_id}")
        return event

    async def set_approval_for_all(
        self,
        owner: str,
        operator: str,
        approved: bool,
    ) -> ApprovalForAllEvent:
        """Grant or revoke *operator* over every token *owner* holds."""
        if owner == operator:
            raise RegistryError("Cannot approve self as operator")

        if approved:
            self._operators.add((owner, operator))
        else:
            self._operators.discard((owner, operator))

        event = ApprovalForAllEvent(
            collection=self.symbol,
            owner=owner,
            operator=operator,
            approved=approved,
        )
        self._events.append(event)
        logger.debug(f"ApprovalForAll: {owner} → {operator} approved={approved}")
        return event

    # ── Transfer ──────────────────────────────────────────────────────

    async def transfer_from(
        self,
        spender: str,
        sender: str,
        recipient: str,
        token_id: int,
    ) -> AssetTransferEvent:
        """
        Move *token_id* from *sender* to *recipient* on behalf of *spender*.

        Fails without side effects when *sender* no longer owns the token or
        *spender* has lost its authorization. Clears the single-token
        approval on success.
        """
        owner = self.owner_of(token_id)
        if owner != sender:
            raise NotOwnerError(f"#{token_id} is owned by {owner}, not {sender}")
        if not recipient:
            raise RegistryError("Cannot transfer to the zero address")
        if not self.is_approved_or_owner(spender, token_id):
            raise NotApprovedError(
                f"{spender} is not authorized to transfer #{token_id}"
            )

        self._token_approvals.pop(token_id, None)
        self._balances[sender] = self.balance_of(sender) - 1
        self._balances[recipient] = self.balance_of(recipient) + 1
        self._owners[token_id] = recipient

        event = AssetTransferEvent(
            collection=self.symbol,
            sender=sender,
            recipient=recipient,
            token_id=token_id,
        )
        self._events.append(event)
        logger.debug(f"transferFrom: spender={spender} #{token_id} {sender} → {recipient}")
        return event

    # ── Serialization ─────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "symbol": self.symbol,
            "baseUri": self.base_uri,
            "totalMinted": self.total_minted,
            "holders": len([b for b in self._balances.values() if b > 0]),
        }

    def __repr__(self) -> str:
        return f"<AssetRegistry {self.symbol} minted={self.total_minted}>"
