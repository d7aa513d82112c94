"""
NFT Exchange Core

Fixed-price listings with open bidding, settled atomically against a
fungible payment token:
  - Listing lifecycle — create, reprice, remove
  - Bid lifecycle — escrowed bids, one active bid per (token, bidder)
  - Settlement — direct purchase at the asking price, or acceptance of
    the maximum bid (earliest bid wins ties)
  - Read-only query surface

The exchange owns listing and bid metadata only. Asset ownership lives in
the asset registry and balances live in the payment ledger; the exchange
moves both through their third-party transfer calls and holds bid escrow
under its own ledger address.

Concurrency:
  - Every mutating call runs under one asyncio.Lock, so an operation and
    all of its awaited collaborator calls complete before the next begins
  - Exchange bookkeeping for a collaborator move is written only after
    that move succeeds
  - A failure before an operation commits restores the exchange's
    listings and bids, returns funds the call pulled into escrow, then
    re-raises. Ledger and registry state is only ever changed through
    their own calls, never overwritten
  - Settlement moves the asset before paying anyone out, so a rejected
    delivery is undone by returning escrow. A delivered sale is final;
    payouts after it come from the exchange's own escrow balance
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from ..constants import ZERO
from ..exceptions import (
    CollaboratorFailureError,
    InsufficientFundsError,
    InvalidArgumentError,
    NotFoundError,
    UnauthorizedError,
)
from ..logger import get_logger
from ..tokens.fungible import (
    InsufficientAllowanceError,
    InsufficientBalanceError,
    TokenError,
)
from ..tokens.nft import NonexistentTokenError, RegistryError
from .collaborators import AssetRegistryLike, BalanceLedger

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass
class Listing:
    """An asset offered for sale at a fixed price."""
    token_id: int
    seller: str
    price: Decimal
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokenId": self.token_id,
            "seller": self.seller,
            "price": str(self.price),
            "createdAt": self.created_at,
        }


@dataclass(frozen=True)
class Bid:
    """A standing, escrowed offer on a listed asset."""
    token_id: int
    bidder: str
    amount: Decimal
    placed_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokenId": self.token_id,
            "bidder": self.bidder,
            "amount": str(self.amount),
            "placedAt": self.placed_at,
        }


class SaleKind(str, Enum):
    DIRECT = "direct"   # buy_token at the asking price
    BID = "bid"         # sell_via_bidding to the maximum bid


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ListingCreatedEvent:
    seller: str
    token_id: int
    price: Decimal
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "ListingCreated",
            "seller": self.seller,
            "tokenId": self.token_id,
            "price": str(self.price),
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ListingPriceChangedEvent:
    seller: str
    token_id: int
    price: Decimal
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "ListingPriceChanged",
            "seller": self.seller,
            "tokenId": self.token_id,
            "price": str(self.price),
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ListingRemovedEvent:
    seller: str
    token_id: int
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "ListingRemoved",
            "seller": self.seller,
            "tokenId": self.token_id,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class BidPlacedEvent:
    bidder: str
    token_id: int
    amount: Decimal
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "BidPlaced",
            "bidder": self.bidder,
            "tokenId": self.token_id,
            "amount": str(self.amount),
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class BidCancelledEvent:
    """Emitted when a bid is withdrawn by its bidder or refunded on settlement."""
    bidder: str
    token_id: int
    amount: Decimal
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "BidCancelled",
            "bidder": self.bidder,
            "tokenId": self.token_id,
            "amount": str(self.amount),
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class SaleCompletedEvent:
    kind: SaleKind
    seller: str
    buyer: str
    token_id: int
    price: Decimal
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "SaleCompleted",
            "kind": self.kind.value,
            "seller": self.seller,
            "buyer": self.buyer,
            "tokenId": self.token_id,
            "price": str(self.price),
            "timestamp": self.timestamp,
        }


def _to_amount(value: Any, what: str, decimals: int) -> Decimal:
    """Coerce *value* to a strictly positive Decimal with at most *decimals* places."""
    if isinstance(value, bool):
        raise InvalidArgumentError(f"{what} must be a number, got {value!r}")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidArgumentError(f"{what} must be a number, got {value!r}") from exc
    if not amount.is_finite() or amount <= 0:
        raise InvalidArgumentError(f"{what} must be positive, got {value}")
    if amount.normalize().as_tuple().exponent < -decimals:
        raise InvalidArgumentError(f"{what} {value} has more than {decimals} decimal places")
    return amount


# ---------------------------------------------------------------------------
# Exchange
# ---------------------------------------------------------------------------

class NFTExchange:
    """
    Listing, bidding and settlement engine for one asset registry and one
    payment token.

    All mutating methods take the calling account as their first argument
    and are coroutines. Before listing, a seller must authorize the
    exchange address in the registry (approve or set_approval_for_all);
    before bidding or buying, an account must approve the exchange address
    in the ledger for at least the amount it will pay.
    """

    def __init__(
        self,
        registry: AssetRegistryLike,
        ledger: BalanceLedger,
        address: str,
    ) -> None:
        if not address:
            raise InvalidArgumentError("Exchange must have an address")

        self.registry = registry
        self.ledger = ledger
        self.address = address

        # --- Exchange state ---
        self._listings: Dict[int, Listing] = {}           # creation order
        self._bids: Dict[int, Dict[str, Bid]] = {}         # token → bidder → bid, insertion order
        self._events: List[Any] = []

        self._lock = asyncio.Lock()
        self._returns: List[Tuple[str, Decimal]] = []      # escrow pulls to undo on failure
        self._committed = False

        # --- Stats ---
        self.total_sales: int = 0
        self.total_volume: Decimal = ZERO

    # -- Atomic section -----------------------------------------------------

    @asynccontextmanager
    async def _atomic(self, op: str) -> AsyncIterator[None]:
        """
        Serialize *op* and undo it if it raises.

        Only the exchange's own state is put back: listings, bids, events
        and stats are restored from a snapshot, and funds the call pulled
        into escrow are returned to their payers. Ledger and registry
        state is never overwritten, so moves other callers make while
        *op* is suspended in a collaborator call survive the rollback.

        Once *op* has passed _commit() nothing is undone; the bookkeeping
        already written matches the moves that completed, and any bid
        left unrefunded stays open for its bidder to cancel.
        """
        async with self._lock:
            snapshot = self._take_snapshot()
            self._returns = []
            self._committed = False
            try:
                yield
            except BaseException as exc:
                # includes cancellation while awaiting a collaborator
                if self._committed:
                    logger.error(
                        f"{op} interrupted after commit: {type(exc).__name__}: {exc}; "
                        f"completed moves are kept"
                    )
                    raise
                await self._return_collected()
                self._restore_snapshot(snapshot)
                logger.warning(f"{op} rolled back: {type(exc).__name__}: {exc}")
                raise
            finally:
                self._returns = []
                self._committed = False

    def _commit(self) -> None:
        """Mark the running operation final: later failures keep earlier moves."""
        self._returns = []
        self._committed = True

    def _take_snapshot(self) -> Dict[str, Any]:
        return {
            "listings": {t: dataclasses.replace(l) for t, l in self._listings.items()},
            "bids": {t: dict(bids) for t, bids in self._bids.items()},
            "event_count": len(self._events),
            "total_sales": self.total_sales,
            "total_volume": self.total_volume,
        }

    def _restore_snapshot(self, snapshot: Dict[str, Any]) -> None:
        self._listings = snapshot["listings"]
        self._bids = snapshot["bids"]
        del self._events[snapshot["event_count"]:]
        self.total_sales = snapshot["total_sales"]
        self.total_volume = snapshot["total_volume"]

    async def _return_collected(self) -> None:
        """Send back everything the failed call pulled into escrow, newest first."""
        while self._returns:
            payer, amount = self._returns.pop()
            try:
                await self.ledger.transfer(self.address, payer, amount)
            except TokenError as exc:
                logger.error(
                    f"Could not return {amount} {self.ledger.symbol} to {payer}: {exc}; "
                    f"funds remain at {self.address}"
                )
            else:
                logger.debug(f"Returned {amount} {self.ledger.symbol} to {payer}")

    # -- Collaborator calls -------------------------------------------------

    async def _collect(self, payer: str, amount: Decimal) -> None:
        """Pull *amount* from *payer* into escrow using the exchange's allowance."""
        try:
            await self.ledger.transfer_from(self.address, payer, self.address, amount)
        except InsufficientBalanceError as exc:
            raise InsufficientFundsError(
                f"{payer} cannot cover {amount} {self.ledger.symbol}"
            ) from exc
        except InsufficientAllowanceError as exc:
            raise UnauthorizedError(
                f"{payer} has not authorized the exchange for {amount} {self.ledger.symbol}"
            ) from exc
        except TokenError as exc:
            raise CollaboratorFailureError(f"Ledger rejected payment: {exc}") from exc
        self._returns.append((payer, amount))

    async def _release_escrow(self, recipient: str, amount: Decimal) -> None:
        """Pay *amount* out of the exchange's escrow balance."""
        try:
            await self.ledger.transfer(self.address, recipient, amount)
        except TokenError as exc:
            raise CollaboratorFailureError(f"Ledger rejected escrow release: {exc}") from exc

    def _check_deliverable(self, listing: Listing) -> None:
        """Fail before moving funds if the registry would reject delivery."""
        try:
            owner = self.registry.owner_of(listing.token_id)
            authorized = self.registry.is_approved_or_owner(self.address, listing.token_id)
        except RegistryError as exc:
            raise CollaboratorFailureError(f"Registry rejected #{listing.token_id}: {exc}") from exc
        if owner != listing.seller:
            raise CollaboratorFailureError(
                f"#{listing.token_id} is now owned by {owner}, not seller {listing.seller}"
            )
        if not authorized:
            raise CollaboratorFailureError(
                f"Exchange is not authorized to transfer #{listing.token_id}"
            )

    async def _deliver(self, listing: Listing, recipient: str) -> None:
        try:
            await self.registry.transfer_from(
                self.address, listing.seller, recipient, listing.token_id,
            )
        except RegistryError as exc:
            raise CollaboratorFailureError(
                f"Registry rejected transfer of #{listing.token_id}: {exc}"
            ) from exc

    async def _refund_bids(self, token_id: int) -> None:
        """Refund every active bid on *token_id*, dropping each once it is paid back."""
        for bid in list(self._bids.get(token_id, {}).values()):
            await self._release_escrow(bid.bidder, bid.amount)
            self._drop_bid(bid)
            self._events.append(BidCancelledEvent(bid.bidder, token_id, bid.amount))
            logger.debug(f"Refunded bid {bid.bidder} {bid.amount} {self.ledger.symbol} on #{token_id}")

    def _drop_bid(self, bid: Bid) -> None:
        bids = self._bids[bid.token_id]
        del bids[bid.bidder]
        if not bids:
            del self._bids[bid.token_id]

    # -- Guards -------------------------------------------------------------

    def _require_listing(self, token_id: int) -> Listing:
        listing = self._listings.get(token_id)
        if listing is None:
            raise NotFoundError(f"No active listing for #{token_id}")
        return listing

    def _require_seller(self, listing: Listing, caller: str) -> None:
        if caller != listing.seller:
            raise UnauthorizedError(f"Only seller {listing.seller} can modify #{listing.token_id}")

    # -- Listing lifecycle --------------------------------------------------

    async def create_listing(self, caller: str, token_id: int, price: Any) -> Listing:
        """
        List *token_id* for sale at *price*.

        Raises:
            NotFoundError: the token was never minted
            UnauthorizedError: caller is not the current owner
            InvalidArgumentError: already listed, or non-positive price
        """
        async with self._atomic("create_listing"):
            price = _to_amount(price, "Price", self.ledger.decimals)
            if token_id in self._listings:
                raise InvalidArgumentError(f"#{token_id} is already listed")
            try:
                owner = self.registry.owner_of(token_id)
            except NonexistentTokenError as exc:
                raise NotFoundError(f"Token #{token_id} does not exist") from exc
            if owner != caller:
                raise UnauthorizedError(f"{caller} does not own #{token_id}")

            listing = Listing(token_id=token_id, seller=caller, price=price)
            self._listings[token_id] = listing
            self._events.append(ListingCreatedEvent(caller, token_id, price))
            logger.info(f"ListingCreated: {caller} #{token_id} at {price} {self.ledger.symbol}")
            return listing

    async def change_listing_price(self, caller: str, token_id: int, new_price: Any) -> Listing:
        async with self._atomic("change_listing_price"):
            listing = self._require_listing(token_id)
            self._require_seller(listing, caller)
            new_price = _to_amount(new_price, "Price", self.ledger.decimals)

            listing.price = new_price
            self._events.append(ListingPriceChangedEvent(caller, token_id, new_price))
            logger.info(f"ListingPriceChanged: {caller} #{token_id} to {new_price} {self.ledger.symbol}")
            return listing

    async def remove_listing(self, caller: str, token_id: int) -> None:
        """
        Unlist *token_id*, refunding every bid on it.

        The listing is gone once the refunds start; a bid whose refund
        fails stays open and its bidder can still cancel it.
        """
        async with self._atomic("remove_listing"):
            listing = self._require_listing(token_id)
            self._require_seller(listing, caller)

            self._commit()
            del self._listings[token_id]
            self._events.append(ListingRemovedEvent(caller, token_id))
            logger.info(f"ListingRemoved: {caller} #{token_id}")

            await self._refund_bids(token_id)

    # -- Bid lifecycle ------------------------------------------------------

    async def bid_on_token(self, caller: str, token_id: int, amount: Any) -> Bid:
        """
        Escrow *amount* from *caller* as a bid on a listed token.

        A bidder holds at most one active bid per token and must cancel it
        before bidding again, whatever the new amount. Bids need not exceed
        the current maximum.
        """
        async with self._atomic("bid_on_token"):
            self._require_listing(token_id)
            if caller in self._bids.get(token_id, {}):
                raise InvalidArgumentError(
                    f"{caller} already has an active bid on #{token_id}; cancel it first"
                )
            amount = _to_amount(amount, "Bid amount", self.ledger.decimals)

            await self._collect(caller, amount)

            bid = Bid(token_id=token_id, bidder=caller, amount=amount)
            self._bids.setdefault(token_id, {})[caller] = bid
            self._events.append(BidPlacedEvent(caller, token_id, amount))
            logger.info(f"BidPlaced: {caller} #{token_id} {amount} {self.ledger.symbol}")
            return bid

    async def cancel_bid(self, caller: str, token_id: int) -> Bid:
        async with self._atomic("cancel_bid"):
            bid = self._bids.get(token_id, {}).get(caller)
            if bid is None:
                raise NotFoundError(f"{caller} has no active bid on #{token_id}")

            await self._release_escrow(caller, bid.amount)

            self._drop_bid(bid)
            self._events.append(BidCancelledEvent(caller, token_id, bid.amount))
            logger.info(f"BidCancelled: {caller} #{token_id} {bid.amount} {self.ledger.symbol}")
            return bid

    # -- Settlement ---------------------------------------------------------

    async def buy_token(self, caller: str, token_id: int) -> SaleCompletedEvent:
        """
        Buy *token_id* at its asking price.

        The price is pulled from *caller* into escrow and the asset moves
        seller → caller; if delivery fails the price goes back to *caller*.
        After delivery the price is released to the seller and every open
        bid is refunded.
        """
        async with self._atomic("buy_token"):
            listing = self._require_listing(token_id)
            self._check_deliverable(listing)

            await self._collect(caller, listing.price)
            await self._deliver(listing, caller)
            sale = self._settle(SaleKind.DIRECT, listing, caller, listing.price)

            await self._release_escrow(listing.seller, listing.price)
            await self._refund_bids(token_id)
            return sale

    async def sell_via_bidding(self, caller: str, token_id: int) -> SaleCompletedEvent:
        """
        Accept the maximum bid on *token_id*.

        The asset moves seller → winner first; only then is the winner's
        escrow paid to the seller and every other bid refunded.
        """
        async with self._atomic("sell_via_bidding"):
            listing = self._require_listing(token_id)
            self._require_seller(listing, caller)
            winner = self.get_max_bid(token_id)
            if winner is None:
                raise NotFoundError(f"No active bids on #{token_id}")
            self._check_deliverable(listing)

            await self._deliver(listing, winner.bidder)
            sale = self._settle(SaleKind.BID, listing, winner.bidder, winner.amount)
            self._drop_bid(winner)

            await self._release_escrow(listing.seller, winner.amount)
            await self._refund_bids(token_id)
            return sale

    def _settle(self, kind: SaleKind, listing: Listing, buyer: str, price: Decimal) -> SaleCompletedEvent:
        """Record a delivered sale; the asset has moved, so it can no longer roll back."""
        self._commit()
        del self._listings[listing.token_id]
        self.total_sales += 1
        self.total_volume += price

        event = SaleCompletedEvent(kind, listing.seller, buyer, listing.token_id, price)
        self._events.append(event)
        logger.info(
            f"SaleCompleted [{kind.value}]: #{listing.token_id} {listing.seller} → {buyer} "
            f"for {price} {self.ledger.symbol}"
        )
        return event

    # -- Query --------------------------------------------------------------

    def total_listings(self) -> int:
        return len(self._listings)

    def get_listing(self, token_id: int) -> Optional[Listing]:
        return self._listings.get(token_id)

    def get_all_listings(self) -> List[Listing]:
        """Active listings in creation order."""
        return list(self._listings.values())

    def get_listings_by_user(self, account: str) -> List[Listing]:
        return [l for l in self._listings.values() if l.seller == account]

    def get_all_bids(self, token_id: int) -> List[Bid]:
        """Active bids on *token_id* in the order they were placed."""
        return list(self._bids.get(token_id, {}).values())

    def get_bid(self, token_id: int, bidder: str) -> Optional[Bid]:
        return self._bids.get(token_id, {}).get(bidder)

    def get_max_bid(self, token_id: int) -> Optional[Bid]:
        """Highest bid; the earliest-placed one wins ties."""
        best: Optional[Bid] = None
        for bid in self._bids.get(token_id, {}).values():
            if best is None or bid.amount > best.amount:
                best = bid
        return best

    def get_max_bidder(self, token_id: int) -> Optional[str]:
        """Bidder who would win sell_via_bidding, or None without bids."""
        best = self.get_max_bid(token_id)
        return best.bidder if best is not None else None

    def escrow_of(self, token_id: int) -> Decimal:
        return sum((b.amount for b in self._bids.get(token_id, {}).values()), ZERO)

    @property
    def total_escrow(self) -> Decimal:
        return sum((self.escrow_of(t) for t in self._bids), ZERO)

    @property
    def events(self) -> List[Any]:
        return list(self._events)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "collection": self.registry.symbol,
            "paymentToken": self.ledger.symbol,
            "listings": [l.to_dict() for l in self._listings.values()],
            "bids": {
                str(t): [b.to_dict() for b in bids.values()]
                for t, bids in self._bids.items()
            },
            "totalEscrow": str(self.total_escrow),
            "totalSales": self.total_sales,
            "totalVolume": str(self.total_volume),
        }

    def __repr__(self) -> str:
        return f"<NFTExchange listings={len(self._listings)} escrow={self.total_escrow}>"
