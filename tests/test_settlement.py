"""
NFT Exchange Test Suite — settlement and atomicity

Covers:
  - Direct purchase at the asking price
  - Sale to the maximum bidder, refunds to everyone else
  - All-or-nothing behaviour when a collaborator fails mid-operation
  - Serialization of concurrent calls
"""

import asyncio
from decimal import Decimal

import pytest

from nftexchange.exceptions import (
    CollaboratorFailureError,
    InsufficientFundsError,
    NotFoundError,
    UnauthorizedError,
)
from nftexchange.exchange.marketplace import (
    BidCancelledEvent,
    NFTExchange,
    SaleCompletedEvent,
    SaleKind,
)
from nftexchange.tokens.fungible import PaymentToken, TokenError
from nftexchange.tokens.nft import AssetRegistry, RegistryError

EXCHANGE = "0xEXCHANGE"
SELLER = "0x" + "5E" * 20
BUYER = "0x" + "B0" * 20
BIDDER_A = "0x" + "AA" * 20
BIDDER_B = "0x" + "BB" * 20
BIDDER_C = "0x" + "CC" * 20
STRANGER = "0x" + "99" * 20

ACCOUNTS = (SELLER, BUYER, BIDDER_A, BIDDER_B, BIDDER_C)

D = Decimal


class FailingRegistry(AssetRegistry):
    """Registry that rejects every transfer."""

    async def transfer_from(self, spender, sender, recipient, token_id):
        raise RegistryError("transfer hook rejected the move")


class StallingRegistry(AssetRegistry):
    """Registry whose transfers block until the caller is cancelled."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.entered = asyncio.Event()

    async def transfer_from(self, spender, sender, recipient, token_id):
        self.entered.set()
        await asyncio.Event().wait()


class BlockingLedger(PaymentToken):
    """Ledger that rejects every transfer to the accounts in `blocked`."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.blocked = set()

    async def transfer(self, sender, recipient, amount):
        if recipient in self.blocked:
            raise TokenError(f"{recipient} cannot receive {self.symbol}")
        return await super().transfer(sender, recipient, amount)


async def make_market(tokens=8, registry_cls=AssetRegistry, ledger_cls=PaymentToken):
    registry = registry_cls(name="NFT", symbol="NFT")
    ledger = ledger_cls(name="MyToken", symbol="MTK")
    exchange = NFTExchange(registry, ledger, EXCHANGE)
    for acct in ACCOUNTS:
        await ledger.mint(acct)
        await ledger.approve(acct, EXCHANGE, D("1000"))
    for _ in range(tokens):
        await registry.mint(SELLER)
    await registry.set_approval_for_all(SELLER, EXCHANGE, True)
    return registry, ledger, exchange


def balances(ledger):
    return {acct: ledger.balance_of(acct) for acct in ACCOUNTS + (EXCHANGE,)}


# ============================================================================
# Direct purchase
# ============================================================================

class TestBuyToken:

    @pytest.mark.asyncio
    async def test_buys_token_seven_at_asking_price(self):
        registry, ledger, exchange = await make_market()
        await exchange.create_listing(SELLER, 7, D("20"))

        event = await exchange.buy_token(BUYER, 7)

        assert isinstance(event, SaleCompletedEvent)
        assert event.kind == SaleKind.DIRECT
        assert (event.seller, event.buyer, event.token_id, event.price) == (SELLER, BUYER, 7, D("20"))
        assert registry.owner_of(7) == BUYER
        assert ledger.balance_of(BUYER) == D("980")
        assert ledger.balance_of(SELLER) == D("1020")
        assert exchange.total_listings() == 0

    @pytest.mark.asyncio
    async def test_refunds_every_bid(self):
        _, ledger, exchange = await make_market()
        await exchange.create_listing(SELLER, 0, D("20"))
        await exchange.bid_on_token(BIDDER_A, 0, D("5"))
        await exchange.bid_on_token(BIDDER_B, 0, D("10"))

        await exchange.buy_token(BUYER, 0)

        assert exchange.get_all_bids(0) == []
        assert ledger.balance_of(BIDDER_A) == D("1000")
        assert ledger.balance_of(BIDDER_B) == D("1000")
        assert ledger.balance_of(EXCHANGE) == D("0")
        refunds = [e for e in exchange.events if isinstance(e, BidCancelledEvent)]
        assert {e.bidder for e in refunds} == {BIDDER_A, BIDDER_B}

    @pytest.mark.asyncio
    async def test_bidder_may_buy_and_gets_escrow_back(self):
        _, ledger, exchange = await make_market()
        await exchange.create_listing(SELLER, 0, D("20"))
        await exchange.bid_on_token(BIDDER_A, 0, D("5"))

        await exchange.buy_token(BIDDER_A, 0)

        assert ledger.balance_of(BIDDER_A) == D("980")
        assert exchange.total_escrow == D("0")

    @pytest.mark.asyncio
    async def test_seller_may_buy_own_listing(self):
        registry, ledger, exchange = await make_market()
        await exchange.create_listing(SELLER, 0, D("20"))
        await exchange.buy_token(SELLER, 0)
        assert registry.owner_of(0) == SELLER
        assert ledger.balance_of(SELLER) == D("1000")
        assert exchange.total_listings() == 0

    @pytest.mark.asyncio
    async def test_unlisted_not_found(self):
        _, _, exchange = await make_market()
        with pytest.raises(NotFoundError):
            await exchange.buy_token(BUYER, 0)

    @pytest.mark.asyncio
    async def test_insufficient_funds_changes_nothing(self):
        registry, ledger, exchange = await make_market()
        await exchange.create_listing(SELLER, 0, D("2000"))
        await exchange.bid_on_token(BIDDER_A, 0, D("5"))
        await ledger.approve(BUYER, EXCHANGE, D("5000"))
        before = balances(ledger)

        with pytest.raises(InsufficientFundsError):
            await exchange.buy_token(BUYER, 0)

        assert balances(ledger) == before
        assert registry.owner_of(0) == SELLER
        assert exchange.get_listing(0) is not None
        assert len(exchange.get_all_bids(0)) == 1

    @pytest.mark.asyncio
    async def test_missing_allowance_is_unauthorized(self):
        _, ledger, exchange = await make_market()
        await exchange.create_listing(SELLER, 0, D("20"))
        await ledger.approve(BUYER, EXCHANGE, D("0"))
        with pytest.raises(UnauthorizedError):
            await exchange.buy_token(BUYER, 0)
        assert exchange.get_listing(0) is not None


# ============================================================================
# Sale to the maximum bidder
# ============================================================================

class TestSellViaBidding:

    @pytest.mark.asyncio
    async def test_sells_to_max_bidder(self):
        registry, ledger, exchange = await make_market()
        await exchange.create_listing(SELLER, 0, D("20"))
        await exchange.bid_on_token(BIDDER_A, 0, D("5"))
        await exchange.bid_on_token(BIDDER_B, 0, D("10"))

        event = await exchange.sell_via_bidding(SELLER, 0)

        assert event.kind == SaleKind.BID
        assert (event.buyer, event.price) == (BIDDER_B, D("10"))
        assert registry.owner_of(0) == BIDDER_B
        assert ledger.balance_of(SELLER) == D("1010")
        assert ledger.balance_of(BIDDER_B) == D("990")
        assert ledger.balance_of(BIDDER_A) == D("1000")
        assert ledger.balance_of(EXCHANGE) == D("0")
        assert exchange.total_listings() == 0
        assert exchange.get_all_bids(0) == []

    @pytest.mark.asyncio
    async def test_tie_goes_to_earliest_bid(self):
        registry, _, exchange = await make_market()
        await exchange.create_listing(SELLER, 0, D("20"))
        await exchange.bid_on_token(BIDDER_A, 0, D("10"))
        await exchange.bid_on_token(BIDDER_B, 0, D("10"))
        await exchange.bid_on_token(BIDDER_C, 0, D("4"))

        event = await exchange.sell_via_bidding(SELLER, 0)

        assert event.buyer == BIDDER_A
        assert registry.owner_of(0) == BIDDER_A

    @pytest.mark.asyncio
    async def test_sale_below_asking_price_is_allowed(self):
        _, _, exchange = await make_market()
        await exchange.create_listing(SELLER, 0, D("100"))
        await exchange.bid_on_token(BIDDER_A, 0, D("1"))
        event = await exchange.sell_via_bidding(SELLER, 0)
        assert event.price == D("1")

    @pytest.mark.asyncio
    async def test_no_bids_not_found(self):
        _, _, exchange = await make_market()
        await exchange.create_listing(SELLER, 0, D("20"))
        with pytest.raises(NotFoundError):
            await exchange.sell_via_bidding(SELLER, 0)
        assert exchange.get_listing(0) is not None

    @pytest.mark.asyncio
    async def test_only_seller_may_accept(self):
        _, _, exchange = await make_market()
        await exchange.create_listing(SELLER, 0, D("20"))
        await exchange.bid_on_token(BIDDER_A, 0, D("5"))
        with pytest.raises(UnauthorizedError):
            await exchange.sell_via_bidding(STRANGER, 0)
        assert exchange.get_max_bidder(0) == BIDDER_A

    @pytest.mark.asyncio
    async def test_unlisted_not_found(self):
        _, _, exchange = await make_market()
        with pytest.raises(NotFoundError):
            await exchange.sell_via_bidding(SELLER, 0)

    @pytest.mark.asyncio
    async def test_stats_accumulate(self):
        _, _, exchange = await make_market()
        await exchange.create_listing(SELLER, 0, D("20"))
        await exchange.create_listing(SELLER, 1, D("30"))
        await exchange.bid_on_token(BIDDER_A, 1, D("12"))
        await exchange.buy_token(BUYER, 0)
        await exchange.sell_via_bidding(SELLER, 1)
        assert exchange.total_sales == 2
        assert exchange.total_volume == D("32")


# ============================================================================
# Atomicity
# ============================================================================

class TestAtomicSettlement:

    @pytest.mark.asyncio
    async def test_revoked_approval_fails_before_funds_move(self):
        registry, ledger, exchange = await make_market()
        await exchange.create_listing(SELLER, 0, D("20"))
        await exchange.bid_on_token(BIDDER_A, 0, D("5"))
        await registry.set_approval_for_all(SELLER, EXCHANGE, False)
        before = balances(ledger)

        with pytest.raises(CollaboratorFailureError):
            await exchange.buy_token(BUYER, 0)
        with pytest.raises(CollaboratorFailureError):
            await exchange.sell_via_bidding(SELLER, 0)

        assert balances(ledger) == before
        assert registry.owner_of(0) == SELLER
        assert exchange.get_listing(0) is not None
        assert exchange.get_max_bidder(0) == BIDDER_A

    @pytest.mark.asyncio
    async def test_asset_moved_elsewhere_fails(self):
        registry, ledger, exchange = await make_market()
        await exchange.create_listing(SELLER, 0, D("20"))
        await registry.transfer_from(SELLER, SELLER, STRANGER, 0)
        before = balances(ledger)

        with pytest.raises(CollaboratorFailureError):
            await exchange.buy_token(BUYER, 0)

        assert balances(ledger) == before
        assert registry.owner_of(0) == STRANGER
        assert exchange.get_listing(0) is not None

    @pytest.mark.asyncio
    async def test_registry_failure_after_payment_rolls_back_buy(self):
        registry, ledger, exchange = await make_market(registry_cls=FailingRegistry)
        await exchange.create_listing(SELLER, 0, D("20"))
        await exchange.bid_on_token(BIDDER_A, 0, D("5"))
        before = balances(ledger)
        allowance = ledger.allowance(BUYER, EXCHANGE)
        events = len(exchange.events)

        with pytest.raises(CollaboratorFailureError):
            await exchange.buy_token(BUYER, 0)

        assert balances(ledger) == before
        # a returned payment does not re-grant the spent allowance
        assert ledger.allowance(BUYER, EXCHANGE) == allowance - D("20")
        assert registry.owner_of(0) == SELLER
        assert exchange.get_listing(0) is not None
        assert [b.bidder for b in exchange.get_all_bids(0)] == [BIDDER_A]
        assert len(exchange.events) == events
        assert exchange.total_sales == 0

    @pytest.mark.asyncio
    async def test_registry_failure_rolls_back_sale_before_payout(self):
        registry, ledger, exchange = await make_market(registry_cls=FailingRegistry)
        await exchange.create_listing(SELLER, 0, D("20"))
        await exchange.bid_on_token(BIDDER_A, 0, D("5"))
        await exchange.bid_on_token(BIDDER_B, 0, D("10"))
        before = balances(ledger)

        with pytest.raises(CollaboratorFailureError):
            await exchange.sell_via_bidding(SELLER, 0)

        assert balances(ledger) == before
        assert ledger.balance_of(EXCHANGE) == exchange.total_escrow == D("15")
        assert registry.owner_of(0) == SELLER
        assert len(exchange.get_all_bids(0)) == 2

    @pytest.mark.asyncio
    async def test_cancellation_mid_settlement_rolls_back(self):
        registry, ledger, exchange = await make_market(registry_cls=StallingRegistry)
        await exchange.create_listing(SELLER, 0, D("20"))
        await exchange.bid_on_token(BIDDER_A, 0, D("5"))
        before = balances(ledger)

        task = asyncio.create_task(exchange.buy_token(BUYER, 0))
        await registry.entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert balances(ledger) == before
        assert exchange.get_listing(0) is not None
        assert exchange.get_max_bidder(0) == BIDDER_A

        # lock released: the exchange keeps serving
        await exchange.cancel_bid(BIDDER_A, 0)
        assert ledger.balance_of(BIDDER_A) == D("1000")

    @pytest.mark.asyncio
    async def test_rollback_keeps_ledger_moves_made_during_the_stall(self):
        registry, ledger, exchange = await make_market(registry_cls=StallingRegistry)
        await exchange.create_listing(SELLER, 0, D("20"))
        await exchange.bid_on_token(BIDDER_A, 0, D("5"))

        task = asyncio.create_task(exchange.buy_token(BUYER, 0))
        await registry.entered.wait()
        assert ledger.balance_of(EXCHANGE) == D("25")

        # an unrelated holder moves funds while the sale is suspended
        await ledger.transfer(BIDDER_B, BIDDER_C, D("300"))
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert ledger.balance_of(BIDDER_B) == D("700")
        assert ledger.balance_of(BIDDER_C) == D("1300")
        assert ledger.balance_of(BUYER) == D("1000")
        assert ledger.balance_of(EXCHANGE) == exchange.total_escrow == D("5")
        assert registry.owner_of(0) == SELLER
        assert exchange.get_listing(0) is not None

    @pytest.mark.asyncio
    async def test_refund_failure_after_delivery_keeps_the_sale(self):
        registry, ledger, exchange = await make_market(ledger_cls=BlockingLedger)
        await exchange.create_listing(SELLER, 0, D("20"))
        await exchange.bid_on_token(BIDDER_A, 0, D("5"))
        ledger.blocked.add(BIDDER_A)

        with pytest.raises(CollaboratorFailureError):
            await exchange.buy_token(BUYER, 0)

        assert registry.owner_of(0) == BUYER
        assert ledger.balance_of(SELLER) == D("1020")
        assert ledger.balance_of(BUYER) == D("980")
        assert exchange.get_listing(0) is None
        assert exchange.total_sales == 1
        assert isinstance(exchange.events[-1], SaleCompletedEvent)
        assert ledger.balance_of(EXCHANGE) == exchange.total_escrow == D("5")

        # the unrefunded bid stays open and can be reclaimed
        ledger.blocked.clear()
        await exchange.cancel_bid(BIDDER_A, 0)
        assert ledger.balance_of(BIDDER_A) == D("1000")
        assert ledger.balance_of(EXCHANGE) == D("0")

    @pytest.mark.asyncio
    async def test_refund_failure_on_removal_leaves_bids_cancellable(self):
        _, ledger, exchange = await make_market(ledger_cls=BlockingLedger)
        await exchange.create_listing(SELLER, 0, D("20"))
        await exchange.bid_on_token(BIDDER_A, 0, D("5"))
        await exchange.bid_on_token(BIDDER_B, 0, D("10"))
        ledger.blocked.add(BIDDER_B)

        with pytest.raises(CollaboratorFailureError):
            await exchange.remove_listing(SELLER, 0)

        assert exchange.get_listing(0) is None
        assert ledger.balance_of(BIDDER_A) == D("1000")
        assert [b.bidder for b in exchange.get_all_bids(0)] == [BIDDER_B]
        assert ledger.balance_of(EXCHANGE) == exchange.total_escrow == D("10")

        ledger.blocked.clear()
        await exchange.cancel_bid(BIDDER_B, 0)
        assert ledger.balance_of(BIDDER_B) == D("1000")


# ============================================================================
# Concurrency
# ============================================================================

class TestConcurrentCalls:

    @pytest.mark.asyncio
    async def test_racing_buyers_only_one_wins(self):
        registry, ledger, exchange = await make_market()
        await exchange.create_listing(SELLER, 0, D("20"))

        results = await asyncio.gather(
            exchange.buy_token(BUYER, 0),
            exchange.buy_token(BIDDER_A, 0),
            return_exceptions=True,
        )

        assert isinstance(results[0], SaleCompletedEvent)
        assert isinstance(results[1], NotFoundError)
        assert registry.owner_of(0) == BUYER
        assert ledger.balance_of(BIDDER_A) == D("1000")

    @pytest.mark.asyncio
    async def test_concurrent_bids_keep_escrow_consistent(self):
        _, ledger, exchange = await make_market()
        await exchange.create_listing(SELLER, 0, D("20"))

        await asyncio.gather(
            exchange.bid_on_token(BIDDER_A, 0, D("5")),
            exchange.bid_on_token(BIDDER_B, 0, D("10")),
            exchange.bid_on_token(BIDDER_C, 0, D("7")),
            exchange.bid_on_token(BIDDER_A, 0, D("50")),
            return_exceptions=True,
        )

        assert [b.bidder for b in exchange.get_all_bids(0)] == [BIDDER_A, BIDDER_B, BIDDER_C]
        assert ledger.balance_of(EXCHANGE) == exchange.total_escrow == D("22")
