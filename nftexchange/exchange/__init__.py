"""
NFT Exchange Engine

Components:
  - Marketplace core (fixed-price listings, escrowed bids, settlement)
  - Collaborator contracts (asset registry, balance ledger)
  - Market transactions (operation envelope, nonce, hashing)
  - State manager (transaction dispatch, state root)
"""

from .marketplace import (
    Bid,
    BidCancelledEvent,
    BidPlacedEvent,
    Listing,
    ListingCreatedEvent,
    ListingPriceChangedEvent,
    ListingRemovedEvent,
    NFTExchange,
    SaleCompletedEvent,
    SaleKind,
)
from .collaborators import (
    AssetRegistryLike,
    BalanceLedger,
)
from .transactions import (
    MarketOpType,
    MarketTransaction,
)
from .state_manager import (
    MarketExecResult,
    MarketStateManager,
)

__all__ = [
    # Marketplace
    "Bid", "Listing", "NFTExchange", "SaleKind",
    "ListingCreatedEvent", "ListingPriceChangedEvent", "ListingRemovedEvent",
    "BidPlacedEvent", "BidCancelledEvent", "SaleCompletedEvent",
    # Collaborators
    "AssetRegistryLike", "BalanceLedger",
    # Transactions
    "MarketOpType", "MarketTransaction",
    # State Manager
    "MarketExecResult", "MarketStateManager",
]
