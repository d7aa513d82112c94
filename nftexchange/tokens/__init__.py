"""
Exchange collaborators

Provides:
  - PaymentToken   : fungible balance ledger (ERC-20–style)
  - AssetRegistry  : non-fungible ownership registry (ERC-721–style)
"""

from .fungible import (
    PaymentToken,
    TransferEvent,
    ApprovalEvent,
    TokenError,
    InsufficientBalanceError,
    InsufficientAllowanceError,
    TokenFrozenError,
)
from .nft import (
    AssetRegistry,
    AssetTransferEvent,
    AssetApprovalEvent,
    ApprovalForAllEvent,
    RegistryError,
    NonexistentTokenError,
    NotOwnerError,
    NotApprovedError,
)

__all__ = [
    # Balance ledger
    "PaymentToken",
    "TransferEvent",
    "ApprovalEvent",
    "TokenError",
    "InsufficientBalanceError",
    "InsufficientAllowanceError",
    "TokenFrozenError",
    # Asset registry
    "AssetRegistry",
    "AssetTransferEvent",
    "AssetApprovalEvent",
    "ApprovalForAllEvent",
    "RegistryError",
    "NonexistentTokenError",
    "NotOwnerError",
    "NotApprovedError",
]
