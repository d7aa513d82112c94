"""
Collaborator contracts

Structural interfaces the exchange core requires from the asset registry
and the balance ledger. `PaymentToken` and `AssetRegistry` satisfy them;
any other implementation with the same surface can be plugged in.

Both collaborators must apply each mutating call atomically (raise before
changing anything). The exchange never rewrites their state; it undoes a
failed settlement with ordinary transfers of its own.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Protocol


class BalanceLedger(Protocol):
    """Fungible payment ledger with allowances."""

    symbol: str
    decimals: int

    def balance_of(self, address: str) -> Decimal: ...
    def allowance(self, owner: str, spender: str) -> Decimal: ...

    async def transfer(self, sender: str, recipient: str, amount: Decimal) -> Any: ...
    async def transfer_from(
        self, spender: str, sender: str, recipient: str, amount: Decimal,
    ) -> Any: ...


class AssetRegistryLike(Protocol):
    """Non-fungible ownership registry with third-party transfer."""

    symbol: str

    def owner_of(self, token_id: int) -> str: ...
    def is_approved_or_owner(self, spender: str, token_id: int) -> bool: ...

    async def transfer_from(
        self, spender: str, sender: str, recipient: str, token_id: int,
    ) -> Any: ...
