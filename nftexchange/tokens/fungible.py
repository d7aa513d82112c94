"""
Payment Token — fungible balance ledger

The one currency an exchange deployment settles in. Accounts hold
balances, grant allowances to spenders, and move funds directly
(transfer) or through a spender's allowance (transfer_from). mint() acts
as a faucet crediting a fixed amount per call; freeze() halts all
movement.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..constants import (
    PAYMENT_TOKEN_DEFAULT_DECIMALS,
    PAYMENT_TOKEN_FAUCET_AMOUNT,
    PAYMENT_TOKEN_MAX_SUPPLY,
    ZERO,
)
from ..logger import get_logger

logger = get_logger(__name__)

# Mints are recorded as transfers from the empty address
MINT_ADDRESS = ""


class TokenError(Exception):
    """Base exception for payment token operations."""


class InsufficientBalanceError(TokenError):
    """Account cannot cover the amount being moved."""


class InsufficientAllowanceError(TokenError):
    """Spender's remaining allowance is below the amount being moved."""


class TokenFrozenError(TokenError):
    """Token movement is halted."""


@dataclass(frozen=True)
class TransferEvent:
    token_symbol: str
    sender: str
    recipient: str
    amount: Decimal
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "Transfer",
            "token": self.token_symbol,
            "from": self.sender,
            "to": self.recipient,
            "amount": str(self.amount),
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ApprovalEvent:
    token_symbol: str
    owner: str
    spender: str
    amount: Decimal
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "Approval",
            "token": self.token_symbol,
            "owner": self.owner,
            "spender": self.spender,
            "amount": str(self.amount),
            "timestamp": self.timestamp,
        }


class PaymentToken:
    """
    Fungible payment token with ERC-20 call semantics.

    Mutating calls are coroutines so that a ledger backed by remote state
    can be swapped in behind the same interface. Each one validates fully
    before writing, so a raised error leaves balances and allowances
    exactly as they were.
    """

    def __init__(
        self,
        name: str,
        symbol: str,
        decimals: int = PAYMENT_TOKEN_DEFAULT_DECIMALS,
        total_supply: Decimal = ZERO,
        deployer: str = "",
        *,
        faucet_amount: Decimal = PAYMENT_TOKEN_FAUCET_AMOUNT,
    ):
        """
        Args:
            name: display name
            symbol: ticker used in logs and events
            decimals: display precision, 0-18
            total_supply: initial supply, credited to *deployer*
            deployer: account receiving the initial supply
            faucet_amount: amount credited by mint() when none is given
        """
        if not name:
            raise TokenError("Token name cannot be empty")
        if not symbol:
            raise TokenError("Token symbol cannot be empty")
        if not 0 <= decimals <= 18:
            raise TokenError(f"Decimals must be 0-18, got {decimals}")
        if total_supply < 0:
            raise TokenError("Initial supply cannot be negative")
        if total_supply > PAYMENT_TOKEN_MAX_SUPPLY:
            raise TokenError(f"Initial supply {total_supply} exceeds max {PAYMENT_TOKEN_MAX_SUPPLY}")
        if faucet_amount <= 0:
            raise TokenError("Faucet amount must be positive")

        self.name = name
        self.symbol = symbol
        self.decimals = decimals
        self.deployer = deployer
        self.faucet_amount = faucet_amount
        self.deployed_at = time.time()

        self._supply = total_supply
        self._frozen = False
        self._balances: Dict[str, Decimal] = {}
        self._allowances: Dict[str, Dict[str, Decimal]] = {}  # owner → spender → amount
        self._events: List[Any] = []

        if deployer and total_supply > 0:
            self._balances[deployer] = total_supply

        logger.info(f"PaymentToken {symbol} ({name}) deployed, supply={total_supply}")

    # -- views --------------------------------------------------------------

    @property
    def total_supply(self) -> Decimal:
        return self._supply

    def balance_of(self, address: str) -> Decimal:
        return self._balances.get(address, ZERO)

    def allowance(self, owner: str, spender: str) -> Decimal:
        return self._allowances.get(owner, {}).get(spender, ZERO)

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    @property
    def events(self) -> List[Any]:
        return list(self._events)

    # -- internals ----------------------------------------------------------

    def _check_movable(self, amount: Decimal) -> None:
        if self._frozen:
            raise TokenFrozenError(f"{self.symbol} transfers are frozen")
        if amount <= 0:
            raise TokenError(f"Transfer amount must be positive, got {amount}")

    def _check_covered(self, account: str, amount: Decimal) -> None:
        held = self.balance_of(account)
        if held < amount:
            raise InsufficientBalanceError(f"{account} holds {held} {self.symbol}, needs {amount}")

    def _credit(self, account: str, amount: Decimal) -> None:
        self._balances[account] = self.balance_of(account) + amount

    def _emit(self, sender: str, recipient: str, amount: Decimal) -> TransferEvent:
        event = TransferEvent(self.symbol, sender, recipient, amount)
        self._events.append(event)
        return event

    # -- ERC-20 calls -------------------------------------------------------

    async def transfer(self, sender: str, recipient: str, amount: Decimal) -> TransferEvent:
        """
        Move *amount* from *sender* to *recipient*.

        Raises:
            TokenError: non-positive amount or sender == recipient
            InsufficientBalanceError: sender cannot cover *amount*
        """
        self._check_movable(amount)
        if sender == recipient:
            raise TokenError("Cannot transfer to self")
        self._check_covered(sender, amount)

        self._credit(sender, -amount)
        self._credit(recipient, amount)
        logger.debug(f"transfer {sender} → {recipient} {amount} {self.symbol}")
        return self._emit(sender, recipient, amount)

    async def approve(self, owner: str, spender: str, amount: Decimal) -> ApprovalEvent:
        """Set *spender*'s allowance over *owner*'s funds to exactly *amount*."""
        if self._frozen:
            raise TokenFrozenError(f"{self.symbol} approvals are frozen")
        if amount < 0:
            raise TokenError("Allowance cannot be negative")

        self._allowances.setdefault(owner, {})[spender] = amount
        event = ApprovalEvent(self.symbol, owner, spender, amount)
        self._events.append(event)
        logger.debug(f"approve {owner} lets {spender} spend {amount} {self.symbol}")
        return event

    async def transfer_from(
        self,
        spender: str,
        sender: str,
        recipient: str,
        amount: Decimal,
    ) -> TransferEvent:
        """
        Move *amount* from *sender* to *recipient*, spending *spender*'s allowance.

        The sender's balance is checked before the allowance, so an
        account that is both underfunded and under-approved reports
        InsufficientBalanceError.
        """
        self._check_movable(amount)
        self._check_covered(sender, amount)
        granted = self.allowance(sender, spender)
        if granted < amount:
            raise InsufficientAllowanceError(
                f"{spender} may spend {granted} {self.symbol} of {sender}, needs {amount}"
            )

        self._allowances[sender][spender] = granted - amount
        self._credit(sender, -amount)
        self._credit(recipient, amount)
        logger.debug(f"transfer_from by {spender}: {sender} → {recipient} {amount} {self.symbol}")
        return self._emit(sender, recipient, amount)

    async def mint(self, recipient: str, amount: Optional[Decimal] = None) -> TransferEvent:
        """Faucet: credit *recipient* with *amount*, or faucet_amount when omitted."""
        amount = self.faucet_amount if amount is None else amount
        self._check_movable(amount)
        if self._supply + amount > PAYMENT_TOKEN_MAX_SUPPLY:
            raise TokenError(f"Minting {amount} {self.symbol} would exceed max supply")

        self._supply += amount
        self._credit(recipient, amount)
        logger.info(f"Minted {amount} {self.symbol} to {recipient}")
        return self._emit(MINT_ADDRESS, recipient, amount)

    # -- halt switch ----------------------------------------------------------

    def freeze(self) -> None:
        self._frozen = True
        logger.warning(f"{self.symbol} frozen: all transfers halted")

    def unfreeze(self) -> None:
        self._frozen = False
        logger.info(f"{self.symbol} unfrozen")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "symbol": self.symbol,
            "decimals": self.decimals,
            "totalSupply": str(self._supply),
            "deployer": self.deployer,
            "frozen": self._frozen,
            "holders": sum(1 for bal in self._balances.values() if bal > 0),
            "deployedAt": self.deployed_at,
        }

    def __repr__(self) -> str:
        return f"<PaymentToken {self.symbol} supply={self._supply}>"
