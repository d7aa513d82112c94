"""
NFT Exchange Exceptions

Error taxonomy for the exchange core. Every error rejects the whole
operation; no partial effects survive a raised exception.
"""


class MarketException(Exception):
    """Base exception for the NFT exchange."""
    pass


class NotFoundError(MarketException):
    """Referenced listing or bid does not exist."""
    pass


class UnauthorizedError(MarketException):
    """Caller is not the required principal or lacks transfer authorization."""
    pass


class InvalidArgumentError(MarketException):
    """Non-positive price/amount, duplicate listing or duplicate active bid."""
    pass


class InsufficientFundsError(MarketException):
    """Balance ledger rejected a pull-transfer for lack of funds."""
    pass


class CollaboratorFailureError(MarketException):
    """Asset registry or balance ledger rejected an otherwise-valid request."""
    pass


class ConfigurationError(MarketException):
    """Configuration error."""
    pass
