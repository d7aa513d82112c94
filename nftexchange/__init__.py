"""
NFT Exchange Package

Core imports are lazily loaded so that importing a submodule does not
configure the whole exchange. For direct module access, import from
submodules:

    from nftexchange.exchange import NFTExchange
    from nftexchange.tokens import AssetRegistry, PaymentToken
    from nftexchange.exceptions import NotFoundError
"""

__version__ = "1.0.0"


def __getattr__(name):
    """Lazy module loading."""
    if name == 'NFTExchange':
        from .exchange import NFTExchange
        return NFTExchange
    elif name == 'MarketStateManager':
        from .exchange import MarketStateManager
        return MarketStateManager
    elif name == 'load_config':
        from .config import load_config
        return load_config
    raise AttributeError(f"module 'nftexchange' has no attribute {name!r}")

__all__ = ['NFTExchange', 'MarketStateManager', 'load_config']
