"""
NFT Exchange Constants

Fixed protocol numbers plus the settings that may be overridden from a
`.env` file in the working directory. Overridable settings are exposed as
module globals (``NFTX_EXCHANGE_ADDRESS``, ``LOG_LEVEL``, ...) that still
remember their built-in default through ``.default()``.
"""
from decimal import Decimal

from dotenv import dotenv_values

# -----------------------------------------------------------------------------
# .env overridable settings
# -----------------------------------------------------------------------------
_env = dotenv_values(".env")

MARKET_DEFAULTS = {
    'NFTX_EXCHANGE_ADDRESS':      '0xEXCHANGE',
    'NFTX_PAYMENT_TOKEN_NAME':    'MyToken',
    'NFTX_PAYMENT_TOKEN_SYMBOL':  'MTK',
    'NFTX_ASSET_NAME':            'NFT',
    'NFTX_ASSET_SYMBOL':          'NFT',
    'NFTX_ASSET_BASE_URI':        'https://my-json-server.typicode.com/aster2709/json-server/tokens/',
}

LOGGER_DEFAULTS = {
    'LOG_LEVEL':                  'INFO',
    'LOG_FORMAT':                 '%(asctime)s - %(levelname)s - %(name)s - %(message)s',
    'LOG_DATE_FORMAT':            '%Y-%m-%dT%H:%M:%S',
    'LOG_CONSOLE_HIGHLIGHTING':   'True',
    'LOG_FILE_OUTPUT':            'False',
}

LOG_MAX_FILE_SIZE = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5


# -----------------------------------------------------------------------------
# Payment token
# -----------------------------------------------------------------------------
ZERO = Decimal("0")
PAYMENT_TOKEN_DEFAULT_DECIMALS = 18
PAYMENT_TOKEN_MAX_SUPPLY = Decimal("1000000000000")
PAYMENT_TOKEN_FAUCET_AMOUNT = Decimal("1000")  # credited per mint() call


# -----------------------------------------------------------------------------
# Asset registry
# -----------------------------------------------------------------------------
FIRST_TOKEN_ID = 0


# -----------------------------------------------------------------------------
# Setting wrappers
# -----------------------------------------------------------------------------
class ConfigString(str):
    """A str setting that also carries its built-in default."""

    def __new__(cls, value, default):
        inst = super().__new__(cls, value)
        inst._default = default
        return inst

    def default(self):
        return self._default


class ConfigBool(int):
    """A boolean setting (bool itself cannot be subclassed) with its default."""

    def __new__(cls, value, default):
        inst = super().__new__(cls, 1 if value else 0)
        inst._default = default
        return inst

    def default(self):
        return self._default

    def __eq__(self, other):
        return bool(self) is bool(other) if isinstance(other, (bool, int)) else NotImplemented

    def __hash__(self):
        return hash(bool(self))

    def __str__(self):
        return "True" if self else "False"

    __repr__ = __str__


_BOOL_WORDS = {"true": True, "yes": True, "1": True, "false": False, "no": False, "0": False}


def parse_bool(raw):
    """Map a .env word such as "True" or "no" to a bool; other values are returned as-is."""
    if isinstance(raw, str):
        return _BOOL_WORDS.get(raw.strip().lower(), raw)
    return raw


def _setting(key, default):
    raw = _env.get(key)
    if raw is None:  # absent, or a bare `KEY` line without a value
        raw = default
    if isinstance(parse_bool(default), bool):
        value = parse_bool(raw)
        if not isinstance(value, bool):
            raise ValueError(f"{key} must be true or false, got {raw!r}")
        return ConfigBool(value, parse_bool(default))
    return ConfigString(raw, default)


globals().update(
    {key: _setting(key, default) for key, default in {**MARKET_DEFAULTS, **LOGGER_DEFAULTS}.items()}
)
