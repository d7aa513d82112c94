"""
NFT Exchange Logging
====================

One place that wires the standard `logging` package to a `rich` console.
The root logger is configured once per process; every module asks for its
own named logger:

    >>> from nftexchange.logger import get_logger
    >>> logger = get_logger(__name__)
    >>> logger.info("ListingCreated: 0xAB.. #7 at 20 MTK")

Console output goes through a RichHandler with market-aware highlighting
(addresses, token ids, amounts, event names, rollbacks). File output is
optional and rotates at LOG_MAX_FILE_SIZE. Both handlers share a formatter
that strips terminal escape sequences, since addresses and URIs reaching
the logs are caller-supplied.
"""

import logging
import logging.handlers
import re
import sys
import threading
import time
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.highlighter import RegexHighlighter
from rich.logging import RichHandler
from rich.theme import Theme

from .constants import (
    LOG_BACKUP_COUNT,
    LOG_CONSOLE_HIGHLIGHTING,
    LOG_DATE_FORMAT,
    LOG_FILE_OUTPUT,
    LOG_FORMAT,
    LOG_LEVEL,
    LOG_MAX_FILE_SIZE,
)

LOG_FILE_PATH = Path(__file__).resolve().parent.parent / "logs" / "nftexchange.log"

# `(field)s` not preceded by '%' is almost always a typo for `%(field)s`
_BARE_FIELD_RE = re.compile(r"(?<!%)\((\w+)\)[sdifrx]")

MARKET_THEME = Theme(
    {
        "nftx.address": "cyan",
        "nftx.token_id": "bold yellow",
        "nftx.amount": "bold green",
        "nftx.event": "bold magenta",
        "nftx.rollback": "bold red",
        "nftx.logger_name": "magenta",
        "nftx.timestamp": "dim cyan",
        "nftx.level_debug": "dim",
        "nftx.level_info": "green",
        "nftx.level_warning": "yellow",
        "nftx.level_error": "bold red",
        "nftx.level_critical": "bold red reverse",
    }
)


def _warn_fallback(what: str, reason: str) -> None:
    # logging is not configured yet, so report straight to stderr
    print(f"nftexchange.logger: {what} rejected ({reason}); using default", file=sys.stderr)


class MarketLogHighlighter(RegexHighlighter):
    """Highlights exchange log lines: addresses, #ids, amounts, events."""

    base_style = "nftx."
    highlights = [
        r"(?P<timestamp>^\S+ UTC)",
        r"(?P<level_debug>\bDEBUG\b)",
        r"(?P<level_info>\bINFO\b)",
        r"(?P<level_warning>\bWARNING\b)",
        r"(?P<level_error>\bERROR\b)",
        r"(?P<level_critical>\bCRITICAL\b)",
        r"(?P<logger_name>\bnftexchange(?:\.\w+)+)",
        r"(?P<address>\b0x[0-9A-Za-z]+\b)",
        r"(?P<token_id>#\d+\b)",
        r"(?P<amount>(?<=[=\s])\d+(?:\.\d+)?(?=\s[A-Z]{2,}\b))",
        r"(?P<event>\b(?:ListingCreated|ListingPriceChanged|ListingRemoved|BidPlaced|BidCancelled|SaleCompleted)\b)",
        r"(?P<rollback>\brolled back\b)",
    ]


class TerminalSafeFormatter(logging.Formatter):
    """Formatter that drops ANSI escapes and control characters (CWE-117)."""

    # CSI sequences, lone ESC sequences, and C0 controls other than \t and \n
    _unsafe_re = re.compile(
        r"\x1b\[[0-?]*[ -/]*[@-~]"
        r"|\x1b[@-Z\\-_]"
        r"|[\x00-\x08\x0B-\x1F\x7F]"
    )

    @classmethod
    def sanitize(cls, text: str) -> str:
        if not text:
            return text
        return cls._unsafe_re.sub("", text)

    def format(self, record: logging.LogRecord) -> str:
        return self.sanitize(super().format(record))


class LogManager:
    """
    Process-wide logging setup.

    There is one LogManager per process; constructing it again returns the
    same object. configure() attaches handlers to the root logger the first
    time it runs and is a no-op afterwards; reconfigure() adjusts level and
    file output later, e.g. once a config file has been read.
    """

    _instance: Optional["LogManager"] = None
    _guard = threading.Lock()

    def __new__(cls) -> "LogManager":
        with cls._guard:
            if cls._instance is None:
                inst = super().__new__(cls)
                inst._configured = False
                inst._formatter = None
                inst._handlers = []       # handlers attached by configure()
                inst._file_handler = None
                cls._instance = inst
        return cls._instance

    # -- format checks ------------------------------------------------------

    @staticmethod
    def validate_log_format(log_format: str) -> str:
        """Return *log_format* if it renders a record cleanly, else LOG_FORMAT's default."""
        default = str(LOG_FORMAT.default())
        if not log_format:
            return default
        log_format = str(log_format)

        bare = _BARE_FIELD_RE.search(log_format)
        if bare:
            _warn_fallback("log format", f"'({bare.group(1)})' is missing its '%'")
            return default

        sample = logging.LogRecord("sample", logging.INFO, "", 0, "sample", (), None)
        try:
            logging.Formatter(fmt=log_format, validate=True).format(sample)
        except (ValueError, KeyError, TypeError) as e:
            _warn_fallback("log format", str(e))
            return default
        return log_format

    @staticmethod
    def validate_date_format(date_format: str) -> str:
        """Return *date_format* if it holds strftime directives only, else the default."""
        default = str(LOG_DATE_FORMAT.default())
        if not date_format:
            return default
        date_format = str(date_format)

        literal = re.sub(r"%[-_0^#]*[EO]?[a-zA-Z%]", "", date_format)
        if "%" not in date_format or re.search(r"[^0-9 \t:/.,TZ+-]", literal):
            _warn_fallback("date format", "unexpected literal text")
            return default
        try:
            time.strftime(date_format, time.gmtime(0))
        except ValueError as e:
            _warn_fallback("date format", str(e))
            return default
        return date_format

    # -- handlers -----------------------------------------------------------

    @staticmethod
    def _build_console_handler(formatter: logging.Formatter) -> logging.Handler:
        if not LOG_CONSOLE_HIGHLIGHTING:
            handler: logging.Handler = logging.StreamHandler(sys.stdout)
        else:
            handler = RichHandler(
                console=Console(theme=MARKET_THEME, highlight=False),
                highlighter=MarketLogHighlighter(),
                keywords=[],
                markup=False,
                rich_tracebacks=True,
                show_time=False,
                show_level=False,
                show_path=False,
                omit_repeated_times=False,
            )
        handler.setFormatter(formatter)
        return handler

    @staticmethod
    def _build_file_handler(path: Path, formatter: logging.Formatter) -> logging.Handler:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            filename=str(path),
            maxBytes=LOG_MAX_FILE_SIZE,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        handler.setFormatter(formatter)
        return handler

    def configure(
        self,
        log_level: Optional[str] = None,
        log_file: Optional[Path] = None,
        console_output: bool = True,
        file_output: Optional[bool] = None,
    ) -> None:
        """
        Attach handlers to the root logger.

        Args:
            log_level: level name; defaults to LOG_LEVEL from the environment
            log_file: rotating log path; defaults to logs/nftexchange.log
            console_output: attach the console handler
            file_output: attach the file handler; defaults to LOG_FILE_OUTPUT
        """
        with self._guard:
            if self._configured:
                return

            level = getattr(logging, str(log_level or LOG_LEVEL).upper(), logging.INFO)
            formatter = TerminalSafeFormatter(
                fmt=self.validate_log_format(LOG_FORMAT),
                datefmt=self.validate_date_format(LOG_DATE_FORMAT) + " UTC",
            )
            formatter.converter = time.gmtime

            handlers = []
            if console_output:
                handlers.append(self._build_console_handler(formatter))
            file_handler = None
            if LOG_FILE_OUTPUT if file_output is None else file_output:
                file_handler = self._build_file_handler(log_file or LOG_FILE_PATH, formatter)
                handlers.append(file_handler)

            root = logging.getLogger()
            root.handlers.clear()
            root.setLevel(level)
            for handler in handlers:
                handler.setLevel(level)
                root.addHandler(handler)

            self._formatter = formatter
            self._handlers = handlers
            self._file_handler = file_handler
            self._configured = True

    def reconfigure(
        self,
        log_level: Optional[str] = None,
        file_output: Optional[bool] = None,
        log_file: Optional[Path] = None,
    ) -> None:
        """
        Change the level and file output of an already configured process.

        The root logger and every handler configure() attached move to
        *log_level*. With *file_output* True a rotating file handler is
        attached (replacing one that writes elsewhere than *log_file*);
        with False it is detached and closed. None leaves either unchanged.
        """
        if not self._configured:
            self.configure(log_level=log_level, log_file=log_file, file_output=file_output)
            return

        with self._guard:
            root = logging.getLogger()
            level = root.level
            if log_level is not None:
                level = getattr(logging, str(log_level).upper(), logging.INFO)

            path = Path(log_file or LOG_FILE_PATH).absolute()
            current = self._file_handler
            if current is not None and (
                file_output is False
                or (file_output and Path(current.baseFilename) != path)
            ):
                root.removeHandler(current)
                self._handlers.remove(current)
                current.close()
                self._file_handler = current = None
            if file_output and current is None:
                self._file_handler = self._build_file_handler(path, self._formatter)
                self._handlers.append(self._file_handler)
                root.addHandler(self._file_handler)

            root.setLevel(level)
            for handler in self._handlers:
                handler.setLevel(level)

    @property
    def file_handler(self) -> Optional[logging.Handler]:
        return self._file_handler

    def get_logger(self, name: str) -> logging.Logger:
        if not self._configured:
            self.configure()
        return logging.getLogger(name)

    @property
    def is_configured(self) -> bool:
        return self._configured


_manager = LogManager()


def get_logger(name: str) -> logging.Logger:
    """Named logger, configuring the logging system on first use."""
    return _manager.get_logger(name)


_manager.configure()
