"""Logging for the backup runner and the management tool.

Console records go through rich (and from there into the journal when the
runner is started by systemd). Each profile run additionally appends to its
own log file.
"""
import logging
import pathlib
import re
import typing

from rich.console import Console
from rich.logging import RichHandler

console = Console()

LOGGER_NAME = "homelab.pbsbackup"
FILE_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
REDACTED = "***REDACTED***"


class SecretFilter(logging.Filter):
    """Replace registered secret values in every record passing through.

    A secret is only replaced where it stands on its own, i.e. not directly
    preceded or followed by a letter, digit or underscore.
    """

    def __init__(self):
        super().__init__()
        self.secrets: set[str] = set()
        self._pattern: typing.Optional[re.Pattern] = None

    def add(self, *values: typing.Optional[str]):
        for value in values:
            if value:
                self.secrets.add(value)
        self._compile()

    def clear(self):
        self.secrets.clear()
        self._pattern = None

    def _compile(self):
        if not self.secrets:
            self._pattern = None
            return
        # Longest first so a secret containing another is replaced whole
        alternatives = "|".join(
            re.escape(secret) for secret in sorted(self.secrets, key=len, reverse=True)
        )
        self._pattern = re.compile(rf"(?<!\w)(?:{alternatives})(?!\w)")

    def filter(self, record: logging.LogRecord) -> bool:
        if self._pattern is None:
            return True
        message = record.getMessage()
        redacted = self._pattern.sub(REDACTED, message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


secret_filter = SecretFilter()


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the package root, with the console handler installed once."""
    root = logging.getLogger(LOGGER_NAME)
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        handler = RichHandler(console=console, show_path=False)
        handler.setFormatter(logging.Formatter("%(message)s"))
        handler.addFilter(secret_filter)
        root.addHandler(handler)
        root.setLevel(logging.INFO)

    if name == LOGGER_NAME or name.startswith(LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def set_verbose(verbose: bool):
    logging.getLogger(LOGGER_NAME).setLevel(
        logging.DEBUG if verbose else logging.INFO
    )


def attach_file_handler(log_file: pathlib.Path) -> logging.FileHandler:
    """Start appending package log records to `log_file`.

    The caller owns the returned handler and must pass it to
    `detach_file_handler` when the run is over.
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
    handler.addFilter(secret_filter)
    logging.getLogger(LOGGER_NAME).addHandler(handler)
    return handler


def detach_file_handler(handler: logging.FileHandler):
    logging.getLogger(LOGGER_NAME).removeHandler(handler)
    handler.close()
