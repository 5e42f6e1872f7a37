"""Operator console logging.

Renders log records as timestamped, levelled lines ("12:01:02 [WARN] ...")
through a rich Console, adds a SUCCESS level between INFO and WARNING, and
keeps the Azure SDK's HTTP logging quiet unless --debug is set.
"""

import logging
from datetime import datetime

from rich.console import Console
from rich.markup import escape

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

LEVEL_STYLES = {
    logging.DEBUG: ("DEBUG", "dim"),
    logging.INFO: ("INFO", "blue"),
    SUCCESS: ("SUCCESS", "green"),
    logging.WARNING: ("WARN", "yellow"),
    logging.ERROR: ("ERROR", "red"),
    logging.CRITICAL: ("ERROR", "bold red"),
}

NOISY_LOGGERS = ("azure", "azure.core.pipeline.policies.http_logging_policy", "msal", "urllib3")


class ConsoleHandler(logging.Handler):
    """Logging handler that prints levelled, coloured lines to a rich Console."""

    def __init__(self, console: Console | None = None, level: int = logging.NOTSET):
        super().__init__(level)
        self.console = console or Console(stderr=True, highlight=False)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            label, style = LEVEL_STYLES.get(record.levelno, (record.levelname, "white"))
            timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
            message = escape(record.getMessage())
            self.console.print(f"[dim]{timestamp}[/dim] [{style}]\\[{label}][/{style}] {message}")
        except Exception:
            self.handleError(record)


def setup_logging(debug: bool = False, console: Console | None = None) -> logging.Logger:
    """Install the console handler on the root logger for CLI use.

    Args:
        debug: Log DEBUG records (raw API details) and SDK warnings
        console: Console to render to (default: stderr)

    Returns:
        The root logger
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, ConsoleHandler):
            root.removeHandler(handler)

    root.addHandler(ConsoleHandler(console))
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def log_success(logger: logging.Logger, message: str) -> None:
    logger.log(SUCCESS, message)


__all__ = ["SUCCESS", "ConsoleHandler", "log_success", "setup_logging"]
