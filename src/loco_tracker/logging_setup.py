"""Logging configuration shared by the CLI and the API process."""

import logging

from rich.logging import RichHandler


def configure_logging(level: str | int = "INFO") -> None:
    """Install a Rich handler on the root logger.

    Safe to call more than once; later calls only adjust the level.
    """
    root = logging.getLogger()
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        handler = RichHandler(rich_tracebacks=True, show_path=False)
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        root.addHandler(handler)
    root.setLevel(level.upper() if isinstance(level, str) else level)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
