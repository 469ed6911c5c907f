"""Logging helpers."""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
ROOT_LOGGER = "imap_autoconnect"


def configure_logging(verbose: bool = False, *, protocol_debug: bool = False) -> None:
    """Configure application logging once for CLI usage.

    imapclient logs every command at DEBUG; keep it quiet unless asked.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("imapclient").setLevel(logging.DEBUG if protocol_debug else logging.WARNING)


def get_logger(component: str | None = None) -> logging.Logger:
    """Return the package logger, or a child logger for one component."""
    if component:
        return logging.getLogger(f"{ROOT_LOGGER}.{component}")
    return logging.getLogger(ROOT_LOGGER)


def mask_address(email: str) -> str:
    """Shorten the local part of an address for log output."""
    local, sep, domain = email.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"
