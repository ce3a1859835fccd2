from __future__ import annotations

import logging
import os

_configured = False


def configure_logging(level: str | None = None) -> None:
    global _configured
    # An explicit level (from a CLI flag) replaces the lazy default setup.
    explicit = level is not None
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=explicit,
    )
    _configured = True


def get_logger(name: str) -> logging.Logger:
    if not _configured:
        configure_logging()
    return logging.getLogger(name)
