"""Logging helpers for the bulk mail scheduler."""

import logging


def get_logger(name: str = "BulkMailScheduler") -> logging.Logger:
    """Return the named :class:`logging.Logger`.

    Handlers and levels are configured once by ``logging.basicConfig()`` in
    ``main.py``; calling this repeatedly never attaches extra handlers.
    """
    return logging.getLogger(name)
