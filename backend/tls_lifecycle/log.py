"""Logging setup for the TLS lifecycle process."""
import logging
import os
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure the root logger once.

    The level comes from the argument, then the LOG_LEVEL environment
    variable, defaulting to INFO. Unknown level names fall back to INFO.
    """
    name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    numeric = logging.getLevelName(name)
    if not isinstance(numeric, int):
        numeric = logging.INFO

    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(numeric)

    # acme's HTTP traffic is very chatty at DEBUG
    logging.getLogger("acme.client").setLevel(max(numeric, logging.INFO))
