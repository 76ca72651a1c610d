"""Plate Server - entitlement ledger for live community events.

Tracks how many plates each registered family may redeem during the current
event, enforces that redemptions never exceed entitlement across concurrent
volunteer stations, and reconciles the family directory against the roster
spreadsheet volunteers maintain.

Version Management
------------------
``__version__`` is read from the installed package metadata at import time.
The single source of truth is the ``version`` field in ``pyproject.toml``.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__: str = version("plate-server")
except PackageNotFoundError:
    __version__ = "0.3.0"
