"""
Read-only roster providers for directory reconciliation.

Volunteers maintain the authoritative family roster in a spreadsheet. A
provider turns that spreadsheet into raw rows, header excluded, in the fixed
column order::

    A family_id   B surname   C head_name   D phone   E size   F notes

Providers never validate rows; :mod:`plate_server.services.reconciliation`
does that so every row error is reported the same way regardless of source.
Any failure to obtain rows raises :class:`RosterUnavailableError`.

Providers:
    - :class:`GoogleSheetsRowProvider` reads a values range through the
      Google Sheets v4 REST API with API-key auth (httpx).
    - :class:`CsvRowProvider` reads a local CSV export, for offline sync.
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from urllib.parse import quote

import httpx

from plate_server.config import config

logger = logging.getLogger(__name__)

SHEETS_API_BASE = "https://sheets.googleapis.com/v4/spreadsheets"

RawRow = list[str]


# =============================================================================
# CUSTOM EXCEPTIONS
# =============================================================================


@dataclass
class RosterUnavailableError(Exception):
    """
    Raised when the roster source is unreachable or misconfigured.

    Attributes:
        message: Human-readable reason, safe to show to an admin.
        status_code: HTTP status from the Sheets API, 0 when no response.
    """

    message: str
    status_code: int = 0

    def __str__(self) -> str:
        return self.message


# =============================================================================
# PROVIDERS
# =============================================================================


class RowProvider(Protocol):
    """Anything that can produce raw roster rows."""

    def fetch_rows(self) -> list[RawRow]: ...


@dataclass
class GoogleSheetsRowProvider:
    """
    Fetch roster rows from a Google Sheet.

    Attributes:
        sheet_id: Spreadsheet id from the sheet URL.
        api_key: Google API key with Sheets read access.
        value_range: A1 range, header row excluded (default ``Sheet1!A2:F``).
        timeout: Request timeout in seconds.

    Example:
        provider = GoogleSheetsRowProvider.from_config()
        rows = provider.fetch_rows()
    """

    sheet_id: str
    api_key: str
    value_range: str = "Sheet1!A2:F"
    timeout: float = 15.0

    @classmethod
    def from_config(cls) -> GoogleSheetsRowProvider:
        """Build a provider from ``config.sync``."""
        return cls(
            sheet_id=config.sync.sheets_id,
            api_key=config.sync.sheets_api_key,
            value_range=config.sync.sheets_range,
            timeout=config.sync.timeout_seconds,
        )

    @property
    def url(self) -> str:
        return f"{SHEETS_API_BASE}/{quote(self.sheet_id, safe='')}/values/{quote(self.value_range, safe='!:')}"

    def fetch_rows(self) -> list[RawRow]:
        """
        Return every row of the configured range as strings.

        Raises:
            RosterUnavailableError: Missing configuration, network failure,
                non-2xx response or a body without a ``values`` list shape.
        """
        if not self.sheet_id or not self.api_key:
            raise RosterUnavailableError(
                "Missing GOOGLE_SHEETS_ID or GOOGLE_SHEETS_API_KEY in configuration"
            )

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.get(self.url, params={"key": self.api_key})
        except httpx.HTTPError as e:
            logger.warning("Roster fetch failed: %s", type(e).__name__)
            raise RosterUnavailableError(f"Failed to fetch from Google Sheets: {e}") from e

        if response.status_code != 200:
            logger.warning("Roster fetch returned HTTP %s", response.status_code)
            raise RosterUnavailableError(
                f"Google Sheets API error: {response.status_code} - {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise RosterUnavailableError("Google Sheets returned an invalid response") from e

        values = data.get("values", []) if isinstance(data, dict) else None
        if not isinstance(values, list):
            raise RosterUnavailableError("Google Sheets returned an invalid response")
        return [[_cell(value) for value in row] for row in values if isinstance(row, list)]


@dataclass
class CsvRowProvider:
    """
    Read roster rows from a CSV export of the sheet.

    The first line is treated as the header and skipped.
    """

    path: Path

    def fetch_rows(self) -> list[RawRow]:
        try:
            with Path(self.path).open(newline="", encoding="utf-8-sig") as handle:
                rows = list(csv.reader(handle))
        except OSError as e:
            raise RosterUnavailableError(f"Cannot read roster file {self.path}: {e}") from e
        except (UnicodeDecodeError, csv.Error) as e:
            raise RosterUnavailableError(f"Roster file {self.path} is not a UTF-8 CSV export: {e}") from e
        return rows[1:]


def default_provider() -> RowProvider:
    """Provider for the configured Google Sheet."""
    return GoogleSheetsRowProvider.from_config()


def _cell(value: object) -> str:
    return "" if value is None else str(value)
