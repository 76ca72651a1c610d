"""
Tests for the Google Sheets roster provider.

Uses respx to mock the Sheets v4 values endpoint.
"""

import httpx
import pytest
import respx
from httpx import Response

from plate_server.services.roster import (
    SHEETS_API_BASE,
    GoogleSheetsRowProvider,
    RosterUnavailableError,
)


@pytest.fixture
def provider() -> GoogleSheetsRowProvider:
    return GoogleSheetsRowProvider(sheet_id="sheet-123", api_key="key-abc", timeout=1.0)


class TestGoogleSheetsRowProvider:
    @pytest.mark.unit
    def test_url_quotes_the_range(self, provider):
        assert provider.url == f"{SHEETS_API_BASE}/sheet-123/values/Sheet1!A2:F"

    @pytest.mark.unit
    @respx.mock
    def test_fetch_rows_as_strings(self, provider):
        route = respx.get(url__startswith=SHEETS_API_BASE).mock(
            return_value=Response(
                200,
                json={"range": "Sheet1!A2:F", "values": [["F001", "Garcia", "Maria", "555", 4], ["F002"]]},
            )
        )

        rows = provider.fetch_rows()

        assert rows == [["F001", "Garcia", "Maria", "555", "4"], ["F002"]]
        assert route.calls.last.request.url.params["key"] == "key-abc"

    @pytest.mark.unit
    @respx.mock
    def test_empty_sheet(self, provider):
        respx.get(url__startswith=SHEETS_API_BASE).mock(return_value=Response(200, json={}))

        assert provider.fetch_rows() == []

    @pytest.mark.unit
    @respx.mock
    def test_http_error_status(self, provider):
        respx.get(url__startswith=SHEETS_API_BASE).mock(
            return_value=Response(403, text="API key not valid")
        )

        with pytest.raises(RosterUnavailableError) as exc_info:
            provider.fetch_rows()

        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "Google Sheets API error: 403 - API key not valid"

    @pytest.mark.unit
    @respx.mock
    def test_network_failure(self, provider):
        respx.get(url__startswith=SHEETS_API_BASE).mock(side_effect=httpx.ConnectError("offline"))

        with pytest.raises(RosterUnavailableError, match="Failed to fetch from Google Sheets"):
            provider.fetch_rows()

    @pytest.mark.unit
    @respx.mock
    def test_invalid_body(self, provider):
        respx.get(url__startswith=SHEETS_API_BASE).mock(
            return_value=Response(200, json={"values": "not rows"})
        )

        with pytest.raises(RosterUnavailableError, match="invalid response"):
            provider.fetch_rows()

    @pytest.mark.unit
    def test_missing_configuration(self):
        with pytest.raises(RosterUnavailableError, match="Missing GOOGLE_SHEETS_ID"):
            GoogleSheetsRowProvider(sheet_id="", api_key="").fetch_rows()
