import json
from unittest.mock import MagicMock

import gspread
import pytest
from google.auth.exceptions import RefreshError, TransportError
from gspread.exceptions import APIError

from conftest import T0, make_message, make_thread
from supportcrew.errors import ConfigurationError, SinkWriteError
from supportcrew import sheets
from supportcrew.sheets import SheetsSink, with_backoff
from supportcrew.lifecycle import build_first_response_record

CREDS = {"client_email": "bot@example.iam.gserviceaccount.com", "private_key": "k", "token_uri": "t"}


def api_error(status: int, message: str = "boom") -> APIError:
    response = MagicMock()
    response.status_code = status
    response.text = message
    response.json.return_value = {"error": {"code": status, "message": message, "status": "ERR"}}
    return APIError(response)


class SheetFactory:
    """gspread client double: one spreadsheet with configurable worksheets."""

    @staticmethod
    def create(headers=None, missing=False):
        ws = MagicMock(name="worksheet")
        ws.row_values.return_value = list(headers) if headers is not None else ["post_id", "first_response", "responder"]
        sh = MagicMock(name="spreadsheet")
        sh.title = "Support log"
        if missing:
            sh.worksheet.side_effect = gspread.WorksheetNotFound("response")
            sh.add_worksheet.return_value = ws
        else:
            sh.worksheet.return_value = ws
        client = MagicMock(name="client")
        client.open_by_key.return_value = sh
        return client, sh, ws


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    slept = []
    monkeypatch.setattr(sheets, "_sleep_ms", lambda ms: slept.append(ms))
    return slept


def _sink(client, tmp_path=None, **kw):
    path = str(tmp_path / "dead.jsonl") if tmp_path else None
    return SheetsSink("sheet-id", CREDS, dead_letter_path=path, client_factory=lambda info: client, **kw)


def _record():
    return build_first_response_record(make_thread(), make_message(1003, 20, T0), 0)


@pytest.mark.asyncio
async def test_start_opens_spreadsheet():
    client, sh, _ = SheetFactory.create()
    sink = _sink(client)
    await sink.start()
    assert sink.started
    client.open_by_key.assert_called_once_with("sheet-id")
    await sink.stop()
    assert not sink.started


@pytest.mark.asyncio
async def test_start_unreachable_spreadsheet_is_configuration_error():
    client, _, _ = SheetFactory.create()
    client.open_by_key.side_effect = api_error(404, "Requested entity was not found")
    with pytest.raises(ConfigurationError) as exc:
        await _sink(client).start()
    assert "bot@example.iam.gserviceaccount.com" in str(exc.value)


@pytest.mark.asyncio
async def test_append_orders_values_by_sheet_header():
    client, sh, ws = SheetFactory.create(headers=["post_id", "Responder", "first_response", "notes"])
    await _sink(client).append_row("response", _record())
    ws.append_row.assert_called_once_with(
        ["1000", "user20", "11/14/2023 22:13:20", ""], value_input_option="USER_ENTERED"
    )
    sh.worksheet.assert_called_once_with("response")


@pytest.mark.asyncio
async def test_missing_worksheet_is_created_with_headers():
    client, sh, ws = SheetFactory.create(missing=True)
    await _sink(client).append_row("response", _record())
    sh.add_worksheet.assert_called_once()
    assert sh.add_worksheet.call_args.kwargs["title"] == "response"
    first, second = ws.append_row.call_args_list
    assert first.args[0] == ["post_id", "first_response", "responder"]
    assert second.args[0] == ["1000", "11/14/2023 22:13:20", "user20"]


@pytest.mark.asyncio
async def test_blank_header_row_gets_headers():
    client, _, ws = SheetFactory.create(headers=[])
    await _sink(client).append_row("response", _record())
    ws.update.assert_called_once_with(values=[["post_id", "first_response", "responder"]], range_name="A1")


@pytest.mark.asyncio
async def test_worksheet_lookup_is_cached():
    client, sh, ws = SheetFactory.create()
    sink = _sink(client)
    await sink.append_row("response", _record())
    await sink.append_row("response", _record())
    assert sh.worksheet.call_count == 1
    assert ws.append_row.call_count == 2


@pytest.mark.asyncio
async def test_quota_error_is_retried(no_sleep):
    client, _, ws = SheetFactory.create()
    ws.append_row.side_effect = [api_error(429, "Quota exceeded"), None]
    sink = _sink(client, throttle_ms=0)
    await sink.append_row("response", _record())
    assert ws.append_row.call_count == 2
    assert len([ms for ms in no_sleep if ms > 0]) == 1
    assert sink.dead_letter_count == 0


@pytest.mark.asyncio
async def test_exhausted_retries_dead_letter_the_row(tmp_path):
    client, _, ws = SheetFactory.create()
    ws.append_row.side_effect = api_error(503, "backend error")
    sink = _sink(client, tmp_path, max_retries=3)
    with pytest.raises(SinkWriteError) as exc:
        await sink.append_row("response", _record())
    assert exc.value.sheet_name == "response"
    assert ws.append_row.call_count == 3
    assert sink.dead_letter_count == 1
    lines = (tmp_path / "dead.jsonl").read_text().splitlines()
    entry = json.loads(lines[0])
    assert entry["sheet"] == "response"
    assert entry["kind"] == "response"
    assert entry["row"]["post_id"] == "1000"
    assert sink.dead_letters[0] == entry


@pytest.mark.asyncio
async def test_client_error_is_not_retried(tmp_path):
    client, _, ws = SheetFactory.create()
    ws.append_row.side_effect = api_error(400, "Invalid range")
    sink = _sink(client, tmp_path)
    with pytest.raises(SinkWriteError):
        await sink.append_row("response", _record())
    assert ws.append_row.call_count == 1


def test_with_backoff_retries_transport_errors():
    fn = MagicMock(side_effect=[ConnectionError("reset"), "ok"])
    assert with_backoff(fn, 1, attempts=3) == "ok"
    assert fn.call_count == 2


def test_with_backoff_raises_last_error():
    fn = MagicMock(side_effect=ConnectionError("reset"))
    with pytest.raises(ConnectionError):
        with_backoff(fn, attempts=2)
    assert fn.call_count == 2


@pytest.mark.asyncio
async def test_status_lists_tabs():
    client, sh, _ = SheetFactory.create()
    tab = MagicMock(); tab.title = "init"
    sh.worksheets.return_value = [tab]
    info = await _sink(client).status()
    assert info == {"title": "Support log", "tabs": ["init"]}


@pytest.mark.asyncio
async def test_token_refresh_transport_error_is_retried_then_dead_lettered(tmp_path):
    client, _, ws = SheetFactory.create()
    ws.append_row.side_effect = TransportError("oauth2.googleapis.com unreachable")
    sink = _sink(client, tmp_path, max_retries=2)
    with pytest.raises(SinkWriteError):
        await sink.append_row("response", _record())
    assert ws.append_row.call_count == 2
    assert sink.dead_letter_count == 1
    assert "TransportError" in sink.dead_letters[0]["error"]


@pytest.mark.asyncio
async def test_refresh_error_is_dead_lettered_without_retry(tmp_path):
    client, _, ws = SheetFactory.create()
    ws.append_row.side_effect = RefreshError("invalid_grant")
    sink = _sink(client, tmp_path)
    with pytest.raises(SinkWriteError):
        await sink.append_row("response", _record())
    assert ws.append_row.call_count == 1
    assert json.loads((tmp_path / "dead.jsonl").read_text())["row"]["post_id"] == "1000"
