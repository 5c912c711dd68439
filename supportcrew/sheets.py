# SupportCrew – Google Sheets record sink
#
# gspread is blocking, so every call runs in a worker thread. One append at a
# time; throttled, with backoff on quota/5xx errors. Rows that still fail are
# written to a dead-letter JSONL file so reporting data is never dropped.

import asyncio
import json
import logging
import random
import time
from collections import deque
from datetime import datetime, timezone as _tz
from typing import Any, Callable, Dict, List, Optional, Tuple

import gspread
from google.auth.exceptions import GoogleAuthError, TransportError
from gspread.exceptions import APIError

from supportcrew.errors import ConfigurationError, SinkWriteError

log = logging.getLogger("supportcrew.sheets")

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def _api_status(e: APIError) -> int:
    status = getattr(getattr(e, "response", None), "status_code", None)
    try:
        return int(status)
    except (TypeError, ValueError):
        return 0


def _is_retryable(e: Exception) -> bool:
    if isinstance(e, APIError):
        return _api_status(e) in RETRYABLE_STATUS or "429" in str(e)
    # requests' transport errors are OSErrors; google-auth wraps them during token refresh
    return isinstance(e, (OSError, TransportError))


def _sleep_ms(ms: int):
    if ms > 0:
        time.sleep(ms / 1000.0)


def with_backoff(callable_fn, *a, attempts: int = 5, base_delay: float = 0.5, **k):
    delay = base_delay
    for attempt in range(1, attempts + 1):
        try:
            return callable_fn(*a, **k)
        except (APIError, OSError, TransportError) as e:
            if not _is_retryable(e) or attempt == attempts:
                raise
            log.warning("Sheets call failed (attempt %d/%d): %s; retrying", attempt, attempts, e)
            _sleep_ms(int(delay * 1000 + random.randint(0, 200)))
            delay *= 2


class SheetsSink:
    """Append-only writer for the three lifecycle tabs."""

    def __init__(self, spreadsheet_id: str, credentials: Dict[str, Any], *,
                 max_retries: int = 5, throttle_ms: int = 200,
                 dead_letter_path: Optional[str] = "dead_letters.jsonl",
                 client_factory: Callable[[Dict[str, Any]], Any] = gspread.service_account_from_dict):
        self.spreadsheet_id = spreadsheet_id
        self._credentials = credentials
        self._client_factory = client_factory
        self.max_retries = max_retries
        self.throttle_ms = throttle_ms
        self.dead_letter_path = dead_letter_path
        self.dead_letters: deque = deque(maxlen=50)
        self.dead_letter_count = 0
        self._sh = None
        self._ws_cache: Dict[str, Tuple[Any, List[str]]] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings) -> "SheetsSink":
        return cls(
            settings.spreadsheet_id, settings.google_credentials,
            max_retries=settings.sheets_max_retries,
            throttle_ms=settings.sheets_throttle_ms,
            dead_letter_path=settings.dead_letter_path,
        )

    @property
    def service_account_email(self) -> str:
        return str(self._credentials.get("client_email", ""))

    @property
    def started(self) -> bool:
        return self._sh is not None

    # ---------- lifecycle ----------
    async def start(self):
        if self._sh is not None:
            return
        try:
            self._sh = await asyncio.to_thread(self._open)
        except (APIError, gspread.SpreadsheetNotFound, GoogleAuthError, ValueError, OSError) as e:
            raise ConfigurationError(
                f"cannot open spreadsheet {self.spreadsheet_id}: {e} "
                f"(is it shared with {self.service_account_email or 'the service account'}?)"
            ) from e
        log.info("Sheets ready: %s", getattr(self._sh, "title", self.spreadsheet_id))

    async def stop(self):
        async with self._lock:
            self._ws_cache.clear()
            self._sh = None

    def _open(self):
        client = self._client_factory(self._credentials)
        return with_backoff(client.open_by_key, self.spreadsheet_id, attempts=self.max_retries)

    # ---------- worksheets ----------
    def get_ws(self, name: str, want_headers: List[str]) -> Tuple[Any, List[str]]:
        if name in self._ws_cache:
            return self._ws_cache[name]
        if self._sh is None:
            self._sh = self._open()
        try:
            ws = with_backoff(self._sh.worksheet, name, attempts=self.max_retries)
            header = [h.strip() for h in with_backoff(ws.row_values, 1, attempts=self.max_retries)]
        except gspread.WorksheetNotFound:
            ws = with_backoff(self._sh.add_worksheet, title=name, rows=1000,
                              cols=max(10, len(want_headers)), attempts=self.max_retries)
            with_backoff(ws.append_row, list(want_headers), attempts=self.max_retries)
            header = list(want_headers)
            log.info("Created worksheet '%s' with headers %s", name, header)
        if not any(header):
            with_backoff(ws.update, values=[list(want_headers)], range_name="A1", attempts=self.max_retries)
            header = list(want_headers)
        else:
            missing = [h for h in want_headers if h.lower() not in {x.lower() for x in header}]
            if missing:
                log.warning("Worksheet '%s' has no column(s) %s; those values will be skipped", name, missing)
        self._ws_cache[name] = (ws, header)
        return ws, header

    @staticmethod
    def row_for(header: List[str], row: Dict[str, str]) -> List[str]:
        lowered = {k.lower(): v for k, v in row.items()}
        return [lowered.get(h.strip().lower(), "") for h in header]

    def _append_sync(self, sheet_name: str, record) -> None:
        ws, header = self.get_ws(sheet_name, list(record.HEADERS))
        values = self.row_for(header, record.as_row())
        _sleep_ms(self.throttle_ms)
        # USER_ENTERED so the creation-tab formulas are evaluated
        with_backoff(ws.append_row, values, value_input_option="USER_ENTERED", attempts=self.max_retries)

    # ---------- public ----------
    async def append_row(self, sheet_name: str, record) -> None:
        async with self._lock:
            try:
                await asyncio.to_thread(self._append_sync, sheet_name, record)
            except (APIError, gspread.exceptions.GSpreadException, GoogleAuthError, OSError) as e:
                self._ws_cache.pop(sheet_name, None)
                self._dead_letter(sheet_name, record, e)
                raise SinkWriteError(sheet_name, str(e), attempts=self.max_retries) from e
        log.debug("Appended %s row to '%s': %s", record.SHEET_KIND, sheet_name, record.as_row().get("post_id"))

    def _dead_letter(self, sheet_name: str, record, error: Exception):
        entry = {
            "ts": datetime.now(_tz.utc).isoformat(),
            "sheet": sheet_name,
            "kind": record.SHEET_KIND,
            "row": record.as_row(),
            "error": f"{type(error).__name__}: {error}",
        }
        self.dead_letters.appendleft(entry)
        self.dead_letter_count += 1
        log.error("Sheets append to '%s' failed, dead-lettered: %s | row=%s", sheet_name, entry["error"], entry["row"])
        if not self.dead_letter_path:
            return
        try:
            with open(self.dead_letter_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry) + "\n")
        except OSError as e:
            log.exception("Could not write dead-letter file %s: %s", self.dead_letter_path, e)

    async def status(self) -> Dict[str, Any]:
        def _read():
            if self._sh is None:
                self._sh = self._open()
            return {"title": self._sh.title, "tabs": [ws.title for ws in self._sh.worksheets()]}
        async with self._lock:
            return await asyncio.to_thread(_read)
