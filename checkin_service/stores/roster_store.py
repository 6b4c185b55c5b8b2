"""Google Sheets-backed roster: the student table and the QR-code table.

Both tables are read whole (header row included). Batch jobs write them
whole; a check-in writes only its own attendance cell. There is no
row-level locking, so concurrent whole-table writers race and the last
write wins.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from typing import Protocol
from urllib.parse import quote

import httpx

from checkin_service.google_api import raise_for_google_status, request_with_retry

logger = logging.getLogger(__name__)

_SHEETS_API = "https://sheets.googleapis.com/v4/spreadsheets"
_SPREADSHEET_ID_RE = re.compile(r"/spreadsheets/d/([a-zA-Z0-9-_]+)")


class TokenSource(Protocol):
    async def token(self) -> str: ...


def extract_spreadsheet_id(url: str) -> str:
    match = _SPREADSHEET_ID_RE.search(url or "")
    if not match:
        raise ValueError("Invalid Google Sheets URL")
    return match.group(1)


class SheetsRosterStore:
    """Stateless data-access object over two sheet ranges."""

    def __init__(
        self,
        *,
        spreadsheet_id: str,
        student_sheet: str,
        qr_sheet: str,
        tokens: TokenSource,
        http: httpx.AsyncClient,
    ) -> None:
        self._spreadsheet_id = spreadsheet_id
        self._student_sheet = student_sheet
        self._student_range = f"{student_sheet}!A:ZZ"
        self._qr_range = f"{qr_sheet}!A:B"
        self._tokens = tokens
        self._http = http

    async def read_students(self) -> list[list[str]]:
        return await self._read(self._student_range)

    async def write_students(self, rows: Sequence[Sequence[str]]) -> None:
        await self._write(self._student_range, rows)

    async def update_student_cell(self, row_index: int, column: int, value: str) -> None:
        """Write one cell of the student table, leaving every other cell untouched.

        ``row_index`` and ``column`` are 0-based, with row 0 the header row.
        """
        cell = f"{self._student_sheet}!{column_letter(column)}{row_index + 1}"
        await self._write(cell, [[value]])

    async def read_qr_codes(self) -> list[list[str]]:
        return await self._read(self._qr_range)

    async def write_qr_codes(self, rows: Sequence[Sequence[str]]) -> None:
        await self._write(self._qr_range, rows)

    async def find_qr_code(self, student_id: str) -> str | None:
        for row in await self.read_qr_codes():
            if row and row[0] == student_id and len(row) > 1 and row[1]:
                return row[1]
        return None

    async def upsert_qr_codes(self, links: Mapping[str, str]) -> dict[str, str]:
        """Set the QR URL for each student id; returns ``added``/``updated`` per id."""
        rows = [list(r) for r in await self.read_qr_codes()]
        actions = apply_qr_links(rows, links)
        await self.write_qr_codes(rows)
        return actions

    async def _read(self, sheet_range: str) -> list[list[str]]:
        resp = await request_with_retry(
            self._http,
            "GET",
            self._values_url(sheet_range),
            headers=await self._headers(),
        )
        raise_for_google_status(resp, f"Reading {sheet_range}")
        values = resp.json().get("values") or []
        return [[str(c) for c in row] for row in values]

    async def _write(self, sheet_range: str, rows: Sequence[Sequence[str]]) -> None:
        resp = await request_with_retry(
            self._http,
            "PUT",
            self._values_url(sheet_range),
            headers=await self._headers(),
            params={"valueInputOption": "RAW"},
            json={
                "range": sheet_range,
                "majorDimension": "ROWS",
                "values": [list(r) for r in rows],
            },
        )
        raise_for_google_status(resp, f"Writing {sheet_range}")
        logger.info("Wrote %d rows to %s", len(rows), sheet_range)

    def _values_url(self, sheet_range: str) -> str:
        return f"{_SHEETS_API}/{self._spreadsheet_id}/values/{quote(sheet_range, safe='')}"

    async def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {await self._tokens.token()}"}


def column_letter(column: int) -> str:
    """A1-notation letters for a 0-based column index (0 -> A, 26 -> AA)."""
    if column < 0:
        raise ValueError("column must be >= 0")
    letters = ""
    n = column + 1
    while n:
        n, rem = divmod(n - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return letters


def apply_qr_links(rows: list[list[str]], links: Mapping[str, str]) -> dict[str, str]:
    """Upsert ``studentId -> url`` pairs into a two-column QR table in place."""
    actions: dict[str, str] = {}
    for student_id, url in links.items():
        for row in rows:
            if row and row[0] == student_id:
                if len(row) < 2:
                    row.append("")
                row[1] = url
                actions[student_id] = "updated"
                break
        else:
            rows.append([student_id, url])
            actions[student_id] = "added"
    return actions
