from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pandas as pd
import pytest
import requests

import kh03_etl

BY_SPECIALTY_HEADER = [
    "Year",
    "Period End",
    "Region Code",
    "Org Code",
    "Org Name",
    "100 General Surgery",
    "101 Urology",
    "501 Obstetrics",
    "710 Adult Mental Illness",
]


def trust_row(
    org_code: str,
    org_name: str,
    *,
    available: Sequence = (0, 0, 0, 0),
    occupied: Sequence = (0, 0, 0, 0),
    year: str = "2013-14",
    period_end: str = "March",
) -> list:
    """One 22-column "NHS Trust by Sector" row; group order is G&A, LD, maternity, MI."""
    row = [None] * 22
    row[0] = year
    row[1] = period_end
    row[2] = "Y56"
    row[3] = org_code
    row[4] = org_name
    row[6:10] = list(available)
    row[12:16] = list(occupied)
    return row


def write_kh03_workbook(
    path: Path,
    trust_rows: List[list],
    specialty_rows: List[list],
    *,
    specialty_header: Optional[List[str]] = None,
    specialty_skip_rows: int = 14,
    trust_sheet: str = kh03_etl.OVERALL_SHEET,
) -> Path:
    header = specialty_header or BY_SPECIALTY_HEADER
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        pd.DataFrame({"title": [f"KH03 beds open overnight ({i})" for i in range(17)]}).to_excel(
            writer, sheet_name=trust_sheet, header=False, index=False
        )
        pd.DataFrame(trust_rows).to_excel(writer, sheet_name=trust_sheet, startrow=17, header=False, index=False)

        pd.DataFrame({"title": [f"Occupied by specialty ({i})" for i in range(specialty_skip_rows)]}).to_excel(
            writer, sheet_name=kh03_etl.BY_SPECIALTY_SHEET, header=False, index=False
        )
        pd.DataFrame(specialty_rows, columns=header).to_excel(
            writer, sheet_name=kh03_etl.BY_SPECIALTY_SHEET, startrow=specialty_skip_rows, index=False
        )
    return path


def specialty_row(org_code: str, values: Sequence) -> list:
    return ["2013-14", "March", "Y56", org_code, f"{org_code} NHS TRUST"] + list(values)


@pytest.fixture()
def kh03_workbook(tmp_path):
    """A 2013-14 Q4 style workbook with one maternity-only trust and one all-zero trust."""
    trusts = [
        trust_row("RXX", "EXAMPLE NHS TRUST", available=(0, 0, 5, 0), occupied=(0, 0, 3, 0)),
        trust_row("RZZ", "EMPTY NHS TRUST"),
    ]
    specialties = [
        specialty_row("RXX", [0, None, 3, None]),
        specialty_row("RZZ", [0, 0, 0, 0]),
    ]
    return write_kh03_workbook(tmp_path / "kh03.xlsx", trusts, specialties)


class FakeResponse:
    def __init__(self, body: bytes = b"", *, content_type: str = "application/vnd.ms-excel", status: int = 200):
        self.body = body
        self.status_code = status
        self.headers = {"Content-Type": content_type}
        self.text = body.decode("utf-8", errors="replace")

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def iter_content(self, chunk_size: int = 1024):
        for i in range(0, len(self.body), chunk_size):
            yield self.body[i : i + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    """Serves canned responses by URL in place of `kh03_etl.SESSION.get`."""

    def __init__(self, routes: Dict[str, FakeResponse]):
        self.routes = routes
        self.requested: List[str] = []

    def get(self, url, **kwargs):
        self.requested.append(url)
        if url not in self.routes:
            return FakeResponse(b"not found", content_type="text/plain", status=404)
        return self.routes[url]


@pytest.fixture()
def fake_session(monkeypatch):
    def install(routes: Dict[str, FakeResponse]) -> FakeSession:
        session = FakeSession(routes)
        monkeypatch.setattr(kh03_etl.SESSION, "get", session.get)
        return session

    return install
