"""KH03 overnight bed availability & occupancy ETL pipeline.

This project builds a repeatable ETL pipeline for the NHS England quarterly KH03 return
("Bed Availability and Occupancy Data – Overnight").

It scrapes the NHS England overnight bed data page, downloads one workbook per reporting quarter and
reshapes two differently-shaped sheets into a single tidy table per quarter:

* **NHS Trust by Sector**
  * Available / occupied beds per trust for four specialty groups
    (general & acute, learning disabilities, maternity, mental illness)

* **Occupied by Specialty**
  * Occupied beds per trust for every individual specialty code

The specialty codes are classified into the four groups, joined against the trust totals and nested so
that each output row (quarter × trust × specialty group) carries its group totals plus a ``by_specialty``
sub-table with the specialty-level detail.

Workbook layouts changed over time (file format and header offsets); each era is described by an
explicit :class:`SchemaProfile`.
"""

from __future__ import annotations

import argparse
import hashlib
import os
import re
import shutil
import subprocess
import sys
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union
from urllib.parse import urljoin

import numpy as np
import pandas as pd
import requests
from bs4 import BeautifulSoup
from dateutil.relativedelta import relativedelta


# Shared session for keep-alive and browser-like headers. Proxy environment variables are ignored to
# avoid hanging on misconfigured proxies.
SESSION = requests.Session()
SESSION.headers.update(
    {
        "User-Agent": (
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/121.0 Safari/537.36"
        ),
        "Accept": "*/*",
        "Accept-Language": "en-GB,en;q=0.9",
    }
)
SESSION.trust_env = False

# Relative `--out` paths are anchored to the folder containing this project (parent of `src/`) so that
# reruns from a different working directory write to the same place.
PROJECT_ROOT = Path(__file__).resolve().parent.parent

INDEX_URL = os.environ.get("KH03_INDEX_URL") or "/".join(
    [
        "https://www.england.nhs.uk",
        "statistics",
        "statistical-work-areas",
        "bed-availability-and-occupancy",
        "bed-data-overnight",
    ]
)

# Anchor text as published, e.g.
# "Beds Open Overnight, NHS organisations in England, Quarter 1, 2019-20 (XLS, 150KB)"
LINK_TEXT_PATTERN = re.compile(r"NHS organisations in England, Quarter.*XLS", flags=re.S)
LINK_QUARTER_PATTERN = re.compile(r"^.*Quarter (.), (.{7}).*$", flags=re.S)

QUARTER_LABEL_PATTERN = re.compile(r"^(\d{4})-(\d{2}) Q([1-4])$")

OVERALL_SHEET = "NHS Trust by Sector"
BY_SPECIALTY_SHEET = "Occupied by Specialty"

OVERALL_ID_COLUMNS = ["year", "period_end", "org_code", "org_name"]

# Column index -> name for the "NHS Trust by Sector" sheet. The remaining positions of the 22 column
# layout are merged/decorative header cells and are discarded.
OVERALL_COLUMNS: Dict[int, str] = {
    0: "year",
    1: "period_end",
    3: "org_code",
    4: "org_name",
    6: "available_general_and_acute",
    7: "available_learning_disabilities",
    8: "available_maternity",
    9: "available_mental_illness",
    12: "occupied_general_and_acute",
    13: "occupied_learning_disabilities",
    14: "occupied_maternity",
    15: "occupied_mental_illness",
}
OVERALL_WIDTH = 22

DEFAULT_SPECIALTY_GROUP = "general_and_acute"
SPECIALTY_GROUPS: Dict[str, Tuple[str, ...]] = {
    "maternity": ("501",),
    "learning_disabilities": ("700",),
    "mental_illness": ("710", "711", "712", "713", "715"),
}

GROUP_KEYS = OVERALL_ID_COLUMNS + ["specialty_group", "available_total", "occupied_total"]
NESTED_COLUMNS = ["specialty_code", "specialty_name", "occupied"]
OUTPUT_COLUMNS = [
    "quarter",
    "period_start",
    "period_end",
    "org_code",
    "org_name",
    "specialty_group",
    "available_total",
    "occupied_total",
    "by_specialty",
]


# ---------------------------------------------------------------------------------------------------
# Quarters and schema profiles
# ---------------------------------------------------------------------------------------------------


@dataclass(frozen=True, order=True)
class Quarter:
    """A fiscal-year quarter, e.g. ``2013-14 Q4`` (January to March 2014)."""

    fy_start: int
    number: int

    @classmethod
    def parse(cls, label: str) -> "Quarter":
        m = QUARTER_LABEL_PATTERN.match((label or "").strip())
        if not m:
            raise ValueError(f"Malformed quarter label {label!r}; expected 'YYYY-YY Q<n>'")
        fy_start = int(m.group(1))
        if int(m.group(2)) != (fy_start + 1) % 100:
            raise ValueError(f"Malformed quarter label {label!r}; financial years must be consecutive")
        return cls(fy_start=fy_start, number=int(m.group(3)))

    @property
    def label(self) -> str:
        return f"{self.fy_start}-{str(self.fy_start + 1)[-2:]} Q{self.number}"

    @property
    def period_start(self) -> date:
        # Q1 starts in April of the first financial year.
        return date(self.fy_start, 4, 1) + relativedelta(months=3 * (self.number - 1))

    @property
    def period_end(self) -> date:
        return self.period_start + relativedelta(months=3) - relativedelta(days=1)

    def __str__(self) -> str:
        return self.label


def as_quarter(quarter: Union[Quarter, str]) -> Quarter:
    return quarter if isinstance(quarter, Quarter) else Quarter.parse(quarter)


@dataclass(frozen=True)
class SchemaProfile:
    """Workbook layout for one era of KH03 publications."""

    name: str
    since: Optional[Quarter]
    file_extension: str
    by_specialty_skip_rows: int
    overall_sheet: str = OVERALL_SHEET
    overall_skip_rows: int = 17
    overall_columns: Dict[int, str] = field(default_factory=lambda: dict(OVERALL_COLUMNS))
    overall_width: int = OVERALL_WIDTH
    by_specialty_sheet: str = BY_SPECIALTY_SHEET
    by_specialty_org_code_column: int = 3
    by_specialty_dropped_columns: Tuple[int, ...] = (0, 1, 2, 4)


PRE_2010_Q3 = SchemaProfile(name="pre_2010_q3", since=None, file_extension=".xls", by_specialty_skip_rows=3)
FROM_2010_Q3 = SchemaProfile(
    name="from_2010_q3", since=Quarter(2010, 3), file_extension=".xls", by_specialty_skip_rows=13
)
FROM_2013_Q4 = SchemaProfile(
    name="from_2013_q4", since=Quarter(2013, 4), file_extension=".xlsx", by_specialty_skip_rows=14
)

# Newest first; the first profile whose `since` is not after the quarter wins.
SCHEMA_PROFILES: Tuple[SchemaProfile, ...] = (FROM_2013_Q4, FROM_2010_Q3, PRE_2010_Q3)


def select_schema_profile(quarter: Union[Quarter, str]) -> SchemaProfile:
    q = as_quarter(quarter)
    for profile in SCHEMA_PROFILES:
        if profile.since is None or q >= profile.since:
            return profile
    raise ValueError(f"No schema profile for quarter {q}")


# ---------------------------------------------------------------------------------------------------
# Source locator
# ---------------------------------------------------------------------------------------------------


@dataclass(frozen=True)
class SourceFile:
    url: str
    quarter: str


def fetch_index_page(url: str, timeout_s: int = 60) -> str:
    r = SESSION.get(url, timeout=timeout_s)
    r.raise_for_status()
    return r.text


def extract_kh03_links(html: str, base_url: str = INDEX_URL) -> List[SourceFile]:
    """Extract the quarterly KH03 workbook links from the overnight bed data page.

    The page lists quarters newest first; the result is reversed so that it runs oldest first.
    A page without any matching anchors yields an empty list.
    """
    soup = BeautifulSoup(html, "html.parser")

    found: List[SourceFile] = []
    seen = set()
    for a in soup.find_all("a"):
        text = a.get_text() or ""
        href = a.get("href")
        if not href or not LINK_TEXT_PATTERN.search(text):
            continue

        url = urljoin(base_url, href.strip())
        if url in seen:
            continue
        seen.add(url)

        quarter = LINK_QUARTER_PATTERN.sub(r"\2 Q\1", text.strip())
        found.append(SourceFile(url=url, quarter=quarter))

    found.reverse()
    return found


def get_kh03_filelist(url: Optional[str] = None) -> List[SourceFile]:
    url = url or INDEX_URL
    return extract_kh03_links(fetch_index_page(url), url)


# ---------------------------------------------------------------------------------------------------
# Download
# ---------------------------------------------------------------------------------------------------


@dataclass(frozen=True)
class DownloadedFile:
    url: str
    raw_path: Path
    sha256: str
    downloaded_at_utc: datetime


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def _looks_like_html(path: Path, max_bytes: int = 2048) -> bool:
    """Heuristic: detect when a downloaded "Excel" file is actually HTML.

    This happens when the server returns an interstitial or error page under the workbook URL.
    """
    with path.open("rb") as f:
        head = f.read(max_bytes)
    if not head:
        return False
    h = head.lstrip().lower()
    return h.startswith(b"<html") or h.startswith(b"<!doctype") or b"<head" in h[:200]


def download(url: str, dest: Path, timeout_s: Optional[int] = None, *, verbose: bool = False) -> DownloadedFile:
    """Download a workbook to `dest`. There are no retries; HTTP errors propagate."""
    ensure_dir(dest.parent)
    if timeout_s is None:
        timeout_s = int(os.environ.get("KH03_DOWNLOAD_TIMEOUT_S", "180"))

    if verbose:
        print(f"Downloading {url}")

    # Connect/read timeout pair to reduce hanging connections.
    with SESSION.get(url, stream=True, timeout=(20, timeout_s), allow_redirects=True) as r:
        r.raise_for_status()

        ctype = (r.headers.get("Content-Type") or "").lower()
        if "text/html" in ctype:
            raise RuntimeError(f"Download returned HTML, not an Excel file: {url}")

        with dest.open("wb") as f:
            for chunk in r.iter_content(chunk_size=1024 * 256):
                if chunk:
                    f.write(chunk)

    if _looks_like_html(dest):
        raise RuntimeError(f"Downloaded content looks like HTML (blocked/interstitial): {url}")

    return DownloadedFile(
        url=url,
        raw_path=dest,
        sha256=sha256_file(dest),
        downloaded_at_utc=datetime.now(timezone.utc).replace(tzinfo=None),
    )


@contextmanager
def downloaded_workbook(
    url: str, suffix: str, timeout_s: Optional[int] = None, *, verbose: bool = False
) -> Iterator[DownloadedFile]:
    """Download `url` into a private temporary directory that is removed when the block exits."""
    with tempfile.TemporaryDirectory(prefix="kh03_") as tmp:
        dest = Path(tmp) / f"kh03{suffix}"
        yield download(url, dest, timeout_s, verbose=verbose)


def _soffice_user_profile_dir(base: Path) -> Path:
    """Create a unique LibreOffice user profile directory.

    Headless conversions can hang on a stale profile lock or on a relative ``file://`` URI, so each run
    gets its own absolute profile directory.
    """
    base = base.resolve()
    root = base / "_lo_profile"
    ensure_dir(root)
    run_dir = root / f"run_{os.getpid()}_{int(time.time() * 1000)}"
    ensure_dir(run_dir)
    return run_dir


def libreoffice_convert_xls_to_xlsx(xls_path: Path, out_dir: Path) -> Path:
    """Convert a legacy .xls workbook into .xlsx using LibreOffice headless conversion."""
    out_dir = out_dir.resolve()
    xls_path = xls_path.resolve()
    ensure_dir(out_dir)

    soffice = os.environ.get("KH03_SOFFICE_PATH", "soffice")
    timeout_s = int(os.environ.get("KH03_LIBREOFFICE_TIMEOUT_S", "300"))

    profile = _soffice_user_profile_dir(out_dir)
    profile_uri = profile.resolve().as_uri()

    cmd = [
        soffice,
        "--headless",
        "--nologo",
        "--nofirststartwizard",
        "--norestore",
        f"-env:UserInstallation={profile_uri}",
        "--convert-to",
        "xlsx",
        "--outdir",
        str(out_dir),
        str(xls_path),
    ]

    print(f"Converting (LibreOffice): {xls_path.name}")
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout_s)
    except subprocess.TimeoutExpired as e:
        raise RuntimeError(
            f"LibreOffice conversion timed out after {timeout_s}s for {xls_path}. "
            f"Increase KH03_LIBREOFFICE_TIMEOUT_S if needed. Command: {' '.join(cmd)}"
        ) from e
    finally:
        if os.environ.get("KH03_KEEP_LO_PROFILE", "0") not in ("1", "true", "True"):
            shutil.rmtree(profile, ignore_errors=True)

    if proc.returncode != 0:
        raise RuntimeError(
            f"LibreOffice conversion failed for {xls_path}:\nSTDOUT:\n{proc.stdout}\nSTDERR:\n{proc.stderr}"
        )

    out_path = out_dir / (xls_path.stem + ".xlsx")
    if not out_path.exists():
        raise FileNotFoundError(f"Expected converted file not found: {out_path}")
    return out_path


# ---------------------------------------------------------------------------------------------------
# Quarterly reshaper
# ---------------------------------------------------------------------------------------------------


def _excel_engine(path: Path) -> str:
    return "openpyxl" if path.suffix.lower() == ".xlsx" else "xlrd"


def _open_sheet(path: Path, sheet_name: str, **kwargs) -> pd.DataFrame:
    """Read one named sheet, matching the name case-insensitively."""
    with pd.ExcelFile(path, engine=_excel_engine(path)) as xl:
        wanted = sheet_name.strip().lower()
        sheet = next((s for s in xl.sheet_names if s.strip().lower() == wanted), None)
        if sheet is None:
            raise ValueError(f"No '{sheet_name}' sheet found in {path.name}")
        return xl.parse(sheet_name=sheet, **kwargs)


def _clean_code(s: pd.Series) -> pd.Series:
    out = s.astype(str).str.strip()
    return out.where(s.notna() & out.ne(""))


def read_overall_table(path: Path, profile: SchemaProfile) -> pd.DataFrame:
    """Read "NHS Trust by Sector" into long form.

    Returns
    -------
    pd.DataFrame
        Columns: year, period_end, org_code, org_name, specialty_group, available, occupied
    """
    raw = _open_sheet(path, profile.overall_sheet, header=None, skiprows=profile.overall_skip_rows)
    if raw.shape[1] > profile.overall_width:
        raise ValueError(
            f"'{profile.overall_sheet}' in {path.name} has {raw.shape[1]} columns, "
            f"expected at most {profile.overall_width}"
        )
    raw = raw.reindex(columns=range(profile.overall_width))

    df = raw[list(profile.overall_columns)].rename(columns=profile.overall_columns).copy()
    df["org_code"] = _clean_code(df["org_code"])
    df = df[df["org_code"].notna()].copy()
    columns = OVERALL_ID_COLUMNS + ["specialty_group", "available", "occupied"]
    if df.empty:
        return pd.DataFrame(columns=columns)
    df["org_name"] = df["org_name"].where(df["org_name"].isna(), df["org_name"].astype(str).str.strip())

    long = df.melt(id_vars=OVERALL_ID_COLUMNS, var_name="name", value_name="value")
    long[["type", "specialty_group"]] = long["name"].str.split("_", n=1, expand=True)
    long["value"] = pd.to_numeric(long["value"], errors="coerce")
    long = long.dropna(subset=["value"])

    if long.empty:
        return pd.DataFrame(columns=columns)

    wide = (
        long.set_index(OVERALL_ID_COLUMNS + ["specialty_group", "type"])["value"]
        .unstack("type")
        .reset_index()
    )
    wide.columns.name = None
    return wide.reindex(columns=columns)


def read_by_specialty_table(path: Path, profile: SchemaProfile) -> pd.DataFrame:
    """Read "Occupied by Specialty" into long form (one row per trust × specialty).

    Returns
    -------
    pd.DataFrame
        Columns: org_code, specialty_code, specialty_name, occupied
    """
    raw = _open_sheet(path, profile.by_specialty_sheet, header=0, skiprows=profile.by_specialty_skip_rows)
    if raw.shape[1] <= profile.by_specialty_org_code_column:
        raise ValueError(f"'{profile.by_specialty_sheet}' in {path.name} has no organisation code column")

    keep = [
        i
        for i in range(raw.shape[1])
        if i not in profile.by_specialty_dropped_columns and i != profile.by_specialty_org_code_column
    ]
    df = raw.iloc[:, [profile.by_specialty_org_code_column] + keep].copy()
    df.columns = ["org_code"] + [str(c).strip() for c in df.columns[1:]]

    # Blank header cells come through as "Unnamed: N".
    specialty_cols = [c for c in df.columns[1:] if c and not c.startswith("Unnamed:")]
    df = df[["org_code"] + specialty_cols].copy()

    df["org_code"] = _clean_code(df["org_code"])
    df = df[df["org_code"].notna()]

    long = df.melt(id_vars="org_code", var_name="specialty", value_name="occupied")
    parts = long["specialty"].str.extract(r"^([A-Za-z0-9]+)(?:[^A-Za-z0-9]+(.*))?$")
    long["specialty_code"] = parts[0]
    long["specialty_name"] = parts[1].where(parts[1].fillna("").str.strip().ne(""))
    long["occupied"] = pd.to_numeric(long["occupied"], errors="coerce")
    long = long[long["specialty_code"].notna()]

    return long[["org_code"] + NESTED_COLUMNS].reset_index(drop=True)


def specialty_group_table() -> pd.DataFrame:
    return pd.DataFrame(
        [(group, code) for group, codes in SPECIALTY_GROUPS.items() for code in codes],
        columns=["specialty_group", "specialty_code"],
    )


def classify_specialties(by_specialty: pd.DataFrame) -> pd.DataFrame:
    """Assign every observed specialty code exactly one specialty group."""
    observed = by_specialty[["specialty_code"]].drop_duplicates()
    groups = specialty_group_table().merge(observed, on="specialty_code", how="right")
    groups["specialty_group"] = groups["specialty_group"].fillna(DEFAULT_SPECIALTY_GROUP)
    return groups.sort_values("specialty_code").reset_index(drop=True)[["specialty_group", "specialty_code"]]


def _calendar_year(year, month: int) -> int:
    m = re.match(r"^\s*(\d{4})(?:\s*[-/]\s*(\d{2,4}))?", str(year))
    if not m:
        raise ValueError(f"Unrecognised year {year!r}")
    start = int(m.group(1))
    # Financial years run April to March.
    if m.group(2) and month < 4:
        return start + 1
    return start


def parse_period_start(year, period_end) -> date:
    """Start of the quarter whose final month is given by the workbook's period end cell."""
    if isinstance(period_end, date):
        month_start = date(period_end.year, period_end.month, 1)
    else:
        text = str(period_end).strip()
        m = re.match(r"^([A-Za-z]+)\.?(?:\s+(\d{4}))?$", text)
        if not m:
            raise ValueError(f"Unrecognised period end {period_end!r}")
        try:
            month = datetime.strptime(m.group(1)[:3].title(), "%b").month
        except ValueError as e:
            raise ValueError(f"Unrecognised period end {period_end!r}") from e
        cal_year = int(m.group(2)) if m.group(2) else _calendar_year(year, month)
        month_start = date(cal_year, month, 1)
    return month_start - relativedelta(months=2)


def _nest_by_specialty(joined: pd.DataFrame) -> pd.DataFrame:
    keys: List[dict] = []
    subs: List[pd.DataFrame] = []
    for values, grp in joined.groupby(GROUP_KEYS, sort=True, dropna=False):
        keys.append(dict(zip(GROUP_KEYS, values)))
        subs.append(grp[NESTED_COLUMNS].sort_values("specialty_code").reset_index(drop=True))

    out = pd.DataFrame(keys, columns=GROUP_KEYS)
    cells = np.empty(len(subs), dtype=object)
    for i, sub in enumerate(subs):
        cells[i] = sub
    out["by_specialty"] = cells
    return out


def empty_output() -> pd.DataFrame:
    return pd.DataFrame(columns=OUTPUT_COLUMNS)


def reshape_kh03_workbook(
    path: Path,
    quarter: Union[Quarter, str],
    profile: Optional[SchemaProfile] = None,
    *,
    verbose: bool = False,
) -> pd.DataFrame:
    """Reshape one KH03 workbook into the nested per-quarter table.

    Returns
    -------
    pd.DataFrame
        One row per trust × specialty group with columns ``OUTPUT_COLUMNS``; ``by_specialty`` holds a
        DataFrame of specialty_code, specialty_name, occupied.
    """
    path = Path(path)
    q = as_quarter(quarter)
    profile = profile or select_schema_profile(q)

    overall = read_overall_table(path, profile)
    by_specialty = read_by_specialty_table(path, profile)
    groups = classify_specialties(by_specialty)
    if verbose:
        print(
            f"   {path.name}: {len(overall)} trust/group rows, {len(by_specialty)} trust/specialty rows, "
            f"{len(groups)} specialty codes"
        )

    totals = overall.rename(columns={"available": "available_total", "occupied": "occupied_total"})
    totals = totals[(totals["available_total"] > 0) | (totals["occupied_total"] > 0)]

    joined = totals.merge(groups, on="specialty_group", how="inner").merge(
        by_specialty, on=["org_code", "specialty_code"], how="inner"
    )
    joined = joined[joined["occupied"] > 0]
    if joined.empty:
        return empty_output()

    out = _nest_by_specialty(joined)
    starts = [parse_period_start(y, p) for y, p in zip(out["year"], out["period_end"])]
    out["period_start"] = pd.to_datetime(starts)
    out["period_end"] = pd.to_datetime([s + relativedelta(months=3) - relativedelta(days=1) for s in starts])
    out["quarter"] = q.label
    return out.drop(columns="year")[OUTPUT_COLUMNS]


def process_kh03_file(
    source: SourceFile, *, convert_xls: bool = False, verbose: bool = False
) -> Tuple[pd.DataFrame, DownloadedFile]:
    """Download and reshape one quarterly workbook. The download never outlives this call."""
    q = Quarter.parse(source.quarter)
    profile = select_schema_profile(q)
    print(f"== {q}: {source.url} ({profile.name})")

    with downloaded_workbook(source.url, profile.file_extension, verbose=verbose) as info:
        path = info.raw_path
        if convert_xls and path.suffix.lower() == ".xls":
            path = libreoffice_convert_xls_to_xlsx(path, path.parent / "_converted")
        df = reshape_kh03_workbook(path, q, profile, verbose=verbose)
    return df, info


def unnest_by_specialty(df: pd.DataFrame) -> pd.DataFrame:
    """Flatten the nested output to one row per specialty, repeating the group totals."""
    base_cols = [c for c in df.columns if c != "by_specialty"]
    if df.empty:
        return pd.DataFrame(columns=base_cols + NESTED_COLUMNS)

    df = df.reset_index(drop=True)
    lengths = [len(sub) for sub in df["by_specialty"]]
    base = df.loc[df.index.repeat(lengths), base_cols].reset_index(drop=True)
    detail = pd.concat(list(df["by_specialty"]), ignore_index=True)
    return pd.concat([base, detail], axis=1)


# ---------------------------------------------------------------------------------------------------
# Batch runner
# ---------------------------------------------------------------------------------------------------


def _in_range(q: Quarter, from_q: Optional[Quarter], to_q: Optional[Quarter]) -> bool:
    if from_q is not None and q < from_q:
        return False
    if to_q is not None and q > to_q:
        return False
    return True


def _manifest_row(quarter: str, info: DownloadedFile, rows: int, mode: str) -> dict:
    return {
        "quarter": quarter,
        "source_url": info.url,
        "source_file": info.raw_path.name,
        "sha256": info.sha256,
        "downloaded_at_utc": info.downloaded_at_utc.isoformat(),
        "rows": rows,
        "mode": mode,
    }


def run_etl(
    out_dir: Path,
    *,
    index_url: Optional[str] = None,
    from_quarter: Optional[str] = None,
    to_quarter: Optional[str] = None,
    workbook: Optional[Path] = None,
    quarter: Optional[str] = None,
    convert_xls: bool = False,
    skip_failed: bool = False,
    verbose: bool = False,
) -> pd.DataFrame:
    out_dir = Path(out_dir)
    if not out_dir.is_absolute():
        out_dir = (PROJECT_ROOT / out_dir).resolve()
    else:
        out_dir = out_dir.expanduser().resolve()

    print(f"== Using output directory: {out_dir}")

    silver = out_dir / "silver"
    gold = out_dir / "gold"
    ensure_dir(silver)
    ensure_dir(gold)
    manifest_path = out_dir / "manifest_kh03.csv"

    manifest_rows: List[dict] = []
    frames: List[pd.DataFrame] = []

    if workbook is not None:
        workbook = Path(workbook)
        if not workbook.exists():
            raise FileNotFoundError(f"workbook not found: {workbook}")
        if not quarter:
            raise ValueError("--quarter is required with --workbook")
        q = Quarter.parse(quarter)
        print(f"== Offline mode: {workbook} as {q}")

        path = workbook
        if convert_xls and path.suffix.lower() == ".xls":
            path = libreoffice_convert_xls_to_xlsx(path, out_dir / "_converted")
        df = reshape_kh03_workbook(path, q, verbose=verbose)
        info = DownloadedFile(
            url="",
            raw_path=workbook,
            sha256=sha256_file(workbook),
            downloaded_at_utc=datetime.now(timezone.utc).replace(tzinfo=None),
        )
        manifest_rows.append(_manifest_row(q.label, info, len(df), "offline"))
        frames.append(df)
    else:
        url = index_url or INDEX_URL
        print(f"== Scraping {url}")
        sources = get_kh03_filelist(url)
        if not sources:
            print(f"WARNING: no KH03 workbook links found on {url}", file=sys.stderr)

        from_q = Quarter.parse(from_quarter) if from_quarter else None
        to_q = Quarter.parse(to_quarter) if to_quarter else None

        for source in sources:
            try:
                if not _in_range(Quarter.parse(source.quarter), from_q, to_q):
                    continue
                df, info = process_kh03_file(source, convert_xls=convert_xls, verbose=verbose)
            except Exception as e:
                if not skip_failed:
                    raise
                print(f"WARNING: skipping {source.quarter} ({source.url}): {e}", file=sys.stderr)
                continue

            manifest_rows.append(_manifest_row(source.quarter, info, len(df), "online"))
            frames.append(df)

    pd.DataFrame(
        manifest_rows,
        columns=["quarter", "source_url", "source_file", "sha256", "downloaded_at_utc", "rows", "mode"],
    ).to_csv(manifest_path, index=False)

    frames = [f for f in frames if not f.empty]
    if not frames:
        raise RuntimeError("No data extracted.")

    full = pd.concat(frames, ignore_index=True)
    # A revised workbook for the same quarter is listed after the original; keep the revision.
    full = full.drop_duplicates(subset=["quarter", "org_code", "specialty_group"], keep="last")
    full = full.sort_values(["period_start", "org_code", "specialty_group"]).reset_index(drop=True)

    by_group_path = gold / "kh03_overnight_beds_by_group.csv"
    long_path = gold / "kh03_overnight_beds_by_specialty_long.csv"
    parquet_path = silver / "kh03_overnight_beds.parquet"

    full.drop(columns="by_specialty").to_csv(by_group_path, index=False)
    long = unnest_by_specialty(full)
    long.to_csv(long_path, index=False)

    try:
        long.to_parquet(parquet_path, index=False)
    except Exception as e:
        print(f"Could not write Parquet: {e}", file=sys.stderr)

    print(
        "Done. Outputs:\n"
        + "\n".join(f"- {p}" for p in [by_group_path, long_path, parquet_path, manifest_path])
    )
    return full


def main(argv: Optional[Sequence[str]] = None) -> None:
    p = argparse.ArgumentParser(description="KH03 overnight bed availability & occupancy ETL")
    p.add_argument("--out", type=str, default="data")
    p.add_argument("--index-url", type=str, default=None, help="Override the KH03 index page URL.")
    p.add_argument("--from-quarter", type=str, default=None, help="First quarter to process, e.g. '2013-14 Q4'.")
    p.add_argument("--to-quarter", type=str, default=None, help="Last quarter to process (inclusive).")
    p.add_argument(
        "--workbook",
        type=str,
        default=None,
        help=(
            "Optional local KH03 workbook. If set, the pipeline runs in offline mode (no scraping/downloading) "
            "and --quarter is required."
        ),
    )
    p.add_argument("--quarter", type=str, default=None, help="Quarter label of --workbook, e.g. '2019-20 Q1'.")
    p.add_argument(
        "--convert-xls",
        action="store_true",
        help="Convert legacy .xls workbooks to .xlsx with LibreOffice before reading.",
    )
    p.add_argument(
        "--skip-failed",
        action="store_true",
        help="Report quarters that fail to download or parse and carry on with the rest.",
    )
    p.add_argument("--verbose", action="store_true", help="Print per-step details.")
    args = p.parse_args(argv)

    run_etl(
        Path(args.out),
        index_url=args.index_url,
        from_quarter=args.from_quarter,
        to_quarter=args.to_quarter,
        workbook=Path(args.workbook) if args.workbook else None,
        quarter=args.quarter,
        convert_xls=args.convert_xls,
        skip_failed=args.skip_failed,
        verbose=args.verbose,
    )


if __name__ == "__main__":
    main()
