import html
import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Union

from bs4 import BeautifulSoup
from bs4.builder import ParserRejectedMarkup


class ExtractionError(Exception):
    """Raised when the uploaded document cannot be turned into a DOM."""


# -----------------------------------------------------------------------------
# Fund snapshot
# -----------------------------------------------------------------------------

NUMERIC_FIELDS = (
    "repurchase",
    "offer",
    "nav",
    "mtd",
    "fytd",
    "cytd",
    "fy24",
    "fy23",
    "since_inception",
)

DATE_FIELDS = ("launch_date", "validity_date")


def format_timestamp(value: Union[date, datetime]) -> str:
    """
    RFC 3339 text for a calendar date or datetime.
    Plain dates become midnight UTC; naive datetimes are taken as UTC.
    """
    if not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    elif value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.replace(microsecond=0).isoformat()
    if text.endswith("+00:00"):
        text = text[:-6] + "Z"
    return text


@dataclass(frozen=True)
class FundSnapshot:
    name: str
    upload_date: datetime
    launch_date: Optional[date] = None
    validity_date: Optional[date] = None
    repurchase: Optional[Decimal] = None
    offer: Optional[Decimal] = None
    nav: Optional[Decimal] = None
    mtd: Optional[Decimal] = None
    fytd: Optional[Decimal] = None
    cytd: Optional[Decimal] = None
    fy24: Optional[Decimal] = None
    fy23: Optional[Decimal] = None
    since_inception: Optional[Decimal] = None

    def to_json(self) -> Dict[str, Any]:
        """Response shape: absent optional fields are left out."""
        out: Dict[str, Any] = {"name": self.name}
        for f in DATE_FIELDS:
            v = getattr(self, f)
            if v is not None:
                out[f] = format_timestamp(v)
        for f in NUMERIC_FIELDS:
            v = getattr(self, f)
            if v is not None:
                out[f] = float(v)
        out["upload_date"] = format_timestamp(self.upload_date)
        return out


# -----------------------------------------------------------------------------
# Field normalization
# -----------------------------------------------------------------------------

# sign, digits with optional fraction (or a bare fraction), optional exponent
_DECIMAL_RE = re.compile(r"[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")

# "Jan 5, 2024", "5 Jan, 2024", "January 5, 2024", "5 January, 2024"
DATE_FORMATS = (
    "%b %d, %Y",
    "%d %b, %Y",
    "%B %d, %Y",
    "%d %B, %Y",
)


def normalize_number(text: Optional[str]) -> Optional[Decimal]:
    """
    Parse a report cell like " 12.34% " or "1.5*" into a Decimal.
    Empty, non-numeric or out-of-range cells give None; the row is still kept.
    """
    x = (text or "").strip().rstrip("*%")
    if not x:
        return None
    if not _DECIMAL_RE.fullmatch(x):
        return None
    try:
        value = Decimal(x)
    except InvalidOperation:
        return None
    # must fit a REAL column and a JSON number
    if not math.isfinite(float(value)):
        return None
    return value


def normalize_date(text: Optional[str]) -> Optional[date]:
    x = (text or "").strip()
    if not x:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(x, fmt).date()
        except ValueError:
            continue
    return None


# -----------------------------------------------------------------------------
# Table extraction
# -----------------------------------------------------------------------------

# Fixed layout of the daily performance mail: one centred row per fund.
ROW_SELECTOR = 'table tr[align="center"]'
MIN_COLUMNS = 12


def _decode(document: Union[str, bytes]) -> str:
    if isinstance(document, bytes):
        document = document.decode("utf-8", errors="replace")
    # the attachment body arrives entity-escaped
    return html.unescape(document)


def _cell_text(cell) -> str:
    return cell.get_text().strip()


def _row_to_snapshot(cells: List[str], upload_date: datetime) -> FundSnapshot:
    metrics = {f: normalize_number(cells[3 + i]) for i, f in enumerate(NUMERIC_FIELDS)}
    return FundSnapshot(
        name=cells[0].rstrip("*"),
        launch_date=normalize_date(cells[1]),
        validity_date=normalize_date(cells[2]),
        upload_date=upload_date,
        **metrics,
    )


def extract_funds(document: Union[str, bytes], upload_date: datetime) -> List[FundSnapshot]:
    """
    Scan the report for fund rows and map them to snapshots.

    Rows with fewer than MIN_COLUMNS cells (headers, separators) are skipped.
    Every snapshot carries the same upload_date. An empty list is a valid
    result; the caller decides whether that is an error.

    Raises:
        ExtractionError: the document could not be parsed at all.
    """
    try:
        soup = BeautifulSoup(_decode(document), "html.parser")
    except (ParserRejectedMarkup, AssertionError) as e:
        raise ExtractionError("unparsable document") from e

    funds: List[FundSnapshot] = []
    for row in soup.select(ROW_SELECTOR):
        cells = [_cell_text(td) for td in row.find_all("td")]
        if len(cells) < MIN_COLUMNS:
            continue
        funds.append(_row_to_snapshot(cells, upload_date))
    return funds
