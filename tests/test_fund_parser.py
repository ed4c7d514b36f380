from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from bs4.builder import ParserRejectedMarkup

import fund_parser
from fund_parser import (
    ExtractionError,
    FundSnapshot,
    extract_funds,
    format_timestamp,
    normalize_date,
    normalize_number,
)
from tests.samples import NO_FUNDS_HTML, SAMPLE_HTML, UPLOAD_DATE


# -----------------------------------------------------------------------------
# normalize_number
# -----------------------------------------------------------------------------

@pytest.mark.parametrize(
    "raw, clean",
    [
        (" 12.34% ", "12.34"),
        ("1.5*", "1.5"),
        ("-4.30%", "-4.30"),
        ("8.90%*", "8.90"),
        ("7**", "7"),
        ("\t0.001\n", "0.001"),
        ("1e3%", "1e3"),
    ],
)
def test_normalize_number_strips_markers_and_whitespace(raw, clean):
    assert normalize_number(raw) == Decimal(clean)
    assert normalize_number(raw) == normalize_number(clean)


@pytest.mark.parametrize(
    "raw",
    [
        "", "   ", "*", "%", "N/A", "-", "abc", "1,234.5", "$12", "NaN", "inf", "1_000", "2.5 %", None,
        "1.5\n%", "1.5\n*", "١٢.٣", "１２",
    ],
)
def test_normalize_number_absent_for_empty_or_non_numeric(raw):
    assert normalize_number(raw) is None


@pytest.mark.parametrize("raw", ["1e400", "-1e400", "1E+309%"])
def test_normalize_number_absent_when_out_of_range(raw):
    assert normalize_number(raw) is None


def test_normalize_number_large_but_finite():
    assert normalize_number("1e300") == Decimal("1e300")


def test_normalize_number_keeps_precision():
    assert str(normalize_number("10.7500")) == "10.7500"


# -----------------------------------------------------------------------------
# normalize_date
# -----------------------------------------------------------------------------

@pytest.mark.parametrize(
    "raw",
    ["Jan 5, 2024", "5 Jan, 2024", "January 5, 2024", "5 January, 2024", "  Jan 05, 2024 "],
)
def test_normalize_date_all_layouts_agree(raw):
    assert normalize_date(raw) == date(2024, 1, 5)


@pytest.mark.parametrize("raw", ["", "  ", None, "2024-01-05", "01/05/2024", "Jan 2024", "Foo 5, 2024"])
def test_normalize_date_absent_when_unparsable(raw):
    assert normalize_date(raw) is None


def test_format_timestamp_uses_utc_z_suffix():
    assert format_timestamp(date(2024, 3, 1)) == "2024-03-01T00:00:00Z"
    assert format_timestamp(datetime(2024, 3, 1, 9, 30, 15, 123)) == "2024-03-01T09:30:15Z"
    assert format_timestamp(UPLOAD_DATE) == "2024-03-01T00:00:00Z"


# -----------------------------------------------------------------------------
# extract_funds
# -----------------------------------------------------------------------------

def test_extract_sample_report():
    funds = extract_funds(SAMPLE_HTML, UPLOAD_DATE)

    assert [f.name for f in funds] == ["Alpha Equity Fund", "Beta Income Fund", "Gamma Islamic Fund"]
    assert all(f.upload_date == UPLOAD_DATE for f in funds)

    alpha, beta, gamma = funds
    assert alpha.launch_date == date(2015, 1, 5)
    assert alpha.validity_date == date(2024, 3, 5)
    assert alpha.repurchase == Decimal("10.5012")
    assert alpha.nav == Decimal("10.6231")
    assert alpha.fy23 == Decimal("-4.30")
    assert alpha.since_inception == Decimal("8.90")

    assert beta.launch_date == date(2018, 1, 12)
    assert beta.repurchase is None
    assert beta.offer is None
    assert beta.nav == Decimal("101.2")

    # bad fields degrade to None; the row is still kept
    assert gamma.launch_date is None
    assert gamma.validity_date is None
    assert gamma.mtd is None
    assert gamma.fytd is None
    assert gamma.cytd == Decimal("1.1")


def test_extract_accepts_bytes():
    funds = extract_funds(SAMPLE_HTML.encode("utf-8"), UPLOAD_DATE)
    assert len(funds) == 3


def test_extract_skips_short_and_unaligned_rows():
    assert extract_funds(NO_FUNDS_HTML, UPLOAD_DATE) == []


def test_extract_empty_document_is_empty_result():
    assert extract_funds("", UPLOAD_DATE) == []


def test_extract_rows_need_at_least_twelve_cells():
    cells = "".join(f"<td>{i}</td>" for i in range(11))
    doc = f'<table><tr align="center">{cells}</tr><tr align="center">{cells}<td>x</td></tr></table>'
    funds = extract_funds(doc, UPLOAD_DATE)
    assert len(funds) == 1
    assert funds[0].name == "0"
    assert funds[0].since_inception is None


def test_extract_row_count_ignores_cell_content():
    row = '<tr align="center">' + "<td>??</td>" * 12 + "</tr>"
    doc = "<table>" + row * 5 + "</table>"
    upload = datetime(2023, 12, 31, tzinfo=timezone.utc)

    funds = extract_funds(doc, upload)

    assert len(funds) == 5
    assert {f.upload_date for f in funds} == {upload}
    assert all(f.nav is None and f.launch_date is None for f in funds)


def test_extract_decodes_entity_escaped_attachment():
    escaped = (
        SAMPLE_HTML.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
    )
    funds = extract_funds(escaped, UPLOAD_DATE)
    assert len(funds) == 3


def test_extract_unparsable_document(monkeypatch):
    def reject(*args, **kwargs):
        raise ParserRejectedMarkup("boom")

    monkeypatch.setattr(fund_parser, "BeautifulSoup", reject)

    with pytest.raises(ExtractionError, match="unparsable document"):
        extract_funds("<table>", UPLOAD_DATE)


# -----------------------------------------------------------------------------
# FundSnapshot.to_json
# -----------------------------------------------------------------------------

def test_to_json_omits_absent_fields():
    snap = FundSnapshot(name="Delta", upload_date=UPLOAD_DATE, nav=Decimal("12.5"), launch_date=date(2020, 2, 3))

    assert snap.to_json() == {
        "name": "Delta",
        "launch_date": "2020-02-03T00:00:00Z",
        "nav": 12.5,
        "upload_date": "2024-03-01T00:00:00Z",
    }
