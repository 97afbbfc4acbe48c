"""
Tests for broker CSV parsing.
"""
import pytest

from tradebook.domain.ingest.errors import MalformedInputError
from tradebook.domain.ingest.parser import MalformedRow, parse_csv, sample_rows


def test_parse_trims_headers_and_values():
    parsed = parse_csv(" Symbol , Qty \n AAPL , 10 \nMSFT,5\n")

    assert parsed.headers == ["Symbol", "Qty"]
    assert parsed.rows == [{"Symbol": "AAPL", "Qty": "10"}, {"Symbol": "MSFT", "Qty": "5"}]
    assert parsed.row_count == 2


def test_parse_strips_byte_order_mark():
    parsed = parse_csv("\ufeffSymbol,Qty\nAAPL,1\n".encode("utf-8"))

    assert parsed.headers == ["Symbol", "Qty"]


def test_parse_keeps_cells_as_strings():
    parsed = parse_csv("Symbol,Qty,Price\n0050,007,1e3\n")

    assert parsed.rows[0] == {"Symbol": "0050", "Qty": "007", "Price": "1e3"}


def test_parse_skips_blank_and_empty_rows():
    parsed = parse_csv("Symbol,Qty\nAAPL,1\n\n,\nMSFT,2\n")

    assert [row["Symbol"] for row in parsed.rows] == ["AAPL", "MSFT"]


def test_parse_drops_trailing_empty_column():
    parsed = parse_csv("Symbol,Qty,\nAAPL,1,\n")

    assert parsed.headers == ["Symbol", "Qty"]
    assert parsed.rows == [{"Symbol": "AAPL", "Qty": "1"}]


def test_parse_handles_quoted_commas():
    parsed = parse_csv('Symbol,Account\nAAPL,"Smith, Inc"\n')

    assert parsed.rows[0]["Account"] == "Smith, Inc"


def test_parse_is_deterministic():
    content = "Symbol,Side,Qty\nAAPL,BUY,1\nMSFT,SELL,2\n"

    assert parse_csv(content) == parse_csv(content)


@pytest.mark.parametrize(
    "content",
    [
        "",
        "   \n\n",
        "Symbol,Qty\n",
        "Symbol,Symbol\nAAPL,MSFT\n",
        "Symbol,,Qty\nAAPL,x,1\n",
    ],
    ids=["empty", "blank", "header-only", "duplicate-header", "blank-header-with-data"],
)
def test_parse_rejects_malformed_input(content):
    with pytest.raises(MalformedInputError):
        parse_csv(content)


def test_parse_rejects_non_utf8_bytes():
    with pytest.raises(MalformedInputError) as exc_info:
        parse_csv(b"Symbol,Qty\n\xff\xfe,1\n")

    assert "UTF-8" in exc_info.value.message


def test_sample_rows_limits_and_copies():
    parsed = parse_csv("Symbol\nA\nB\nC\nD\n")

    samples = sample_rows(parsed, limit=2)
    samples[0]["Symbol"] = "changed"

    assert len(samples) == 2
    assert parsed.rows[0]["Symbol"] == "A"


def test_parse_keeps_ragged_rows_in_place():
    parsed = parse_csv("Symbol,Qty\nAAPL,1\nMSFT,2,extra,more\nTSLA,3\n")

    assert parsed.row_count == 3
    assert parsed.malformed_count == 1
    assert parsed.rows[0] == {"Symbol": "AAPL", "Qty": "1"}
    assert isinstance(parsed.rows[1], MalformedRow)
    assert parsed.rows[1].error == "Too many values for 2 columns"
    assert parsed.rows[2] == {"Symbol": "TSLA", "Qty": "3"}
    assert [row["Symbol"] for row in sample_rows(parsed)] == ["AAPL", "TSLA"]


def test_parse_accepts_empty_trailing_values():
    parsed = parse_csv("Symbol,Qty\nAAPL,1,,\nMSFT,2\n")

    assert parsed.malformed_count == 0
    assert parsed.rows == [{"Symbol": "AAPL", "Qty": "1"}, {"Symbol": "MSFT", "Qty": "2"}]


def test_parse_pads_short_rows():
    parsed = parse_csv("Symbol,Qty,Price\nAAPL,1\n")

    assert parsed.rows == [{"Symbol": "AAPL", "Qty": "1", "Price": ""}]
