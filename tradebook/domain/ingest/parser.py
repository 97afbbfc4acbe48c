"""
CSV parsing for broker exports.

Every cell is kept as a trimmed string; type coercion happens later when a row
is normalized against a format's field mappings. Parsing the same bytes always
yields the same headers and rows, so the finalizer can safely re-parse the
held upload.
"""
import csv
import io
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Union

import pandas as pd

from tradebook.domain.ingest.errors import MalformedInputError

logger = logging.getLogger(__name__)


@dataclass
class ParsedCsv:
    headers: List[str]
    rows: List[Dict[str, str]] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def malformed_count(self) -> int:
        return sum(1 for row in self.rows if isinstance(row, MalformedRow))


class MalformedRow(dict):
    """
    A data row with more values than the header row has columns.

    It keeps its place in ``ParsedCsv.rows`` so row numbers stay aligned with
    the file, and carries the message reported for it during import.
    """

    def __init__(self, values: Dict[str, str], error: str):
        super().__init__(values)
        self.error = error


def decode_csv_bytes(raw: Union[bytes, str]) -> str:
    """Decode upload bytes as UTF-8, dropping a byte-order mark if present."""
    if isinstance(raw, str):
        return raw.lstrip("\ufeff")
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise MalformedInputError(
            "CSV file is not valid UTF-8 text",
            details={"position": exc.start},
        ) from exc


def _record_widths(text: str) -> List[int]:
    """Field count of each non-blank record."""
    try:
        return [
            len(fields)
            for fields in csv.reader(io.StringIO(text))
            if len(fields) > 1 or (fields and fields[0].strip())
        ]
    except csv.Error as exc:
        raise MalformedInputError("CSV file could not be parsed", details=str(exc)) from exc


def parse_csv(raw: Union[bytes, str]) -> ParsedCsv:
    """
    Parse a broker CSV export into headers and row dictionaries.

    The first non-blank line is the header row. Header names and cell values
    are trimmed, blank lines and rows with only empty cells are skipped, and
    columns with a blank header are dropped when they carry no values
    (trailing commas in some broker exports). A row with more non-empty
    values than there are headers becomes a ``MalformedRow`` instead of
    failing the whole file.

    Raises:
        MalformedInputError: when the content cannot be decoded or tokenized,
            there is no header row, headers repeat, or there are no data rows.
    """
    text = decode_csv_bytes(raw)
    if not text.strip():
        raise MalformedInputError("CSV file is empty")

    widths = _record_widths(text)
    if not widths:
        raise MalformedInputError("CSV file has no header row")

    # Every row is read at the widest row's width so longer rows do not abort the read.
    try:
        df = pd.read_csv(
            io.StringIO(text),
            header=None,
            names=list(range(max(widths))),
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            quoting=csv.QUOTE_MINIMAL,
        )
    except pd.errors.EmptyDataError as exc:
        raise MalformedInputError("CSV file has no header row") from exc
    except pd.errors.ParserError as exc:
        raise MalformedInputError("CSV file could not be parsed", details=str(exc)) from exc

    if df.empty:
        raise MalformedInputError("CSV file has no header row")

    width = widths[0]
    df = df.fillna("").apply(lambda column: column.str.strip())

    headers = [str(value) for value in df.iloc[0, :width].tolist()]
    data = df.iloc[1:]
    overflow = (data.iloc[:, width:] != "").any(axis=1)
    data = data.iloc[:, :width]

    keep_positions = []
    for position, header in enumerate(headers):
        if header:
            keep_positions.append(position)
        elif (data[~overflow].iloc[:, position] != "").any():
            raise MalformedInputError(
                "CSV header row contains a blank column name",
                details={"column": position + 1},
            )

    headers = [headers[position] for position in keep_positions]
    if not headers:
        raise MalformedInputError("CSV file has no header row")

    duplicates = sorted({h for h in headers if headers.count(h) > 1})
    if duplicates:
        raise MalformedInputError("CSV header row contains duplicate columns", details={"columns": duplicates})

    data = data.iloc[:, keep_positions]
    data.columns = headers
    data = data[overflow | (data != "").any(axis=1)]

    if data.empty:
        raise MalformedInputError("CSV file has a header row but no data rows")

    rows: List[Dict[str, str]] = []
    for index, record in zip(data.index, data.to_dict(orient="records")):
        if overflow[index]:
            rows.append(MalformedRow(record, f"Too many values for {width} columns"))
        else:
            rows.append(record)

    parsed = ParsedCsv(headers=headers, rows=rows)
    if parsed.malformed_count:
        logger.warning("Parsed CSV has %d rows wider than its %d-column header", parsed.malformed_count, width)
    logger.debug("Parsed CSV with %d columns and %d rows", len(headers), len(rows))
    return parsed


def sample_rows(parsed: ParsedCsv, limit: int = 3) -> List[Dict[str, str]]:
    """First ``limit`` well-formed rows, used as prompt context and stored format samples."""
    return [dict(row) for row in parsed.rows if not isinstance(row, MalformedRow)][:limit]
