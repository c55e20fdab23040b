"""
Decoding helpers for exported CSV reports.

Report exports arrive as UTF-8 or UTF-16 (with or without BOM). Encoding
is detected from the byte-order mark, then from null-byte density.
"""
import csv
import io
import re
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional

from metrics_sync.exceptions import ParseError

NULL_SAMPLE_BYTES = 200
NULL_DENSITY_THRESHOLD = 0.3

_NUMBER_NOISE = re.compile(r'[",\s]')

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%b %d, %Y",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
)


def detect_encoding(data: bytes) -> str:
    """Guess the text encoding of a report file."""
    if data.startswith(b"\xff\xfe"):
        return "utf-16-le"
    if data.startswith(b"\xfe\xff"):
        return "utf-16-be"
    sample = data[:NULL_SAMPLE_BYTES]
    if sample and sample.count(0) / len(sample) > NULL_DENSITY_THRESHOLD:
        return "utf-16-le"
    return "utf-8"


def decode_report(data: bytes) -> str:
    """Decode report bytes to text, dropping any byte-order mark."""
    encoding = detect_encoding(data)
    if encoding == "utf-16-le" and data.startswith(b"\xff\xfe"):
        data = data[2:]
    elif encoding == "utf-16-be":
        data = data[2:]
    text = data.decode(encoding, errors="replace")
    return text.lstrip("\ufeff")


def iter_rows(text: str, delimiter: str = ",") -> Iterator[Dict[str, str]]:
    """
    Yield rows as dicts keyed by header name.

    Multi-line quoted fields are handled by the csv module; blank lines
    are skipped.
    """
    reader = csv.reader(io.StringIO(text), delimiter=delimiter)
    header: Optional[List[str]] = None
    try:
        for raw in reader:
            if not raw or not any(cell.strip() for cell in raw):
                continue
            if header is None:
                header = [cell.strip() for cell in raw]
                continue
            cells = [cell.strip() for cell in raw]
            if len(cells) < len(header):
                cells.extend([""] * (len(header) - len(cells)))
            yield dict(zip(header, cells))
    except csv.Error as e:
        raise ParseError("Malformed CSV", f"line {reader.line_num}: {e}")


def parse_number(value: Optional[str]) -> float:
    """
    Parse amounts such as ``"1,234.50"`` or `` 3 ``.

    Raises:
        ParseError: If nothing numeric remains
    """
    if value is None:
        raise ParseError("Missing number")
    cleaned = _NUMBER_NOISE.sub("", str(value))
    if cleaned == "":
        return 0.0
    try:
        return float(cleaned)
    except ValueError:
        raise ParseError("Invalid number", record=value)


def parse_date(value: Optional[str]) -> datetime:
    """
    Parse report dates into aware UTC datetimes.

    Raises:
        ParseError: If no known format matches
    """
    text = (value or "").strip().strip('"')
    if not text:
        raise ParseError("Missing date")
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    # "2024-03-01 10:00:00 UTC" and similar
    head = text.split(" ")[0]
    if head != text:
        try:
            return datetime.strptime(head, "%Y-%m-%d").replace(tzinfo=timezone.utc)
        except ValueError:
            pass
    raise ParseError("Unrecognised date", record=value)


def find_column(header: List[str], *patterns: str) -> Optional[str]:
    """First header matching any of the case-insensitive regexes."""
    for pattern in patterns:
        regex = re.compile(pattern, re.IGNORECASE)
        for name in header:
            if regex.search(name):
                return name
    return None
