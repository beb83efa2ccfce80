# validation.py
"""Write-time limits for CSV uploads and server-side CSV parsing.

``validate_upload_submission`` must run before anything touches object
storage or the database; it never mutates the candidate.
"""
import csv
import io
import json
import re
from typing import Any, Dict, List, Mapping, Optional

from errors import ValidationError

MAX_FILE_SIZE_BYTES = 100 * 1024 * 1024
MAX_ROW_COUNT = 10_000
MAX_COLUMN_COUNT = 100
MAX_SERIALIZED_DATA_BYTES = 50 * 1024 * 1024
MAX_FILENAME_LENGTH = 50

PERCENTILE_COLUMN_RE = re.compile(r"^p(\d+)$", re.IGNORECASE)
UNSAFE_FILENAME_CHARS_RE = re.compile(r"[^a-zA-Z0-9._-]")


def _field(candidate: Any, name: str) -> Any:
    if isinstance(candidate, Mapping):
        return candidate.get(name)
    return getattr(candidate, name, None)


def serialized_size(rows: Any) -> int:
    """UTF-8 byte length of the compact JSON form the rows are stored as."""
    return len(json.dumps(rows, ensure_ascii=False, separators=(",", ":"), default=str).encode("utf-8"))


def validate_upload_submission(candidate: Any) -> Any:
    violations: List[Dict[str, Any]] = []

    def check(limit: str, observed: Optional[int], allowed: int, message: str):
        if observed is not None and observed > allowed:
            violations.append({"limit": limit, "observed": observed, "allowed": allowed, "message": message})

    check("fileSize", _field(candidate, "file_size"), MAX_FILE_SIZE_BYTES,
          "File size must be at most 100MB")
    check("rowCount", _field(candidate, "row_count"), MAX_ROW_COUNT,
          f"CSV file too large. Maximum {MAX_ROW_COUNT:,} rows allowed")
    check("columnCount", _field(candidate, "column_count"), MAX_COLUMN_COUNT,
          f"CSV file has too many columns. Maximum {MAX_COLUMN_COUNT} columns allowed")

    rows = _field(candidate, "time_series_data")
    if rows is not None:
        check("timeSeriesData", serialized_size(rows), MAX_SERIALIZED_DATA_BYTES,
              "Parsed CSV data too large. Maximum 50MB JSON size allowed")

    if violations:
        first = violations[0]
        raise ValidationError(first["limit"], first["observed"], first["allowed"],
                              message=first["message"], violations=violations)
    return candidate


def sanitize_filename(name: Optional[str]) -> str:
    sanitized = UNSAFE_FILENAME_CHARS_RE.sub("_", (name or "").strip())[:MAX_FILENAME_LENGTH]
    if not sanitized:
        raise ValidationError("customFilename", name or "", "non-empty [A-Za-z0-9._-]",
                              message="Invalid custom filename. Only alphanumeric characters, dots, hyphens, and underscores are allowed")
    return sanitized


def percentile_columns(headers: List[str]) -> List[str]:
    found = []
    for header in headers:
        match = PERCENTILE_COLUMN_RE.match(header)
        if match and 1 <= int(match.group(1)) <= 99:
            found.append(header)
    return found


def parse_csv_content(content: bytes) -> Dict[str, Any]:
    """Parses raw CSV bytes into row objects keyed by the header row.

    Returns ``rows``, ``row_count``, ``column_count``, ``headers`` and
    ``percentile_columns``. Limits are not applied here; the caller runs
    :func:`validate_upload_submission` on the result.
    """
    if len(content) > MAX_FILE_SIZE_BYTES:
        raise ValidationError("fileSize", len(content), MAX_FILE_SIZE_BYTES, message="File size must be at most 100MB")
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ValidationError("encoding", f"invalid byte at {exc.start}", "utf-8",
                              message="CSV file must be UTF-8 encoded") from exc

    reader = csv.reader(io.StringIO(text))
    lines = [line for line in reader if any(cell.strip() for cell in line)]
    if len(lines) < 2:
        raise ValidationError("rowCount", max(len(lines) - 1, 0), ">= 1",
                              message="CSV must have a header and at least one data row")

    headers = [h.strip() for h in lines[0]]
    seen = set()
    for header in headers:
        if header in seen:
            raise ValidationError("columnCount", header, "unique headers",
                                  message=f"Duplicate column header '{header}'")
        seen.add(header)

    rows = []
    for row_number, values in enumerate(lines[1:], start=1):
        # trailing empty cells from a dangling delimiter are tolerated
        if any(cell.strip() for cell in values[len(headers):]):
            raise ValidationError("columnCount", len(values), len(headers),
                                  message=f"Data row {row_number} has more cells than the header row")
        row = {}
        for index, header in enumerate(headers):
            row[header] = values[index].strip() if index < len(values) else ""
        rows.append(row)

    return {
        "rows": rows,
        "row_count": len(rows),
        "column_count": len(headers),
        "headers": headers,
        "percentile_columns": percentile_columns(headers),
    }


def render_rows_as_csv(rows: List[Dict[str, Any]]) -> bytes:
    if not rows:
        return b""
    output = io.StringIO()
    fieldnames: List[str] = []
    for row in rows:
        for key in row:
            if key not in fieldnames: fieldnames.append(key)
    writer = csv.DictWriter(output, fieldnames=fieldnames, extrasaction='ignore')
    writer.writeheader()
    writer.writerows(rows)
    return output.getvalue().encode("utf-8")
