"""CSV analysis, column mapping and row validation for redemption imports.

Import is a two step protocol. ``analyze_csv`` inspects an upload and
suggests which column feeds which redemption field; the caller confirms or
edits that mapping and sends the same file back to ``validate_csv_rows``.
Validation sorts every problem into either an error (the row and the whole
batch are rejected) or a warning (a documented default is substituted and the
row is kept). ``insert_redemptions`` then writes the clean records inside one
transaction, skipping rows the store itself refuses.
"""

import csv
import json
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime

from .db import DB_ERRORS


logger = logging.getLogger(__name__)

CSV_COLUMNS = ["date", "source", "points", "value", "taxes", "notes", "is_travel_credit"]
TEMPLATE_SAMPLE_ROW = ["2024-01-15", "Chase Ultimate Rewards", "50000", "750.00", "50.00", "Flight to Tokyo", "false"]

MAX_UPLOAD_BYTES = 5 * 1024 * 1024
SAMPLE_ROW_LIMIT = 5

REQUIRED_FIELDS = ["source", "points"]
FIELD_DEFINITIONS = {
    "required": [
        {"key": "source", "label": "Source", "description": "Credit card, airline or hotel loyalty program"},
        {"key": "points", "label": "Points", "description": "Number of points used (0 for travel credits)"},
    ],
    "optional": [
        {"key": "date", "label": "Date", "description": "Redemption date (YYYY-MM-DD or MM/DD/YYYY); defaults to today"},
        {"key": "value", "label": "Cash Value", "description": "Total cash value in dollars"},
        {"key": "taxes", "label": "Taxes/Fees", "description": "Additional taxes or fees in dollars"},
        {"key": "notes", "label": "Notes", "description": "Additional notes or description"},
        {
            "key": "is_travel_credit",
            "label": "Travel Credit/Free Night",
            "description": "Whether this is a travel credit or free night award",
        },
    ],
}
MAPPABLE_FIELDS = [item["key"] for item in FIELD_DEFINITIONS["required"] + FIELD_DEFINITIONS["optional"]]

# Checked in order; the first field whose keywords match a header claims it.
HEADER_KEYWORDS = [
    ("date", ["date"]),
    ("source", ["source", "program", "card"]),
    ("points", ["point"]),
    ("value", ["value", "amount", "cost"]),
    ("taxes", ["tax", "fee"]),
    ("notes", ["note", "description", "comment"]),
    ("is_travel_credit", ["credit", "free", "award"]),
]

TRUE_TOKENS = {"true", "1", "yes"}
FALSE_TOKENS = {"false", "0", "no"}

_SPLIT_DOLLARS = re.compile(r"^\$\d+$")
_SPLIT_CENTS = re.compile(r"^\d+\.\d{2}$")

DATE_FORMATS = ["%Y-%m-%d", "%b %d %Y", "%B %d %Y", "%d %b %Y", "%d %B %Y"]


@dataclass
class RedemptionRecord:
    date: str
    source: str
    points: int
    value: float = 0.0
    taxes: float = 0.0
    notes: str = ""
    is_travel_credit: bool = False
    trip_id: int = None

    def as_params(self):
        return (self.date, self.source, self.points, self.value, self.taxes, self.notes, self.is_travel_credit)


@dataclass
class RowValidation:
    row_number: int
    record: RedemptionRecord = None
    errors: list = field(default_factory=list)
    warnings: list = field(default_factory=list)

    @property
    def ok(self):
        return not self.errors


@dataclass
class ValidationReport:
    records: list = field(default_factory=list)
    errors: list = field(default_factory=list)
    warnings: list = field(default_factory=list)

    @property
    def ok(self):
        return not self.errors


def decode_csv_bytes(file_bytes):
    for encoding in ["utf-8-sig", "utf-8", "cp1252"]:
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def is_csv_upload(filename, mimetype):
    return mimetype == "text/csv" or (filename or "").lower().endswith(".csv")


def non_empty_lines(text):
    return [line for line in (text or "").splitlines() if line.strip()]


def rejoin_split_amounts(cells):
    """Merge ``$3`` + ``455.00`` back into ``$3,455.00``.

    Exports that write unquoted thousands separators split one amount into two
    cells. Only this exact dollar/cents shape is repaired.
    """
    merged = []
    idx = 0
    while idx < len(cells):
        cell = cells[idx]
        if idx + 1 < len(cells) and _SPLIT_DOLLARS.match(cell) and _SPLIT_CENTS.match(cells[idx + 1]):
            merged.append(f"{cell},{cells[idx + 1]}")
            idx += 2
            continue
        merged.append(cell)
        idx += 1
    return merged


def split_csv_line(line):
    cells = next(csv.reader([line], skipinitialspace=True), [])
    return rejoin_split_amounts([cell.strip() for cell in cells])


def pad_row(row, width):
    if len(row) < width:
        return row + [""] * (width - len(row))
    return row


def suggest_mappings(headers):
    suggested = {}
    for index, header in enumerate(headers):
        lowered = header.lower()
        for field_name, keywords in HEADER_KEYWORDS:
            if field_name == "points" and "cpp" in lowered:
                continue
            if any(keyword in lowered for keyword in keywords):
                suggested[field_name] = index
                break
    return suggested


def analyze_csv(text):
    """Return ``(analysis, error)``; exactly one of them is ``None``."""
    lines = non_empty_lines(text)
    if not lines:
        return None, "CSV file is empty"

    headers = split_csv_line(lines[0])
    sample_rows = [pad_row(split_csv_line(line), len(headers)) for line in lines[1:1 + SAMPLE_ROW_LIMIT]]

    return {
        "headers": headers,
        "sampleRows": sample_rows,
        "fieldDefinitions": FIELD_DEFINITIONS,
        "suggestedMappings": suggest_mappings(headers),
        "totalRows": len(lines) - 1,
    }, None


def parse_column_mappings(raw):
    """Turn the ``columnMappings`` form value into ``{field: column_index}``.

    Returns ``(mappings, error)``. Unmapped fields (null, "" or absent) are left
    out; unknown field names are ignored.
    """
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None, "Column mappings are required"

    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return None, "Invalid column mappings format"
    if not isinstance(raw, dict):
        return None, "Invalid column mappings format"

    mappings = {}
    for field_name in MAPPABLE_FIELDS:
        value = raw.get(field_name)
        if value is None or value == "":
            continue
        if isinstance(value, bool):
            return None, "Invalid column mappings format"
        if isinstance(value, str):
            if not value.strip().isdigit():
                return None, "Invalid column mappings format"
            value = int(value.strip())
        if not isinstance(value, int) or value < 0:
            return None, "Invalid column mappings format"
        mappings[field_name] = value
    return mappings, None


def missing_required_mappings(mappings):
    return [field_name for field_name in REQUIRED_FIELDS if field_name not in mappings]


def parse_amount(value):
    text = (value or "").strip().replace(",", "").replace("$", "")
    if not text:
        return None
    try:
        amount = float(text)
    except ValueError:
        return None
    if not math.isfinite(amount):
        return None
    return amount


def normalize_slash_date(text):
    parts = text.split("/")
    if len(parts) != 3:
        return text
    month, day, year = (part.strip() for part in parts)
    if len(year) == 2:
        year = f"20{year}"
    return f"{year}-{month.zfill(2)}-{day.zfill(2)}"


def parse_calendar_date(text):
    cleaned = text.strip().replace(",", "")
    if "/" in cleaned:
        cleaned = normalize_slash_date(cleaned)
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    # ISO datetimes keep their calendar date.
    if len(cleaned) > 10 and cleaned[10] in ("T", " "):
        try:
            return date.fromisoformat(cleaned[:10])
        except ValueError:
            return None
    return None


def parse_travel_credit(value):
    token = (value or "").strip().lower()
    if token in TRUE_TOKENS:
        return True
    if token in FALSE_TOKENS:
        return False
    return None


def validate_row(values, row_number, today=None):
    """Clean one mapped row.

    ``values`` maps field name to the raw cell text ("" when unmapped).
    """
    today = today or date.today()
    result = RowValidation(row_number=row_number)
    prefix = f"Row {row_number}"

    raw_date = values.get("date", "").strip()
    parsed_date = today
    if raw_date:
        parsed_date = parse_calendar_date(raw_date)
        if parsed_date is None:
            result.warnings.append(f"{prefix}: Invalid date '{raw_date}', using today's date")
            parsed_date = today

    source = values.get("source", "").strip()
    if not source:
        result.errors.append(f"{prefix}: Source is required")

    raw_credit = values.get("is_travel_credit", "").strip()
    is_travel_credit = False
    if raw_credit:
        parsed_credit = parse_travel_credit(raw_credit)
        if parsed_credit is None:
            result.warnings.append(
                f"{prefix}: Travel credit value '{raw_credit}' not recognized (use true/false, 1/0, yes/no), using false"
            )
        else:
            is_travel_credit = parsed_credit

    raw_points = values.get("points", "").strip()
    points = 0
    if not raw_points:
        if not is_travel_credit:
            result.errors.append(f"{prefix}: Points are required")
    else:
        amount = parse_amount(raw_points)
        if amount is None or amount < 0:
            result.errors.append(f"{prefix}: Points must be a valid number >= 0 (got '{raw_points}')")
        else:
            points = int(math.floor(amount + 0.5))
            if points == 0 and not is_travel_credit:
                result.errors.append(f"{prefix}: Points must be greater than 0 unless this is a travel credit")

    amounts = {}
    for field_name, label in [("value", "Value"), ("taxes", "Taxes")]:
        raw_amount = values.get(field_name, "").strip()
        amounts[field_name] = 0.0
        if not raw_amount:
            continue
        amount = parse_amount(raw_amount)
        if amount is None or amount < 0:
            result.warnings.append(f"{prefix}: {label} '{raw_amount}' is not a valid amount, using 0")
        else:
            amounts[field_name] = amount

    if result.errors:
        return result

    result.record = RedemptionRecord(
        date=parsed_date.isoformat(),
        source=source,
        points=points,
        value=amounts["value"],
        taxes=amounts["taxes"],
        notes=values.get("notes", "").strip(),
        is_travel_credit=is_travel_credit,
    )
    return result


def validate_csv_rows(text, mappings, today=None):
    lines = non_empty_lines(text)
    report = ValidationReport()
    if not lines:
        report.errors.append("CSV file is empty")
        return report

    width = len(split_csv_line(lines[0]))
    for row_number, line in enumerate(lines[1:], start=2):
        row = pad_row(split_csv_line(line), width)
        values = {
            field_name: (row[mappings[field_name]] if field_name in mappings and mappings[field_name] < len(row) else "")
            for field_name in MAPPABLE_FIELDS
        }
        result = validate_row(values, row_number, today=today)
        report.warnings.extend(result.warnings)
        if result.ok:
            report.records.append(result.record)
        else:
            report.errors.extend(result.errors)
    return report


INSERT_REDEMPTION_SQL = (
    "INSERT INTO redemptions (date, source, points, value, taxes, notes, is_travel_credit) "
    "VALUES (?, ?, ?, ?, ?, ?, ?)"
)


def insert_redemptions(conn, records):
    """Insert validated records in one transaction; store rejections are skipped."""
    imported = 0
    skipped = 0
    conn.begin()
    try:
        for index, record in enumerate(records):
            try:
                with conn.savepoint("import_row"):
                    conn.execute(INSERT_REDEMPTION_SQL, record.as_params())
                imported += 1
            except DB_ERRORS as exc:
                logger.warning("Skipping import record %s (%s): %s", index + 1, record.source, exc)
                skipped += 1
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return {"imported": imported, "skipped": skipped, "total": len(records)}


def _csv_quote(value):
    text = "" if value is None else str(value)
    return '"' + text.replace('"', '""') + '"'


def _format_amount(value):
    return f"{float(value or 0):.2f}"


def date_text(value):
    if value is None:
        return ""
    if hasattr(value, "isoformat"):
        return value.isoformat()[:10]
    return str(value)[:10]


def template_csv():
    return ",".join(CSV_COLUMNS) + "\n" + ",".join(TEMPLATE_SAMPLE_ROW) + "\n"


def export_csv_lines(rows):
    yield ",".join(CSV_COLUMNS) + "\n"
    for row in rows:
        yield ",".join(
            [
                date_text(row["date"]),
                _csv_quote(row["source"]),
                str(int(row["points"] or 0)),
                _format_amount(row["value"]),
                _format_amount(row["taxes"]),
                _csv_quote(row["notes"]),
                "true" if row["is_travel_credit"] else "false",
            ]
        ) + "\n"
