import csv
import io
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from .validators import (
    MAX_AMOUNT,
    MAX_DESCRIPTION_LENGTH,
    ValidationError,
    parse_iso_date,
)


MAX_CSV_BYTES = 5 * 1024 * 1024
REQUIRED_COLUMNS = ["Date", "Amount", "Description"]
HEADER_ROW_NUMBER = 1

DEBIT_TYPES = {"withdrawal", "debit", "purchase", "payment"}
CREDIT_TYPES = {"deposit", "credit", "refund", "return"}


class CsvFileError(ValidationError):
    """The uploaded file failed the extension/size precondition."""


class CsvFormatError(ValidationError):
    """The file has content but no usable header row."""


class RowError(Exception):
    pass


@dataclass(frozen=True)
class ParseResult:
    transactions: tuple = ()
    errors: tuple = ()
    total_rows: int = field(default=0)

    @property
    def summary(self):
        return {
            "total": self.total_rows,
            "success": len(self.transactions),
            "failed": len(self.errors),
        }

    @property
    def is_empty(self):
        return not self.transactions


def validate_csv_file(filename, size):
    if not (filename or "").strip().lower().endswith(".csv"):
        raise CsvFileError("Please upload a CSV file")
    if size is not None and size > MAX_CSV_BYTES:
        raise CsvFileError("File too large. Please import transactions in smaller batches")


def decode_csv_bytes(file_bytes):
    for encoding in ["utf-8-sig", "utf-8", "cp1252", "latin-1"]:
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def normalize_header_name(value):
    return " ".join((value or "").replace("\ufeff", "").strip().lower().split())


def parse_money(value):
    text = (value or "").strip()
    if not text:
        return None
    cleaned = text.replace(",", "").replace("$", "").replace(" ", "")
    if cleaned.startswith("(") and cleaned.endswith(")"):
        cleaned = f"-{cleaned[1:-1]}"
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return amount


def amount_to_cents(value, transaction_type=""):
    amount = parse_money(value)
    if amount is None:
        raise RowError("Invalid amount")
    if abs(amount) > MAX_AMOUNT:
        raise RowError("Amount exceeds maximum allowed value")

    cents = abs(int((amount * 100).quantize(Decimal("1"))))
    if cents == 0:
        raise RowError("Amount cannot be zero")

    kind = normalize_header_name(transaction_type)
    if not kind or kind in DEBIT_TYPES:
        return cents
    if kind in CREDIT_TYPES:
        return -cents
    raise RowError(f"Unknown transaction type: {transaction_type.strip()}")


def validate_row_date(value):
    try:
        return parse_iso_date((value or "").strip()).isoformat()
    except ValidationError as exc:
        raise RowError(str(exc)) from None


def validate_row_description(value):
    description = (value or "").strip()
    if not description:
        raise RowError("Missing description")
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise RowError(f"Description must be {MAX_DESCRIPTION_LENGTH} characters or less")
    return description


def build_candidate(row_number, date_value, amount_value, description_value, type_value="", raw_row=None):
    return {
        "row_number": row_number,
        "date": validate_row_date(date_value),
        "amount_cents": amount_to_cents(amount_value, type_value),
        "description": validate_row_description(description_value),
        "raw_row": list(raw_row or []),
    }


def _read_rows(text):
    cleaned = (text or "").lstrip("\ufeff").replace("\r\n", "\n").replace("\r", "\n")
    reader = csv.reader(io.StringIO(cleaned))
    return [row for row in reader if any(cell.strip() for cell in row)]


def _column_lookup(header_row):
    lookup = {}
    for idx, name in enumerate(header_row):
        normalized = normalize_header_name(name)
        if normalized and normalized not in lookup:
            lookup[normalized] = idx
    return lookup


def parse_bank_csv(text):
    rows = _read_rows(text)
    if not rows:
        return ParseResult()

    header_row, data_rows = rows[0], rows[1:]
    lookup = _column_lookup(header_row)
    missing = [col for col in REQUIRED_COLUMNS if col.lower() not in lookup]
    if missing:
        raise CsvFormatError(
            f"CSV must have {', '.join(REQUIRED_COLUMNS)} columns. Missing: {', '.join(missing)}"
        )

    def get_value(row, column):
        idx = lookup.get(column)
        if idx is None or idx >= len(row):
            return ""
        return row[idx]

    transactions = []
    errors = []
    for index, row in enumerate(data_rows):
        row_number = index + HEADER_ROW_NUMBER + 1
        try:
            transactions.append(
                build_candidate(
                    row_number,
                    get_value(row, "date"),
                    get_value(row, "amount"),
                    get_value(row, "description"),
                    get_value(row, "type"),
                    raw_row=row,
                )
            )
        except RowError as exc:
            errors.append((row_number, str(exc)))

    return ParseResult(transactions=tuple(transactions), errors=tuple(errors), total_rows=len(data_rows))


def parse_uploaded_file(filename, file_bytes):
    validate_csv_file(filename, len(file_bytes))
    text = decode_csv_bytes(file_bytes)
    if text is None:
        raise CsvFileError("Could not read file encoding. Please re-save as CSV UTF-8.")
    return parse_bank_csv(text)
