"""Bank statement spreadsheet parser."""

import io
import logging
import re
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation

from dateutil import parser as date_parser
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from ledgercat.db.models import RawRow
from ledgercat.errors import MissingHeaderError, UnreadableWorkbookError
from ledgercat.ingest.normalization import strip_diacritics

log = logging.getLogger("ledgercat.parser")

DEFAULT_SHEET_NAME = "hoja1"
SPREADSHEET_EPOCH_OFFSET_DAYS = 25569
SECONDS_PER_DAY = 86400
_UNIX_EPOCH = datetime(1970, 1, 1)

HEADER_SYNONYMS = {
    "f. operativa": "date",
    "f.operativa": "date",
    "fecha operativa": "date",
    "fecha operacion": "date",
    "fecha": "date",
    "operation date": "date",
    "date": "date",
    "f. valor": "value_date",
    "f.valor": "value_date",
    "fecha valor": "value_date",
    "value date": "value_date",
    "concepto": "description",
    "descripcion": "description",
    "description": "description",
    "importe": "amount",
    "amount": "amount",
    "saldo": "balance",
    "balance": "balance",
    "referencia 1": "reference1",
    "reference 1": "reference1",
    "referencia 2": "reference2",
    "reference 2": "reference2",
}

REQUIRED_COLUMNS = ("date", "description", "amount")

# Labels used in error messages for missing columns.
COLUMN_LABELS = {
    "date": "F. Operativa",
    "description": "Concepto",
    "amount": "Importe",
}

_DAY_FIRST_DATE = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{2,4})(?:[ T].*)?$")
_AMOUNT_JUNK = re.compile(r"[^0-9.,-]")
_WHITESPACE = re.compile(r"\s+")


@dataclass
class ParseResult:
    """Rows extracted from a statement and the number of dropped rows."""

    rows: list[RawRow]
    skipped: int = 0
    sheet_name: str | None = None
    header_row: int | None = None
    columns: dict[str, int] = field(default_factory=dict)


def normalize_header(value: object) -> str:
    """Normalize header text for synonym lookup."""
    text = strip_diacritics("" if value is None else str(value))
    return _WHITESPACE.sub(" ", text.strip().casefold())


def parse_date(value: object) -> date | None:
    """Parse a statement date cell.

    Accepts native dates, spreadsheet serial numbers and ``DD/MM/YYYY`` or
    ``DD-MM-YYYY`` strings (two-digit years are read as 20YY), then falls
    back to ISO dates and generic day-first parsing. Returns None when
    nothing works.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return _serial_to_date(value)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    match = _DAY_FIRST_DATE.match(text)
    if match:
        day, month, year_text = match.groups()
        year = int(f"20{year_text}") if len(year_text) == 2 else int(year_text)
        if 1 <= int(day) <= 31 and 1 <= int(month) <= 12 and year > 1900:
            try:
                return date(year, int(month), int(day))
            except ValueError:
                pass
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        pass
    try:
        return date_parser.parse(text, dayfirst=True).date()
    except (ValueError, OverflowError):
        return None


def _serial_to_date(value: int | float | Decimal) -> date | None:
    try:
        seconds = round((float(value) - SPREADSHEET_EPOCH_OFFSET_DAYS) * SECONDS_PER_DAY)
        return (_UNIX_EPOCH + timedelta(seconds=seconds)).date()
    except (OverflowError, ValueError):
        return None


def parse_amount(value: object) -> Decimal:
    """Parse a locale formatted amount, defaulting to zero.

    The rightmost of comma and dot is the decimal separator when both occur.
    A single comma is a decimal separator; repeated commas or repeated dots
    are thousands grouping.
    """
    if isinstance(value, bool):
        return Decimal(0)
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    if value is None:
        return Decimal(0)
    text = _AMOUNT_JUNK.sub("", str(value).strip())
    if not text:
        return Decimal(0)
    comma_count = text.count(",")
    dot_count = text.count(".")
    if comma_count and dot_count:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".", 1)
        else:
            text = text.replace(",", "")
    elif comma_count == 1:
        text = text.replace(",", ".")
    elif comma_count > 1:
        text = text.replace(",", "")
    elif dot_count > 1:
        text = text.replace(".", "")
    try:
        return Decimal(text)
    except InvalidOperation:
        return Decimal(0)


def _optional_amount(value: object) -> Decimal | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return parse_amount(value)


def _optional_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def _is_blank(row: tuple) -> bool:
    return all(cell is None or str(cell).strip() == "" for cell in row)


def _cell(row: tuple, index: int | None) -> object:
    if index is None or index >= len(row):
        return None
    return row[index]


class StatementParser:
    """Turns a spreadsheet buffer into ordered statement rows."""

    def parse(self, buffer: bytes) -> ParseResult:
        """Parse a statement workbook.

        Raises:
            UnreadableWorkbookError: the buffer is not a spreadsheet.
            MissingHeaderError: no header row, or required columns missing.
        """
        sheet_name, rows = self._read_rows(buffer)
        header_index, columns = self._find_header_row(rows)

        result = ParseResult(
            rows=[], sheet_name=sheet_name, header_row=header_index, columns=columns
        )
        for offset, row in enumerate(rows[header_index + 1 :], start=header_index + 2):
            if _is_blank(row):
                continue
            raw_row = self._build_row(row, columns)
            if raw_row is None:
                log.debug(f"Dropping row {offset}: missing date or description")
                result.skipped += 1
                continue
            result.rows.append(raw_row)
        log.info(
            f"Parsed {len(result.rows)} rows from sheet {sheet_name!r} "
            f"({result.skipped} skipped)"
        )
        return result

    def _read_rows(self, buffer: bytes) -> tuple[str, list[tuple]]:
        try:
            workbook = load_workbook(io.BytesIO(buffer), read_only=True, data_only=True)
        except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
            raise UnreadableWorkbookError(f"Unable to read workbook: {e}") from e
        try:
            sheet_name = next(
                (name for name in workbook.sheetnames if name.lower() == DEFAULT_SHEET_NAME),
                workbook.sheetnames[0],
            )
            sheet = workbook[sheet_name]
            rows = [tuple(row) for row in sheet.iter_rows(values_only=True)]
        finally:
            workbook.close()
        return sheet_name, rows

    def _find_header_row(self, rows: list[tuple]) -> tuple[int, dict[str, int]]:
        """Locate the first row naming every required column.

        Preamble lines such as ``Fecha | 19/10/2026`` carry a date label but
        not the other columns, so they are passed over. When no row
        qualifies, the error names what the most complete date-bearing row
        lacks.
        """
        best: dict[str, int] | None = None
        for index, row in enumerate(rows):
            columns = self._map_columns(row)
            if all(key in columns for key in REQUIRED_COLUMNS):
                return index, columns
            if "date" in columns and (best is None or len(columns) > len(best)):
                best = columns
        if best is None:
            raise MissingHeaderError([COLUMN_LABELS["date"]])
        raise MissingHeaderError(
            [COLUMN_LABELS[key] for key in REQUIRED_COLUMNS if key not in best]
        )

    def _map_columns(self, header: tuple) -> dict[str, int]:
        columns: dict[str, int] = {}
        for index, cell in enumerate(header):
            key = HEADER_SYNONYMS.get(normalize_header(cell))
            if key and key not in columns:
                columns[key] = index
        return columns

    def _build_row(self, row: tuple, columns: dict[str, int]) -> RawRow | None:
        row_date = parse_date(_cell(row, columns["date"]))
        raw_description = _cell(row, columns["description"])
        description = "" if raw_description is None else str(raw_description)
        if row_date is None or not description:
            return None
        return RawRow(
            date=row_date,
            value_date=parse_date(_cell(row, columns.get("value_date"))),
            description=description,
            amount=parse_amount(_cell(row, columns["amount"])),
            balance=_optional_amount(_cell(row, columns.get("balance"))),
            reference1=_optional_text(_cell(row, columns.get("reference1"))),
            reference2=_optional_text(_cell(row, columns.get("reference2"))),
        )


def parse_statement(buffer: bytes) -> list[RawRow]:
    """Parse a statement workbook into its data rows."""
    return StatementParser().parse(buffer).rows
