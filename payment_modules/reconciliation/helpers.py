"""
payment_modules.reconciliation.helpers
======================================

Responsibility:
    Pure parsers that normalise bank/gateway statement exports into
    ``StatementLine`` records: pipe-delimited MT940 text and CSV with a
    header row.  Zero I/O beyond reading the string handed in.

Architecture:
    Module layer.  Called by ``ReconciliationService.import_statement_text``.

Invariants enforced:
    - Amounts are ``Decimal``, never ``float``.
    - Debit lines come out negative, credit lines positive, whatever sign
      convention the source used.

Failure modes:
    - StatementParseError naming the 1-based line number for malformed
      lines, unparseable dates or amounts.  Blank lines and ``:`` / ``#``
      header lines are skipped.
"""

from __future__ import annotations

import csv
import io
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from payment_kernel.exceptions import StatementParseError, ValidationError
from payment_modules.reconciliation.models import StatementLine

_DATE_FORMATS = ("%Y-%m-%d", "%y%m%d", "%Y%m%d", "%d/%m/%Y")
_DEBIT_MARKERS = frozenset({"D", "DR", "DEBIT", "RD"})
_CREDIT_MARKERS = frozenset({"C", "CR", "CREDIT", "RC"})


def parse_statement_date(raw: str, line_number: int) -> date:
    text = raw.strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise StatementParseError(line_number, f"unrecognised date {raw!r}")


def parse_statement_amount(raw: str, line_number: int) -> Decimal:
    text = raw.strip().replace(",", "")
    try:
        amount = Decimal(text)
    except InvalidOperation:
        raise StatementParseError(line_number, f"unparseable amount {raw!r}") from None
    if not amount.is_finite():
        raise StatementParseError(line_number, f"unparseable amount {raw!r}")
    return amount


def _apply_direction(amount: Decimal, marker: str) -> Decimal:
    marker = marker.strip().upper()
    if marker in _DEBIT_MARKERS:
        return -abs(amount)
    if marker in _CREDIT_MARKERS:
        return abs(amount)
    return amount


def parse_mt940(raw_data: str) -> list[StatementLine]:
    """
    Parse pipe-delimited MT940 text.

    Each line: ``date|amount|reference|description[|type]`` where type is
    C/CR/CREDIT or D/DR/DEBIT.  Without a type the amount's own sign
    stands.
    """
    lines: list[StatementLine] = []
    for number, line in enumerate(raw_data.splitlines(), start=1):
        line = line.strip()
        if not line or line.startswith(":") or line.startswith("#"):
            continue
        parts = line.split("|")
        if len(parts) < 4:
            raise StatementParseError(number, f"expected at least 4 fields, got {len(parts)}")
        marker = parts[4].strip() if len(parts) > 4 else ""
        lines.append(
            StatementLine(
                date=parse_statement_date(parts[0], number),
                amount=_apply_direction(parse_statement_amount(parts[1], number), marker),
                reference=parts[2].strip() or None,
                description=parts[3].strip() or None,
                transaction_type=marker.upper() or "UNKNOWN",
            )
        )
    return lines


def parse_csv(raw_data: str) -> list[StatementLine]:
    """
    Parse CSV with a header row naming ``date`` and ``amount`` columns
    (case-insensitive); ``reference``, ``description`` and ``type`` are
    optional.
    """
    reader = csv.DictReader(io.StringIO(raw_data.strip()))
    if reader.fieldnames is None:
        return []
    columns = {name.strip().lower(): name for name in reader.fieldnames if name}
    for required in ("date", "amount"):
        if required not in columns:
            raise StatementParseError(1, f"missing {required!r} column")

    def cell(row: dict, key: str) -> str:
        name = columns.get(key)
        return (row.get(name) or "").strip() if name else ""

    lines: list[StatementLine] = []
    # line 1 is the header
    for number, row in enumerate(reader, start=2):
        if not any((v or "").strip() for v in row.values() if isinstance(v, str)):
            continue
        marker = cell(row, "type")
        lines.append(
            StatementLine(
                date=parse_statement_date(cell(row, "date"), number),
                amount=_apply_direction(parse_statement_amount(cell(row, "amount"), number), marker),
                reference=cell(row, "reference") or None,
                description=cell(row, "description") or None,
                transaction_type=marker.upper() or "UNKNOWN",
            )
        )
    return lines


PARSERS = {
    "MT940": parse_mt940,
    "CSV": parse_csv,
}


def parse_statement(raw_data: str, format: str) -> list[StatementLine]:
    parser = PARSERS.get(format.upper())
    if parser is None:
        raise ValidationError(f"Unsupported statement format: {format}")
    return parser(raw_data)
