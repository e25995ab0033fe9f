import csv
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Sequence

from models import Transaction
from schemas import ImportRowIn


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_date(value: str):
    value = value.strip()
    for fmt in ("%Y-%m-%d", "%d/%m/%Y", "%d.%m.%Y"):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Invalid date '{value}'")


def parse_amount(value: str, *, allow_negative: bool = False) -> int:
    clean = value.strip()
    for symbol in ("£", "€", "$", " "):
        clean = clean.replace(symbol, "")
    if clean.count(",") and clean.count("."):
        clean = clean.replace(",", "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    cents = int((amount * 100).quantize(Decimal("1")))
    if cents < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return cents


def parse_statement_csv(content: str) -> tuple[list[ImportRowIn], list[str]]:
    """Parse a bank statement export.

    Amounts come either from separate ``Debit``/``Credit`` columns or from a
    single signed ``Amount`` column where negative values are debits.
    """
    reader = csv.DictReader(StringIO(content))
    rows: list[ImportRowIn] = []
    errors: list[str] = []
    for idx, raw in enumerate(reader, start=1):
        try:
            date_value = parse_date(raw.get("Date") or "")
            debit_raw = (raw.get("Debit") or "").strip()
            credit_raw = (raw.get("Credit") or "").strip()
            amount_raw = (raw.get("Amount") or "").strip()
            if debit_raw or credit_raw:
                debit_cents = parse_amount(debit_raw) if debit_raw else 0
                credit_cents = parse_amount(credit_raw) if credit_raw else 0
            elif amount_raw:
                signed = parse_amount(amount_raw, allow_negative=True)
                debit_cents = -signed if signed < 0 else 0
                credit_cents = signed if signed > 0 else 0
            else:
                raise ValueError("Missing amount")
            category = (raw.get("Category") or "").strip() or None
            notes = (raw.get("Notes") or "").strip() or None
            rows.append(
                ImportRowIn(
                    date=date_value,
                    description=(raw.get("Description") or "").strip(),
                    debit_cents=debit_cents,
                    credit_cents=credit_cents,
                    category=category,
                    notes=notes,
                )
            )
        except ValueError as exc:
            errors.append(f"Row {idx}: {exc}")
    return rows, errors


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(
        ["Date", "Description", "Debit", "Credit", "Balance", "Category", "Notes"]
    )
    for txn in transactions:
        balance = txn.balance_after_cents
        writer.writerow(
            [
                txn.date.isoformat(),
                sanitize_csv_value(txn.description),
                f"{txn.debit_cents / 100:.2f}" if txn.debit_cents else "",
                f"{txn.credit_cents / 100:.2f}" if txn.credit_cents else "",
                f"{balance / 100:.2f}" if balance is not None else "",
                sanitize_csv_value(txn.category.name if txn.category else ""),
                sanitize_csv_value(txn.notes or ""),
            ]
        )
    return output.getvalue()
