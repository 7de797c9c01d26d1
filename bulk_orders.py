"""
Walidacja zamówień hurtowych (CSV).

Zbieramy WSZYSTKIE błędy ze wszystkich wierszy – użytkownik ma zobaczyć pełną
tabelę błędów za jednym razem. Wynik jest typu "wszystko albo nic": jeden
błędny wiersz oznacza zero kart do wydania.
"""
import csv
import io
import logging
import math
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from config import settings
from database.models import DesignTheme

logger = logging.getLogger("divaa-giftcards")

REQUIRED_COLUMNS = [
    "recipient_name",
    "recipient_email",
    "recipient_phone",
    "amount",
    "design_theme",
]
CSV_COLUMNS = [
    "recipient_name",
    "recipient_email",
    "recipient_phone",
    "amount",
    "custom_message",
    "design_theme",
]
ALLOWED_FILE_TYPES = (".csv",)

NAME_MIN_LENGTH = 2
CUSTOM_MESSAGE_MAX_LENGTH = 200
AMOUNT_STEP = 100

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^[+]?[\d\s\-()]{10,}$")
PHONE_MIN_DIGITS = 10

THEMES = [t.value for t in DesignTheme]

_FIELD_LABELS = {
    "recipient_name": "Recipient name",
    "recipient_email": "Recipient email",
    "recipient_phone": "Recipient phone",
    "amount": "Amount",
    "design_theme": "Design theme",
}


@dataclass
class RowError:
    row: int          # numer linii w arkuszu (nagłówek = 1); 0 = błąd całego pliku
    field: str
    error: str
    value: Optional[str] = ""
    kind: str = "RowValidation"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BulkOrderRow:
    recipient_name: str
    recipient_email: str
    recipient_phone: str
    amount: int
    design_theme: str
    custom_message: str = ""


@dataclass
class BulkValidationResult:
    valid: bool
    total_rows: int
    valid_rows: List[BulkOrderRow] = field(default_factory=list)
    errors: List[RowError] = field(default_factory=list)

    @property
    def file_level_error(self) -> Optional[RowError]:
        return next((e for e in self.errors if e.row == 0), None)

    @property
    def limit_exceeded(self) -> bool:
        return self.file_level_error is not None and self.file_level_error.kind == "LimitExceeded"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "totalRows": self.total_rows,
            "validRows": [asdict(r) for r in self.valid_rows],
            "errors": [e.to_dict() for e in self.errors],
        }


def is_valid_phone(phone: str) -> bool:
    """Dozwolone znaki telefonu i co najmniej PHONE_MIN_DIGITS cyfr."""
    if not PHONE_RE.match(phone):
        return False
    return sum(ch.isdigit() for ch in phone) >= PHONE_MIN_DIGITS


def normalize_header(header: str) -> str:
    return re.sub(r"\s+", "_", (header or "").strip().lower())


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


# ------------------------------------------------------------------------------
# Parsowanie
# ------------------------------------------------------------------------------


def parse_bulk_csv(content: Union[bytes, str]) -> Tuple[List[str], List[Dict[str, str]]]:
    """
    Zwraca (nagłówki, wiersze). Nagłówki są normalizowane (małe litery,
    spacje -> "_"), kolejność kolumn nie ma znaczenia. Puste linie pomijamy.
    """
    if isinstance(content, bytes):
        content = content.decode("utf-8-sig")

    reader = csv.reader(io.StringIO(content))
    lines = [line for line in reader if any(cell.strip() for cell in line)]
    if not lines:
        return [], []

    headers = [normalize_header(h) for h in lines[0]]
    rows: List[Dict[str, str]] = []
    for line in lines[1:]:
        rows.append(
            {h: (line[i].strip() if i < len(line) else "") for i, h in enumerate(headers)}
        )
    return headers, rows


# ------------------------------------------------------------------------------
# Walidacja wierszy
# ------------------------------------------------------------------------------


def _parse_amount(raw: str) -> Optional[float]:
    try:
        amount = float(raw)
    except ValueError:
        return None
    if not math.isfinite(amount):
        return None
    return amount


def validate_bulk_row(
    raw: Mapping[str, Any],
    row_number: int,
) -> Tuple[Optional[BulkOrderRow], List[RowError]]:
    data = {normalize_header(str(k)): _clean(v) for k, v in raw.items()}
    errors: List[RowError] = []

    def error(field_name: str, message: str) -> None:
        errors.append(RowError(row_number, field_name, message, data.get(field_name, "")))

    for column in REQUIRED_COLUMNS:
        if not data.get(column):
            error(column, f"{_FIELD_LABELS[column]} is required")

    name = data.get("recipient_name", "")
    if name and len(name) < NAME_MIN_LENGTH:
        error("recipient_name", f"Recipient name must be at least {NAME_MIN_LENGTH} characters")

    email = data.get("recipient_email", "")
    if email and not EMAIL_RE.match(email):
        error("recipient_email", "Valid recipient email is required")

    phone = data.get("recipient_phone", "")
    if phone and not is_valid_phone(phone):
        error("recipient_phone", "Valid recipient phone is required (min 10 digits)")

    amount: Optional[float] = None
    raw_amount = data.get("amount", "")
    if raw_amount:
        amount = _parse_amount(raw_amount)
        if amount is None:
            error("amount", "Amount must be a number")
        else:
            min_amount = settings.gift_card_min_amount
            max_amount = settings.gift_card_max_amount
            if amount < min_amount or amount > max_amount:
                error(
                    "amount",
                    f"Amount must be between {settings.currency_symbol}{min_amount} "
                    f"and {settings.currency_symbol}{max_amount}",
                )
            if amount % AMOUNT_STEP != 0:
                error("amount", f"Amount must be a multiple of {AMOUNT_STEP}")

    message = data.get("custom_message", "")
    if len(message) > CUSTOM_MESSAGE_MAX_LENGTH:
        error(
            "custom_message",
            f"Custom message must be at most {CUSTOM_MESSAGE_MAX_LENGTH} characters",
        )

    theme = data.get("design_theme", "").lower()
    if theme and theme not in THEMES:
        error("design_theme", f"Design theme must be one of: {', '.join(THEMES)}")

    if errors:
        return None, errors

    return (
        BulkOrderRow(
            recipient_name=name,
            recipient_email=email,
            recipient_phone=phone,
            amount=int(amount),
            design_theme=theme,
            custom_message=message,
        ),
        [],
    )


def validate_bulk_orders(
    rows: Sequence[Mapping[str, Any]],
    file_size_bytes: Optional[int] = None,
    headers: Optional[Sequence[str]] = None,
) -> BulkValidationResult:
    """
    Waliduje wiersze zamówienia hurtowego.

    Limity pliku (rozmiar, liczba wierszy) i brakujące kolumny kończą walidację
    od razu (błąd w wierszu 0). W pozostałych przypadkach sprawdzamy każdy
    wiersz i zbieramy wszystkie błędy. `valid_rows` jest niepuste tylko, gdy
    nie ma żadnego błędu.
    """
    total_rows = len(rows)

    def file_error(field_name: str, message: str, kind: str, value: str = "") -> BulkValidationResult:
        logger.warning("Odrzucono plik zamówienia hurtowego: %s", message)
        return BulkValidationResult(
            valid=False,
            total_rows=total_rows,
            errors=[RowError(0, field_name, message, value, kind)],
        )

    max_mb = settings.bulk_max_file_size_mb
    if file_size_bytes is not None and file_size_bytes > max_mb * 1024 * 1024:
        return file_error("file", f"File size exceeds maximum of {max_mb}MB", "LimitExceeded")

    if headers is not None:
        normalized = [normalize_header(h) for h in headers]
        missing = [c for c in REQUIRED_COLUMNS if c not in normalized]
        if missing:
            return file_error(
                "headers",
                f"Missing required columns: {', '.join(missing)}",
                "InvalidFormat",
                ", ".join(headers),
            )

    if total_rows == 0:
        return file_error(
            "file",
            "CSV file must contain headers and at least one data row",
            "InvalidFormat",
        )

    if total_rows > settings.bulk_max_rows:
        return file_error(
            "file",
            f"CSV contains {total_rows} rows. Maximum allowed is {settings.bulk_max_rows}",
            "LimitExceeded",
        )

    valid_rows: List[BulkOrderRow] = []
    errors: List[RowError] = []
    for index, raw in enumerate(rows):
        row, row_errors = validate_bulk_row(raw, row_number=index + 2)
        if row is not None:
            valid_rows.append(row)
        errors.extend(row_errors)

    if errors:
        logger.info(
            "Zamówienie hurtowe: %s wierszy, %s błędów – odrzucone w całości",
            total_rows,
            len(errors),
        )
        return BulkValidationResult(valid=False, total_rows=total_rows, errors=errors)

    return BulkValidationResult(valid=True, total_rows=total_rows, valid_rows=valid_rows)


def validate_bulk_csv(
    content: Union[bytes, str],
    filename: Optional[str] = None,
) -> BulkValidationResult:
    """Parsuje i waliduje cały plik CSV (typ, rozmiar, nagłówki, wiersze)."""
    if filename and not filename.lower().endswith(ALLOWED_FILE_TYPES):
        return BulkValidationResult(
            valid=False,
            total_rows=0,
            errors=[
                RowError(
                    0,
                    "file",
                    f"Invalid file type. Allowed types: {', '.join(ALLOWED_FILE_TYPES)}",
                    filename,
                    "InvalidFormat",
                )
            ],
        )

    size = len(content.encode("utf-8") if isinstance(content, str) else content)
    max_mb = settings.bulk_max_file_size_mb
    if size > max_mb * 1024 * 1024:
        # nie parsujemy zbyt dużych plików
        return validate_bulk_orders([], file_size_bytes=size)

    try:
        headers, rows = parse_bulk_csv(content)
    except (UnicodeDecodeError, csv.Error) as e:
        return BulkValidationResult(
            valid=False,
            total_rows=0,
            errors=[RowError(0, "file", f"Could not read CSV file: {e}", "", "InvalidFormat")],
        )

    if not headers:
        return validate_bulk_orders([], file_size_bytes=size)

    return validate_bulk_orders(rows, file_size_bytes=size, headers=headers)


# ------------------------------------------------------------------------------
# Szablon i raport błędów
# ------------------------------------------------------------------------------


def generate_csv_template() -> str:
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    writer.writerow(
        ["Priya Sharma", "priya@example.com", "+919876543210", "1000", "Happy Birthday!", "birthday"]
    )
    return output.getvalue()


def format_csv_errors(errors: Sequence[RowError]) -> str:
    return "\n".join(f"Row {e.row}, {e.field}: {e.error}" for e in errors)
