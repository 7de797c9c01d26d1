import calendar
import logging
import math
import re
import secrets
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Union

from sqlalchemy.orm import Session

from config import settings
from database import crud
from errors import TransientFailure

logger = logging.getLogger("divaa-giftcards")

# Format numeru karty: PREFIX-XXXX-XXXX-XXXX (same cyfry w segmentach)
CARD_SEGMENTS = 3
CARD_SEGMENT_LENGTH = 4
CARD_SEPARATOR = "-"
CARD_PIN_LENGTH = 6

_DIGITS_RE = re.compile(r"[0-9]+")

DateLike = Union[datetime, str]


# ------------------------------------------------------------------------------
# Czas
# ------------------------------------------------------------------------------


def utcnow() -> datetime:
    """Bieżący czas UTC bez strefy (tak zapisujemy daty w bazie)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: DateLike) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def add_months(value: datetime, months: int) -> datetime:
    """
    Dodaje miesiące kalendarzowe. Dzień jest przycinany do końca miesiąca
    (31 sierpnia + 6 miesięcy = 28/29 lutego).
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def generate_expiry_date(issued_at: Optional[datetime] = None) -> datetime:
    return add_months(issued_at or utcnow(), settings.card_expiry_months)


# ------------------------------------------------------------------------------
# Generowanie numerów i PIN-ów
# ------------------------------------------------------------------------------


def _random_digits(length: int) -> str:
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def _format_card_number(digits: str) -> str:
    segments = [
        digits[i:i + CARD_SEGMENT_LENGTH]
        for i in range(0, CARD_SEGMENTS * CARD_SEGMENT_LENGTH, CARD_SEGMENT_LENGTH)
    ]
    return CARD_SEPARATOR.join([settings.card_prefix] + segments)


def _candidate_card_number() -> str:
    return _format_card_number(_random_digits(CARD_SEGMENTS * CARD_SEGMENT_LENGTH))


def _fallback_card_number() -> str:
    # uuid4 jako źródło – 12 ostatnich cyfr, format bez zmian
    width = CARD_SEGMENTS * CARD_SEGMENT_LENGTH
    digits = f"{uuid.uuid4().int % (10 ** width):0{width}d}"
    return _format_card_number(digits)


def generate_card_number(db: Session, exclude: Optional[Set[str]] = None) -> str:
    """
    Generuje unikalny numer karty w formacie DIVAA-1234-5678-9012.

    Każda próba jest sprawdzana w bazie. Po wyczerpaniu limitu prób
    (kolizje lub błędy bazy) generujemy numer z uuid4 i sprawdzamy go
    jeszcze raz. `exclude` – numery zarezerwowane już w bieżącej partii.
    """
    exclude = exclude or set()
    max_attempts = settings.card_number_max_attempts

    for attempt in range(1, max_attempts + 1):
        candidate = _candidate_card_number()
        if candidate in exclude:
            continue
        try:
            if not crud.card_number_exists(db, candidate):
                return candidate
            logger.warning(
                "Kolizja numeru karty (próba %s/%s): %s",
                attempt,
                max_attempts,
                mask_card_number(candidate),
            )
        except TransientFailure as e:
            logger.warning(
                "Nie udało się sprawdzić unikalności numeru (próba %s/%s): %s",
                attempt,
                max_attempts,
                e,
            )

    candidate = _fallback_card_number()
    logger.warning(
        "Wyczerpano %s prób generowania numeru karty – używam numeru zapasowego %s",
        max_attempts,
        mask_card_number(candidate),
    )
    if candidate in exclude or crud.card_number_exists(db, candidate):
        raise TransientFailure("Could not generate a unique card number. Please try again.")
    return candidate


def generate_card_pin() -> str:
    return _random_digits(CARD_PIN_LENGTH)


def generate_batch_cards(db: Session, quantity: int) -> List[Dict[str, str]]:
    """
    Generuje `quantity` par (numer, PIN) – numery są unikalne
    zarówno względem bazy, jak i w obrębie partii.
    """
    cards: List[Dict[str, str]] = []
    reserved: Set[str] = set()
    for _ in range(quantity):
        card_number = generate_card_number(db, exclude=reserved)
        reserved.add(card_number)
        cards.append({"card_number": card_number, "card_pin": generate_card_pin()})
    return cards


# ------------------------------------------------------------------------------
# Walidacja i formatowanie
# ------------------------------------------------------------------------------


def normalize_card_number(value: Optional[str]) -> str:
    return str(value or "").strip().upper()


def validate_card_number(card_number: str) -> bool:
    if not isinstance(card_number, str):
        return False

    parts = card_number.split(CARD_SEPARATOR)
    if len(parts) != CARD_SEGMENTS + 1:
        return False
    if parts[0] != settings.card_prefix:
        return False

    return all(
        len(part) == CARD_SEGMENT_LENGTH and _DIGITS_RE.fullmatch(part) is not None
        for part in parts[1:]
    )


def validate_card_pin(pin: str) -> bool:
    if not isinstance(pin, str):
        return False
    return len(pin) == CARD_PIN_LENGTH and _DIGITS_RE.fullmatch(pin) is not None


def is_card_expired(expiry_date: DateLike, now: Optional[datetime] = None) -> bool:
    now = to_naive_utc(now) if now is not None else utcnow()
    return to_naive_utc(expiry_date) < now


def get_days_until_expiry(expiry_date: DateLike, now: Optional[datetime] = None) -> int:
    """Liczba dni do wygaśnięcia (zaokrąglona w górę). Ujemna dla kart po terminie."""
    now = to_naive_utc(now) if now is not None else utcnow()
    seconds = (to_naive_utc(expiry_date) - now).total_seconds()
    return math.ceil(seconds / 86400)


def should_show_expiry_warning(expiry_date: DateLike, now: Optional[datetime] = None) -> bool:
    days = get_days_until_expiry(expiry_date, now)
    return 0 < days <= settings.expiry_warning_days


def mask_card_number(card_number: str) -> str:
    """DIVAA-1234-5678-9012 -> DIVAA-****-****-9012; inne wejście bez zmian."""
    parts = card_number.split(CARD_SEPARATOR)
    if len(parts) != CARD_SEGMENTS + 1:
        return card_number
    return CARD_SEPARATOR.join([parts[0], "****", "****", parts[-1]])


def mask_pin(pin: str) -> str:
    return "*" * len(pin)


def format_card_number_for_display(card_number: str) -> str:
    return card_number.replace(CARD_SEPARATOR, " ")
