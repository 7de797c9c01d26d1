import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from card_utils import to_naive_utc, is_card_expired
from config import settings
from database import crud
from database.models import PromoCode
from errors import InvalidFormat, PromoRejected

logger = logging.getLogger("divaa-giftcards")

DISCOUNT_PERCENTAGE = "percentage"
DISCOUNT_FIXED = "fixed"
DISCOUNT_TYPES = (DISCOUNT_PERCENTAGE, DISCOUNT_FIXED)


@dataclass(frozen=True)
class PromoDiscount:
    """Wynik oceny kodu – dla koszyka liczy się tylko kod i kwota rabatu."""

    code: str
    discount_amount: int
    promo_id: Optional[int] = None


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def calculate_discount(subtotal: int, promo: PromoCode) -> int:
    """Rabat w pełnych jednostkach waluty, nigdy większy niż kwota zamówienia."""
    if promo.discount_type == DISCOUNT_PERCENTAGE:
        discount = subtotal * int(promo.discount_value) // 100
    else:
        discount = int(promo.discount_value)
    return max(0, min(discount, subtotal))


def calculate_final_amount(subtotal: int, discount_amount: int) -> int:
    return max(0, subtotal - discount_amount)


def format_discount(promo: PromoCode) -> str:
    if promo.discount_type == DISCOUNT_PERCENTAGE:
        return f"{promo.discount_value}% off"
    return f"{settings.currency_symbol}{promo.discount_value} off"


def evaluate_promo_code(
    db: Session,
    code: str,
    subtotal: int,
    now: Optional[datetime] = None,
) -> PromoDiscount:
    """
    Sprawdza kod promocyjny dla zamówienia o wartości `subtotal`:
    aktywność, termin ważności, limit użyć, minimalną kwotę zakupu.
    """
    code = normalize_code(code)
    if not code:
        raise PromoRejected("Please enter a promo code.")

    promo = crud.get_promo_by_code(db, code)
    if promo is None or not promo.is_active:
        logger.info("Nieznany lub nieaktywny kod promocyjny '%s'", code)
        raise PromoRejected("Invalid promo code", {"code": code})

    if promo.expires_at is not None and is_card_expired(promo.expires_at, now):
        logger.info("Kod promocyjny '%s' wygasł %s", code, promo.expires_at)
        raise PromoRejected("This promo code has expired", {"code": code})

    if promo.max_uses is not None and (promo.current_uses or 0) >= promo.max_uses:
        logger.info("Kod promocyjny '%s' osiągnął limit użyć (%s)", code, promo.max_uses)
        raise PromoRejected("This promo code has reached its usage limit", {"code": code})

    if subtotal < (promo.min_purchase_amount or 0):
        raise PromoRejected(
            f"Minimum purchase amount of {settings.currency_symbol}{promo.min_purchase_amount} required",
            {"code": code},
        )

    return PromoDiscount(code=promo.code, discount_amount=calculate_discount(subtotal, promo), promo_id=promo.id)


def _optional_int(payload: Dict[str, Any], key: str) -> Optional[int]:
    value = payload.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise InvalidFormat(f"{key} must be a whole number", {"field": key})
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidFormat(f"{key} must be a whole number", {"field": key})


def create_promo_code(db: Session, payload: Dict[str, Any]) -> PromoCode:
    """
    Dodaje kod promocyjny z panelu admina.

    payload: code, discountType ("percentage"/"fixed"), discountValue,
    minPurchaseAmount?, maxUses?, expiresAt? (ISO), isActive?
    """
    code = normalize_code(payload.get("code"))
    if not code:
        raise InvalidFormat("Promo code is required", {"field": "code"})

    discount_type = (payload.get("discountType") or "").strip().lower()
    if discount_type not in DISCOUNT_TYPES:
        raise InvalidFormat(
            f"discountType must be one of: {', '.join(DISCOUNT_TYPES)}",
            {"field": "discountType"},
        )

    discount_value = _optional_int(payload, "discountValue")
    if discount_value is None or discount_value <= 0:
        raise InvalidFormat("discountValue must be greater than zero", {"field": "discountValue"})
    if discount_type == DISCOUNT_PERCENTAGE and discount_value > 100:
        raise InvalidFormat("Percentage discount cannot exceed 100", {"field": "discountValue"})

    min_purchase = _optional_int(payload, "minPurchaseAmount") or 0
    max_uses = _optional_int(payload, "maxUses")
    if min_purchase < 0 or (max_uses is not None and max_uses < 1):
        raise InvalidFormat("Limits must be positive", {"field": "maxUses"})

    expires_at = None
    if payload.get("expiresAt"):
        try:
            expires_at = to_naive_utc(str(payload["expiresAt"]))
        except ValueError:
            raise InvalidFormat("expiresAt must be an ISO date", {"field": "expiresAt"})

    if crud.get_promo_by_code(db, code) is not None:
        raise InvalidFormat(f"Promo code {code} already exists", {"field": "code"})

    promo = crud.insert_promo_code(
        db,
        code=code,
        discount_type=discount_type,
        discount_value=discount_value,
        min_purchase_amount=min_purchase,
        max_uses=max_uses,
        current_uses=0,
        expires_at=expires_at,
        is_active=bool(payload.get("isActive", True)),
    )
    logger.info("Dodano kod promocyjny %s (%s)", code, format_discount(promo))
    return promo
