"""
Realizacja kart podarunkowych.

Kolejność sprawdzeń przy każdej próbie jest stała (każde ma osobny komunikat):
format numeru -> format PIN-u -> karta w bazie -> PIN -> status -> ważność -> saldo.
Saldo zmniejszamy jednym warunkowym UPDATE-em (crud.ApplyBalance), nigdy
odczytem i zapisem.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from card_utils import (
    is_card_expired,
    mask_card_number,
    normalize_card_number,
    validate_card_number,
    validate_card_pin,
)
from config import settings
from database import crud
from database.models import CardStatus, GiftCard
from errors import (
    CardInactive,
    ConcurrentUpdate,
    Depleted,
    Expired,
    InvalidCredential,
    InvalidFormat,
    NotFound,
)

logger = logging.getLogger("divaa-giftcards")

CARD_NUMBER_FORMAT_HINT = f"{settings.card_prefix}-XXXX-XXXX-XXXX"
GENERIC_CREDENTIAL_MESSAGE = "Invalid card number or PIN. Please try again."


@dataclass
class AppliedCard:
    """Karta sprawdzona pod kątem zamówienia – nic jeszcze nie zostało pobrane."""

    card_id: int
    card_number: str
    available_balance: int
    applied_amount: int
    expiry_date: datetime
    status: str = CardStatus.ACTIVE.value

    @property
    def masked_card_number(self) -> str:
        return mask_card_number(self.card_number)


@dataclass
class RedemptionResult:
    card_number: str
    applied_amount: int
    remaining_balance: int
    status: str
    order_reference: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cardNumber": mask_card_number(self.card_number),
            "appliedAmount": self.applied_amount,
            "remainingBalance": self.remaining_balance,
            "status": self.status,
            "orderReference": self.order_reference,
        }


def _parse_amount(value: Any, allow_zero: bool = False) -> int:
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise InvalidFormat("Order amount must be a whole number.", {"field": "order_amount"})
    try:
        amount = int(value)
    except (TypeError, ValueError):
        raise InvalidFormat("Order amount must be a whole number.", {"field": "order_amount"})
    if amount < 0 or (amount == 0 and not allow_zero):
        raise InvalidFormat("Order amount must be greater than zero.", {"field": "order_amount"})
    return amount


def lookup_card(db: Session, card_number: str, pin: str) -> GiftCard:
    """Kroki 1-4: format numeru, format PIN-u, odczyt z bazy, zgodność PIN-u."""
    card_number = normalize_card_number(card_number)
    pin = (pin or "").strip() if isinstance(pin, str) else pin

    if not validate_card_number(card_number):
        raise InvalidFormat(
            f"Invalid card number format. Expected format: {CARD_NUMBER_FORMAT_HINT}",
            {"field": "card_number"},
        )
    if not validate_card_pin(pin):
        raise InvalidFormat("Invalid PIN. PIN must be 6 digits.", {"field": "pin"})

    card = crud.get_card_by_number(db, card_number)
    if card is None:
        logger.warning("Próba użycia nieistniejącej karty %s", mask_card_number(card_number))
        if settings.hide_card_enumeration:
            raise InvalidCredential(GENERIC_CREDENTIAL_MESSAGE)
        raise NotFound("Gift card not found. Please check the card number.")

    if not secrets.compare_digest(str(card.card_pin), pin):
        logger.warning("Błędny PIN dla karty %s", mask_card_number(card_number))
        if settings.hide_card_enumeration:
            raise InvalidCredential(GENERIC_CREDENTIAL_MESSAGE)
        raise InvalidCredential("Invalid PIN. Please try again.")

    return card


def ensure_redeemable(card: GiftCard, now: Optional[datetime] = None) -> None:
    """Kroki 5-7: status, data ważności, saldo."""
    if card.status != CardStatus.ACTIVE.value:
        raise CardInactive(
            f"This gift card is {card.status}. Cannot be used.",
            {"status": card.status},
        )
    if is_card_expired(card.expiry_date, now):
        raise Expired("This gift card has expired.", {"expiry_date": card.expiry_date.isoformat()})
    if card.current_balance <= 0:
        raise Depleted("This gift card has no remaining balance.")


def check_card(db: Session, card_number: str, pin: str, order_amount: Any) -> AppliedCard:
    """
    Sprawdza kartę dla zamówienia o kwocie `order_amount` i wylicza kwotę do
    pokrycia: min(saldo, kwota). Nie zapisuje niczego w bazie.
    """
    card = lookup_card(db, card_number, pin)
    amount = _parse_amount(order_amount, allow_zero=True)
    ensure_redeemable(card)

    return AppliedCard(
        card_id=card.id,
        card_number=card.card_number,
        available_balance=int(card.current_balance),
        applied_amount=min(int(card.current_balance), amount),
        expiry_date=card.expiry_date,
        status=card.status,
    )


def debit_card(
    db: Session,
    card_id: int,
    amount: int,
    order_reference: Optional[str] = None,
) -> GiftCard:
    """
    Pobiera `amount` z salda karty jednym warunkowym UPDATE-em.
    Gdy żaden wiersz się nie zmienił, czytamy kartę ponownie i zgłaszamy
    konkretną przyczynę (status / ważność / saldo) albo ConcurrentUpdate.
    Zatwierdzenie transakcji należy do wołającego.
    """
    if amount <= 0:
        raise InvalidFormat("Amount to redeem must be greater than zero.", {"field": "amount"})

    affected = crud.apply_update(db, crud.ApplyBalance(card_id, amount, order_reference))

    card = crud.get_card(db, card_id)
    if card is None:
        raise NotFound("Gift card not found. Please check the card number.")
    crud.refresh_card(db, card)

    if affected != 1:
        ensure_redeemable(card)
        logger.warning(
            "Saldo karty %s zmieniło się w trakcie realizacji (saldo %s, kwota %s)",
            mask_card_number(card.card_number),
            card.current_balance,
            amount,
        )
        raise ConcurrentUpdate(
            "Gift card balance changed during checkout. Please try again.",
            {"current_balance": int(card.current_balance)},
        )

    balance_after = int(card.current_balance)
    crud.insert_transaction(
        db,
        card_id=card.id,
        transaction_type="redeem",
        amount=amount,
        balance_before=balance_after + amount,
        balance_after=balance_after,
        order_reference=order_reference,
    )
    logger.info(
        "Pobrano %s z karty %s (pozostało %s, zamówienie %s)",
        amount,
        mask_card_number(card.card_number),
        balance_after,
        order_reference,
    )
    return card


def redeem(
    db: Session,
    card_number: str,
    pin: str,
    order_amount: Any,
    order_reference: Optional[str] = None,
) -> RedemptionResult:
    """
    Sprawdza kartę i od razu pobiera min(saldo, kwota zamówienia).
    Karta pozostaje aktywna, reszta salda zostaje na przyszłe zakupy.
    """
    applied = check_card(db, card_number, pin, order_amount)
    if applied.applied_amount <= 0:
        raise InvalidFormat("Order amount must be greater than zero.", {"field": "order_amount"})

    card = debit_card(db, applied.card_id, applied.applied_amount, order_reference)

    return RedemptionResult(
        card_number=card.card_number,
        applied_amount=applied.applied_amount,
        remaining_balance=int(card.current_balance),
        status=card.status,
        order_reference=order_reference,
    )
