import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy.orm import Session

from bulk_orders import BulkValidationResult, validate_bulk_csv
from card_utils import (
    generate_batch_cards,
    generate_card_number,
    generate_card_pin,
    generate_expiry_date,
    mask_card_number,
    normalize_card_number,
    utcnow,
)
from config import settings
from database import crud
from database.models import CardType, DeliveryMethod, DesignTheme, GiftCard, GiftCardOrder
from errors import CardInactive, InvalidFormat, NotFound

logger = logging.getLogger("divaa-giftcards")

PERSONAL_MESSAGE_MAX_LENGTH = 500
NAME_MAX_LENGTH = 100


def _enum_value(enum_cls, value: Optional[str], field_name: str, default: str) -> str:
    value = (value or default).strip().lower()
    allowed = [e.value for e in enum_cls]
    if value not in allowed:
        raise InvalidFormat(
            f"{field_name} must be one of: {', '.join(allowed)}",
            {"field": field_name},
        )
    return value


def validate_issue_amount(amount: Any) -> int:
    try:
        value = int(amount)
    except (TypeError, ValueError):
        raise InvalidFormat("Amount must be a whole number.", {"field": "amount"})
    if isinstance(amount, bool) or (isinstance(amount, float) and not amount.is_integer()):
        raise InvalidFormat("Amount must be a whole number.", {"field": "amount"})

    min_amount = settings.gift_card_min_amount
    max_amount = settings.gift_card_max_amount
    if value < min_amount or value > max_amount:
        raise InvalidFormat(
            f"Amount must be between {settings.currency_symbol}{min_amount} "
            f"and {settings.currency_symbol}{max_amount}",
            {"field": "amount"},
        )
    return value


def generate_order_number(db: Session, now: Optional[datetime] = None) -> str:
    """Numer zamówienia w formacie GC-2025-00001 (kolejny w danym roku)."""
    year = (now or utcnow()).year
    count = crud.count_orders_in_year(db, year)
    return f"GC-{year}-{count + 1:05d}"


def create_order(
    db: Session,
    order_type: str,
    total_cards: int,
    total_amount: int,
    buyer: Optional[Dict[str, Optional[str]]] = None,
) -> GiftCardOrder:
    buyer = buyer or {}
    return crud.insert_order(
        db,
        order_number=generate_order_number(db),
        order_type=order_type,
        total_cards=total_cards,
        total_amount=total_amount,
        buyer_name=buyer.get("name"),
        buyer_email=buyer.get("email"),
        buyer_phone=buyer.get("phone"),
        status="completed",
    )


def issue_card(
    db: Session,
    amount: Any,
    design_theme: Optional[str] = None,
    card_type: Optional[str] = None,
    delivery_method: Optional[str] = None,
    sender_name: Optional[str] = None,
    recipient_name: Optional[str] = None,
    recipient_email: Optional[str] = None,
    recipient_phone: Optional[str] = None,
    personal_message: Optional[str] = None,
    order: Optional[GiftCardOrder] = None,
    card_number: Optional[str] = None,
    card_pin: Optional[str] = None,
) -> GiftCard:
    """
    Wydaje jedną kartę: numer, PIN, data ważności (+6 miesięcy), zapis karty
    i wpisu "issue" w dzienniku. Bez commita.
    """
    value = validate_issue_amount(amount)
    theme = _enum_value(DesignTheme, design_theme, "design_theme", DesignTheme.GENERAL.value)
    ctype = _enum_value(CardType, card_type, "card_type", CardType.REGULAR.value)
    delivery = _enum_value(DeliveryMethod, delivery_method, "delivery_method", DeliveryMethod.EMAIL.value)

    if personal_message and len(personal_message) > PERSONAL_MESSAGE_MAX_LENGTH:
        raise InvalidFormat(
            f"Personal message must be at most {PERSONAL_MESSAGE_MAX_LENGTH} characters",
            {"field": "personal_message"},
        )
    for field_name, name in (("sender_name", sender_name), ("recipient_name", recipient_name)):
        if name and len(name) > NAME_MAX_LENGTH:
            raise InvalidFormat(
                f"{field_name} must be at most {NAME_MAX_LENGTH} characters",
                {"field": field_name},
            )

    issued_at = utcnow()
    card = crud.insert_card(
        db,
        card_number=card_number or generate_card_number(db),
        card_pin=card_pin or generate_card_pin(),
        order_id=order.id if order is not None else None,
        original_amount=value,
        current_balance=value,
        status="active",
        expiry_date=generate_expiry_date(issued_at),
        design_theme=theme,
        card_type=ctype,
        delivery_method=delivery,
        sender_name=sender_name,
        recipient_name=recipient_name,
        recipient_email=recipient_email,
        recipient_phone=recipient_phone,
        personal_message=personal_message or None,
        redeemed_count=0,
        created_at=issued_at,
        updated_at=issued_at,
    )
    crud.insert_transaction(
        db,
        card_id=card.id,
        transaction_type="issue",
        amount=value,
        balance_before=0,
        balance_after=value,
        order_reference=order.order_number if order is not None else None,
    )
    logger.info(
        "Wydano kartę %s na kwotę %s (zamówienie %s)",
        mask_card_number(card.card_number),
        value,
        order.order_number if order is not None else "-",
    )
    return card


def issue_single(db: Session, payload: Dict[str, Any]) -> Tuple[GiftCardOrder, GiftCard]:
    value = validate_issue_amount(payload.get("amount"))
    order = create_order(
        db,
        "single",
        total_cards=1,
        total_amount=value,
        buyer={
            "name": payload.get("buyerName") or payload.get("senderName"),
            "email": payload.get("buyerEmail"),
            "phone": payload.get("buyerPhone"),
        },
    )
    card = issue_card(
        db,
        amount=value,
        design_theme=payload.get("designTheme"),
        card_type=payload.get("cardType"),
        delivery_method=payload.get("deliveryMethod"),
        sender_name=payload.get("senderName"),
        recipient_name=payload.get("recipientName"),
        recipient_email=payload.get("recipientEmail"),
        recipient_phone=payload.get("recipientPhone"),
        personal_message=payload.get("personalMessage"),
        order=order,
    )
    return order, card


def issue_batch(
    db: Session,
    quantity: Any,
    amount: Any,
    design_theme: Optional[str] = None,
    card_type: Optional[str] = None,
    buyer: Optional[Dict[str, Optional[str]]] = None,
) -> Tuple[GiftCardOrder, List[GiftCard]]:
    """N kart tego samego nominału w jednym zamówieniu."""
    try:
        count = int(quantity)
    except (TypeError, ValueError):
        raise InvalidFormat("Quantity must be a whole number.", {"field": "quantity"})
    if count < 1 or count > settings.bulk_max_rows:
        raise InvalidFormat(
            f"Quantity must be between 1 and {settings.bulk_max_rows}",
            {"field": "quantity"},
        )
    value = validate_issue_amount(amount)

    numbers = generate_batch_cards(db, count)
    order = create_order(db, "bulk", total_cards=count, total_amount=count * value, buyer=buyer)
    cards = [
        issue_card(
            db,
            amount=value,
            design_theme=design_theme,
            card_type=card_type,
            order=order,
            card_number=pair["card_number"],
            card_pin=pair["card_pin"],
        )
        for pair in numbers
    ]
    logger.info("Wydano partię %s kart po %s (zamówienie %s)", count, value, order.order_number)
    return order, cards


def issue_bulk_order(
    db: Session,
    content: Union[bytes, str],
    buyer: Optional[Dict[str, Optional[str]]] = None,
    filename: Optional[str] = None,
) -> Tuple[BulkValidationResult, Optional[GiftCardOrder], List[GiftCard]]:
    """
    Waliduje plik CSV i – tylko jeśli cały plik jest poprawny – wydaje po
    jednej karcie na wiersz. Przy błędach nic nie jest zapisywane.
    """
    result = validate_bulk_csv(content, filename=filename)
    if not result.valid:
        return result, None, []

    rows = result.valid_rows
    numbers = generate_batch_cards(db, len(rows))
    order = create_order(
        db,
        "bulk",
        total_cards=len(rows),
        total_amount=sum(r.amount for r in rows),
        buyer=buyer,
    )
    cards: List[GiftCard] = []
    for row, pair in zip(rows, numbers):
        cards.append(
            issue_card(
                db,
                amount=row.amount,
                design_theme=row.design_theme,
                sender_name=(buyer or {}).get("name"),
                recipient_name=row.recipient_name,
                recipient_email=row.recipient_email,
                recipient_phone=row.recipient_phone,
                personal_message=row.custom_message,
                order=order,
                card_number=pair["card_number"],
                card_pin=pair["card_pin"],
            )
        )
    logger.info(
        "Zamówienie hurtowe %s: wydano %s kart na łączną kwotę %s",
        order.order_number,
        len(cards),
        order.total_amount,
    )
    return result, order, cards


# ------------------------------------------------------------------------------
# Zmiany statusu (admin)
# ------------------------------------------------------------------------------


def _change_status(db: Session, card_number: str, op_cls, transaction_type: str, notes: Optional[str]) -> GiftCard:
    card = crud.get_card_by_number(db, normalize_card_number(card_number))
    if card is None:
        raise NotFound("Gift card not found. Please check the card number.")

    if crud.apply_update(db, op_cls(card.id, notes)) != 1:
        crud.refresh_card(db, card)
        raise CardInactive(
            f"This gift card is {card.status}. Only active cards can be changed.",
            {"status": card.status},
        )

    crud.refresh_card(db, card)
    crud.insert_transaction(
        db,
        card_id=card.id,
        transaction_type=transaction_type,
        amount=0,
        balance_before=int(card.current_balance),
        balance_after=int(card.current_balance),
        notes=notes,
    )
    logger.info("Karta %s: status -> %s", mask_card_number(card.card_number), card.status)
    return card


def cancel_card(db: Session, card_number: str, notes: Optional[str] = None) -> GiftCard:
    return _change_status(db, card_number, crud.CancelCard, "cancel", notes)


def void_card(db: Session, card_number: str, notes: Optional[str] = None) -> GiftCard:
    """Unieważnienie administracyjne (status "used") – saldo bez zmian."""
    return _change_status(db, card_number, crud.VoidCard, "void", notes)
