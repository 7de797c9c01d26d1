"""
Łączenie kodu promocyjnego i karty podarunkowej w jednym zamówieniu.

Zasady:
  - max jeden kod promocyjny i max jedna karta na zamówienie,
  - najpierw rabat, potem karta: karta pokrywa min(saldo, kwota po rabacie),
  - suma końcowa nigdy nie jest ujemna,
  - saldo karty pobieramy dopiero w finalize_checkout (po opłaceniu zamówienia).
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from database import crud
from errors import AlreadyApplied, InvalidFormat, PromoRejected
from promo_utils import PromoDiscount, calculate_final_amount, evaluate_promo_code
from redemption import AppliedCard, check_card, debit_card

logger = logging.getLogger("divaa-giftcards")


class CheckoutSession:
    def __init__(self, subtotal: int):
        if isinstance(subtotal, bool) or not isinstance(subtotal, int) or subtotal < 0:
            raise InvalidFormat("Subtotal must be a non-negative whole number.", {"field": "subtotal"})
        self.subtotal = subtotal
        self.promo: Optional[PromoDiscount] = None
        self.applied_card: Optional[AppliedCard] = None

    # --- kod promocyjny ---

    def apply_promo(self, promo: PromoDiscount) -> None:
        if self.promo is not None:
            raise AlreadyApplied(
                "Only one promo code can be applied per order.",
                {"applied_code": self.promo.code},
            )
        if promo.discount_amount < 0:
            raise InvalidFormat("Discount amount cannot be negative.", {"field": "discount_amount"})
        self.promo = PromoDiscount(
            code=promo.code,
            discount_amount=min(promo.discount_amount, self.subtotal),
            promo_id=promo.promo_id,
        )

    # --- karta podarunkowa ---

    def apply_gift_card(self, card: AppliedCard) -> None:
        if self.applied_card is not None:
            raise AlreadyApplied(
                "Only one gift card code can be applied per order.",
                {"applied_card": self.applied_card.masked_card_number},
            )
        self.applied_card = card

    def remove_applied_card(self) -> None:
        """Odpina kartę od zamówienia. Saldo karty nie było ruszane – brak zapisu do bazy."""
        self.applied_card = None

    # --- wyliczenia ---

    @property
    def discount_amount(self) -> int:
        return self.promo.discount_amount if self.promo else 0

    @property
    def amount_after_promo(self) -> int:
        return calculate_final_amount(self.subtotal, self.discount_amount)

    @property
    def gift_card_amount(self) -> int:
        if self.applied_card is None:
            return 0
        return max(0, min(self.applied_card.available_balance, self.amount_after_promo))

    @property
    def final_total(self) -> int:
        return self.amount_after_promo - self.gift_card_amount

    def view(self) -> Dict[str, Any]:
        card_view = None
        if self.applied_card is not None:
            card_view = {
                "cardNumber": self.applied_card.masked_card_number,
                "balance": self.applied_card.available_balance,
                "appliedAmount": self.gift_card_amount,
                "remainingBalance": self.applied_card.available_balance - self.gift_card_amount,
                "expiryDate": self.applied_card.expiry_date.isoformat(),
            }
        return {
            "subtotal": self.subtotal,
            "promoCode": self.promo.code if self.promo else None,
            "discountAmount": self.discount_amount,
            "giftCard": card_view,
            "giftCardAmount": self.gift_card_amount,
            "finalTotal": self.final_total,
        }


def build_checkout(
    db: Session,
    subtotal: int,
    promo_code: Optional[str] = None,
    card_number: Optional[str] = None,
    pin: Optional[str] = None,
) -> CheckoutSession:
    """Buduje stan koszyka z danych formularza (bez zapisów do bazy)."""
    session = CheckoutSession(subtotal)

    if promo_code:
        session.apply_promo(evaluate_promo_code(db, promo_code, subtotal))

    if card_number or pin:
        session.apply_gift_card(
            check_card(db, card_number or "", pin or "", session.amount_after_promo)
        )

    return session


def finalize_checkout(
    db: Session,
    session: CheckoutSession,
    order_reference: str,
) -> Dict[str, Any]:
    """
    Zatwierdza zamówienie: zużywa jedno użycie kodu promocyjnego i pobiera
    saldo karty. Commit/rollback robi wołający.
    """
    if not order_reference:
        raise InvalidFormat("Order reference is required.", {"field": "order_reference"})

    if session.promo is not None and session.promo.promo_id is not None:
        if crud.consume_promo_use(db, session.promo.promo_id) != 1:
            raise PromoRejected(
                "This promo code has reached its usage limit",
                {"code": session.promo.code},
            )

    summary = session.view()
    summary["orderReference"] = order_reference

    if session.applied_card is not None and session.gift_card_amount > 0:
        card = debit_card(
            db,
            session.applied_card.card_id,
            session.gift_card_amount,
            order_reference,
        )
        summary["giftCard"]["remainingBalance"] = int(card.current_balance)

    logger.info(
        "Zamówienie %s zatwierdzone: suma %s, rabat %s, karta %s, do zapłaty %s",
        order_reference,
        session.subtotal,
        session.discount_amount,
        session.gift_card_amount,
        session.final_total,
    )
    return summary
