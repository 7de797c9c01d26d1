from datetime import datetime

import pytest

from checkout import CheckoutSession, build_checkout, finalize_checkout
from database.models import PromoCode
from errors import AlreadyApplied, InvalidFormat, PromoRejected
from promo_utils import PromoDiscount
from redemption import AppliedCard


def _card(balance, card_id=1):
    return AppliedCard(
        card_id=card_id,
        card_number="DIVAA-1234-5678-9012",
        available_balance=balance,
        applied_amount=balance,
        expiry_date=datetime(2030, 1, 1),
    )


def test_promo_applied_before_gift_card():
    session = CheckoutSession(10000)
    session.apply_promo(PromoDiscount("SAVE10", 1000))
    session.apply_gift_card(_card(5000))

    assert session.discount_amount == 1000
    assert session.gift_card_amount == 5000
    assert session.final_total == 4000


def test_result_does_not_depend_on_call_order():
    first = CheckoutSession(10000)
    first.apply_promo(PromoDiscount("SAVE10", 1000))
    first.apply_gift_card(_card(9500))

    second = CheckoutSession(10000)
    second.apply_gift_card(_card(9500))
    second.apply_promo(PromoDiscount("SAVE10", 1000))

    assert first.view() == second.view()
    assert second.gift_card_amount == 9000
    assert second.final_total == 0


def test_gift_card_covers_at_most_the_balance():
    session = CheckoutSession(3000)
    session.apply_gift_card(_card(1200))

    view = session.view()
    assert view["giftCardAmount"] == 1200
    assert view["finalTotal"] == 1800
    assert view["giftCard"]["remainingBalance"] == 0
    assert view["giftCard"]["cardNumber"] == "DIVAA-****-****-9012"


def test_discount_larger_than_subtotal_is_clamped():
    session = CheckoutSession(400)
    session.apply_promo(PromoDiscount("FLAT500", 500))
    session.apply_gift_card(_card(1000))

    assert session.discount_amount == 400
    assert session.gift_card_amount == 0
    assert session.final_total == 0


def test_only_one_gift_card_per_order():
    session = CheckoutSession(5000)
    session.apply_gift_card(_card(1000, card_id=1))

    with pytest.raises(AlreadyApplied, match="Only one gift card"):
        session.apply_gift_card(_card(1000, card_id=2))

    assert session.applied_card.card_id == 1


def test_only_one_promo_per_order():
    session = CheckoutSession(5000)
    session.apply_promo(PromoDiscount("A", 100))

    with pytest.raises(AlreadyApplied):
        session.apply_promo(PromoDiscount("B", 200))


def test_remove_applied_card_restores_total():
    session = CheckoutSession(5000)
    session.apply_gift_card(_card(2000))
    session.remove_applied_card()

    assert session.final_total == 5000
    assert session.view()["giftCard"] is None
    session.apply_gift_card(_card(1000, card_id=2))
    assert session.final_total == 4000


@pytest.mark.parametrize("subtotal", [-1, 10.5, "100", True])
def test_invalid_subtotal(subtotal):
    with pytest.raises(InvalidFormat):
        CheckoutSession(subtotal)


def test_build_checkout_with_promo_and_card(db, make_card, make_promo):
    make_promo(code="SAVE10", discount_value=10)
    card = make_card(amount=5000)

    session = build_checkout(db, 10000, promo_code="save10", card_number=card.card_number, pin="123456")

    assert session.discount_amount == 1000
    assert session.gift_card_amount == 5000
    assert session.final_total == 4000
    db.refresh(card)
    assert card.current_balance == 5000


def test_build_checkout_rejects_bad_promo(db):
    with pytest.raises(PromoRejected):
        build_checkout(db, 1000, promo_code="NOPE")


def test_finalize_debits_card_and_consumes_promo(db, make_card, make_promo):
    promo = make_promo(code="SAVE10", discount_value=10, max_uses=5)
    card = make_card(amount=5000)

    session = build_checkout(db, 10000, promo_code="SAVE10", card_number=card.card_number, pin="123456")
    summary = finalize_checkout(db, session, "ORD-100")
    db.commit()

    assert summary["orderReference"] == "ORD-100"
    assert summary["finalTotal"] == 4000
    assert summary["giftCard"]["remainingBalance"] == 0
    db.refresh(card)
    db.refresh(promo)
    assert card.current_balance == 0
    assert promo.current_uses == 1


def test_finalize_requires_order_reference(db):
    with pytest.raises(InvalidFormat):
        finalize_checkout(db, CheckoutSession(1000), "")


def test_finalize_rejects_promo_exhausted_meanwhile(db, make_promo):
    promo = make_promo(code="ONCE", discount_value=10, max_uses=1)
    session = build_checkout(db, 1000, promo_code="ONCE")

    db.query(PromoCode).filter(PromoCode.id == promo.id).update({PromoCode.current_uses: 1})
    db.commit()

    with pytest.raises(PromoRejected, match="usage limit"):
        finalize_checkout(db, session, "ORD-2")


def test_finalize_without_card_writes_no_transaction(db, make_promo):
    make_promo(code="SAVE10", discount_value=10)
    session = build_checkout(db, 2000, promo_code="SAVE10")

    summary = finalize_checkout(db, session, "ORD-3")

    assert summary["giftCard"] is None
    assert summary["finalTotal"] == 1800


def test_gift_card_clamped_after_promo_discount():
    session = CheckoutSession(2000)
    session.apply_promo(PromoDiscount("SAVE500", 500))
    session.apply_gift_card(_card(2000))

    assert session.gift_card_amount == 1500
    assert session.final_total == 0
    assert session.view()["giftCard"]["remainingBalance"] == 500
