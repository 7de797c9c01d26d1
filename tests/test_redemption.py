from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from card_utils import utcnow
from config import settings
from database import crud
from database.models import GiftCardTransaction
from errors import (
    CardInactive,
    ConcurrentUpdate,
    Depleted,
    Expired,
    InvalidCredential,
    InvalidFormat,
    NotFound,
    TransientFailure,
)
from redemption import check_card, debit_card, lookup_card, redeem


def _transactions(db, card_id):
    return (
        db.query(GiftCardTransaction)
        .filter(GiftCardTransaction.card_id == card_id)
        .order_by(GiftCardTransaction.id)
        .all()
    )


def test_partial_redemption_keeps_card_active(db, make_card):
    card = make_card(amount=5000)

    result = redeem(db, card.card_number, "123456", 2000, order_reference="ORD-1")
    db.commit()

    assert result.applied_amount == 2000
    assert result.remaining_balance == 3000
    assert result.status == "active"
    db.refresh(card)
    assert card.current_balance == 3000
    assert card.redeemed_count == 1
    assert card.last_redeemed_at is not None


def test_order_larger_than_balance_uses_whole_balance(db, make_card):
    card = make_card(amount=5000, balance=3000)

    result = redeem(db, card.card_number, "123456", 4500)
    db.commit()

    assert result.applied_amount == 3000
    assert result.remaining_balance == 0
    assert result.status == "active"

    with pytest.raises(Depleted, match="no remaining balance"):
        redeem(db, card.card_number, "123456", 100)


def test_redemption_writes_transaction(db, make_card):
    card = make_card(amount=5000)

    redeem(db, card.card_number, "123456", 1200, order_reference="ORD-42")
    db.commit()

    [tx] = _transactions(db, card.id)
    assert tx.transaction_type == "redeem"
    assert tx.amount == 1200
    assert tx.balance_before == 5000
    assert tx.balance_after == 3800
    assert tx.order_reference == "ORD-42"


def test_balance_never_increases_over_redemptions(db, make_card):
    card = make_card(amount=5000)
    balances = [5000]

    for amount in (700, 1300, 2500, 900):
        result = redeem(db, card.card_number, "123456", amount)
        db.commit()
        balances.append(result.remaining_balance)

    assert balances == sorted(balances, reverse=True)
    assert balances[-1] == 0
    assert all(b >= 0 for b in balances)


def test_card_number_is_normalized(db, make_card):
    card = make_card()
    lowered = "  " + card.card_number.lower() + " "

    assert lookup_card(db, lowered, "123456").id == card.id


@pytest.mark.parametrize("number", ["DIVAA-1234", "GIFT-1234-5678-9012", "DIVAA-12AB-5678-9012"])
def test_invalid_card_number_format(db, number):
    with pytest.raises(InvalidFormat, match="DIVAA-XXXX-XXXX-XXXX"):
        redeem(db, number, "123456", 1000)


def test_invalid_pin_format(db, make_card):
    card = make_card()
    with pytest.raises(InvalidFormat, match="PIN must be 6 digits"):
        redeem(db, card.card_number, "12345", 1000)


def test_unknown_card(db):
    with pytest.raises(NotFound, match="not found"):
        redeem(db, "DIVAA-0000-0000-0000", "123456", 1000)


def test_wrong_pin(db, make_card):
    card = make_card()
    with pytest.raises(InvalidCredential, match="Invalid PIN"):
        redeem(db, card.card_number, "654321", 1000)


def test_hidden_enumeration_uses_same_message(db, make_card, monkeypatch):
    monkeypatch.setattr(settings, "hide_card_enumeration", True)
    card = make_card()

    with pytest.raises(InvalidCredential) as missing:
        lookup_card(db, "DIVAA-0000-0000-0000", "123456")
    with pytest.raises(InvalidCredential) as wrong_pin:
        lookup_card(db, card.card_number, "654321")

    assert missing.value.message == wrong_pin.value.message


@pytest.mark.parametrize("status", ["used", "cancelled"])
def test_inactive_card_message_includes_status(db, make_card, status):
    card = make_card(status=status)

    with pytest.raises(CardInactive) as exc:
        redeem(db, card.card_number, "123456", 1000)

    assert status in exc.value.message
    assert exc.value.details["status"] == status


def test_expired_card(db, make_card):
    card = make_card(expiry_date=utcnow() - timedelta(days=1))

    with pytest.raises(Expired):
        redeem(db, card.card_number, "123456", 1000)


def test_status_is_checked_before_expiry(db, make_card):
    card = make_card(status="cancelled", expiry_date=utcnow() - timedelta(days=1))

    with pytest.raises(CardInactive):
        redeem(db, card.card_number, "123456", 1000)


def test_rejected_redemption_changes_nothing(db, make_card):
    card = make_card(amount=5000, balance=0)

    for _ in range(3):
        with pytest.raises(Depleted):
            redeem(db, card.card_number, "123456", 1000)
        db.rollback()

    db.refresh(card)
    assert card.current_balance == 0
    assert card.redeemed_count == 0
    assert _transactions(db, card.id) == []


@pytest.mark.parametrize("amount", [0, -100, 10.5, "abc", None, True])
def test_invalid_order_amount(db, make_card, amount):
    card = make_card()
    with pytest.raises(InvalidFormat):
        redeem(db, card.card_number, "123456", amount)


def test_check_card_makes_no_writes(db, make_card):
    card = make_card(amount=5000, balance=2000)

    applied = check_card(db, card.card_number, "123456", 3500)

    assert applied.applied_amount == 2000
    assert applied.available_balance == 2000
    assert applied.masked_card_number.endswith(card.card_number[-4:])
    db.refresh(card)
    assert card.current_balance == 2000
    assert _transactions(db, card.id) == []


def test_debit_detects_lost_update(db, make_card):
    card = make_card(amount=5000, balance=3000)
    applied = check_card(db, card.card_number, "123456", 3000)

    # inna transakcja pobrała część salda między sprawdzeniem a pobraniem
    crud.apply_update(db, crud.ApplyBalance(card.id, 1000))
    db.commit()

    with pytest.raises(ConcurrentUpdate):
        debit_card(db, applied.card_id, applied.applied_amount, "ORD-RACE")
    db.rollback()

    db.refresh(card)
    assert card.current_balance == 2000


def test_debit_reports_precise_reason_when_card_was_cancelled(db, make_card):
    card = make_card(amount=5000)
    applied = check_card(db, card.card_number, "123456", 1000)

    crud.apply_update(db, crud.CancelCard(card.id))
    db.commit()

    with pytest.raises(CardInactive):
        debit_card(db, applied.card_id, applied.applied_amount)


def test_ledger_failure_becomes_transient_failure():
    session = MagicMock()
    session.execute.side_effect = OperationalError("SELECT", {}, Exception("connection reset"))

    with pytest.raises(TransientFailure):
        redeem(session, "DIVAA-1234-5678-9012", "123456", 1000)


def test_to_dict_masks_card_number(db, make_card):
    card = make_card(amount=5000)

    data = redeem(db, card.card_number, "123456", 1000, order_reference="ORD-7").to_dict()

    assert data["cardNumber"] == "DIVAA-****-****-" + card.card_number[-4:]
    assert data["appliedAmount"] == 1000
    assert data["remainingBalance"] == 4000
    assert data["orderReference"] == "ORD-7"


def test_two_segment_number_fails_before_ledger_lookup():
    session = MagicMock()

    with pytest.raises(InvalidFormat):
        redeem(session, "DIVAA-1234-5678", "123456", 1000)

    session.execute.assert_not_called()
