import csv
import io
from datetime import datetime

import pytest

from bulk_orders import CSV_COLUMNS
from card_utils import utcnow, validate_card_number, validate_card_pin
from database.models import GiftCard, GiftCardOrder, GiftCardTransaction
from errors import CardInactive, InvalidFormat, NotFound
from issuance import (
    cancel_card,
    generate_order_number,
    issue_batch,
    issue_bulk_order,
    issue_card,
    issue_single,
    void_card,
)
from redemption import redeem


def _bulk_csv(rows):
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=CSV_COLUMNS)
    writer.writeheader()
    for i, row in enumerate(rows):
        data = {
            "recipient_name": f"Recipient {i}",
            "recipient_email": f"r{i}@example.com",
            "recipient_phone": "+919876543210",
            "amount": "1000",
            "custom_message": "",
            "design_theme": "diwali",
        }
        data.update(row)
        writer.writerow(data)
    return output.getvalue().encode("utf-8")


def test_issue_card(db):
    card = issue_card(db, 2500, design_theme="Birthday", recipient_name="Meera")
    db.commit()

    assert validate_card_number(card.card_number)
    assert validate_card_pin(card.card_pin)
    assert card.original_amount == card.current_balance == 2500
    assert card.status == "active"
    assert card.design_theme == "birthday"
    assert card.expiry_date > utcnow()

    [tx] = db.query(GiftCardTransaction).filter(GiftCardTransaction.card_id == card.id).all()
    assert tx.transaction_type == "issue"
    assert tx.balance_before == 0
    assert tx.balance_after == 2500


@pytest.mark.parametrize(
    "kwargs",
    [
        {"amount": 499},
        {"amount": 100001},
        {"amount": "lots"},
        {"amount": 1000, "design_theme": "holi"},
        {"amount": 1000, "card_type": "prepaid"},
        {"amount": 1000, "delivery_method": "pigeon"},
        {"amount": 1000, "personal_message": "x" * 501},
    ],
)
def test_issue_card_validation(db, kwargs):
    with pytest.raises(InvalidFormat):
        issue_card(db, **kwargs)
    assert db.query(GiftCard).count() == 0


def test_generate_order_number_is_sequential_per_year(db):
    year = utcnow().year
    assert generate_order_number(db) == f"GC-{year}-00001"

    issue_single(db, {"amount": 1000})
    db.commit()

    assert generate_order_number(db) == f"GC-{year}-00002"
    assert generate_order_number(db, now=datetime(year + 1, 1, 1)) == f"GC-{year + 1}-00001"


def test_issue_single_creates_order(db):
    order, card = issue_single(db, {"amount": 1500, "buyerName": "Kiran", "recipientEmail": "k@example.com"})
    db.commit()

    assert order.order_type == "single"
    assert order.total_cards == 1
    assert order.total_amount == 1500
    assert card.order_id == order.id
    assert card.recipient_email == "k@example.com"


def test_issue_batch(db):
    order, cards = issue_batch(db, 5, 1000, design_theme="diwali", buyer={"name": "Acme Corp"})
    db.commit()

    assert order.order_type == "bulk"
    assert order.total_cards == 5
    assert order.total_amount == 5000
    assert order.buyer_name == "Acme Corp"
    assert len({c.card_number for c in cards}) == 5
    assert all(c.order_id == order.id for c in cards)


@pytest.mark.parametrize("quantity", [0, -1, "many", 501])
def test_issue_batch_quantity_limits(db, quantity):
    with pytest.raises(InvalidFormat):
        issue_batch(db, quantity, 1000)


def test_bulk_order_issues_one_card_per_row(db):
    content = _bulk_csv([{"amount": str(500 + 100 * i)} for i in range(10)])

    result, order, cards = issue_bulk_order(db, content, buyer={"name": "Acme Corp"})
    db.commit()

    assert result.valid
    assert order.total_cards == 10
    assert order.total_amount == sum(500 + 100 * i for i in range(10))
    assert [c.original_amount for c in cards] == [500 + 100 * i for i in range(10)]
    assert all(c.sender_name == "Acme Corp" for c in cards)
    assert cards[0].recipient_email == "r0@example.com"


def test_bulk_order_with_one_bad_row_issues_nothing(db):
    rows = [{} for _ in range(9)] + [{"recipient_email": "broken"}]

    result, order, cards = issue_bulk_order(db, _bulk_csv(rows))

    assert not result.valid
    assert order is None
    assert cards == []
    assert len(result.errors) == 1
    assert db.query(GiftCard).count() == 0
    assert db.query(GiftCardOrder).count() == 0


def test_cancel_card_keeps_balance(db, make_card):
    card = make_card(amount=5000, balance=3200)

    cancelled = cancel_card(db, card.card_number, notes="customer request")
    db.commit()

    assert cancelled.status == "cancelled"
    assert cancelled.current_balance == 3200
    tx = db.query(GiftCardTransaction).filter(GiftCardTransaction.card_id == card.id).one()
    assert tx.transaction_type == "cancel"
    assert tx.amount == 0
    assert tx.notes == "customer request"

    with pytest.raises(CardInactive, match="cancelled"):
        redeem(db, card.card_number, "123456", 100)


def test_void_card_marks_used(db, make_card):
    card = make_card(amount=5000)

    voided = void_card(db, card.card_number)
    db.commit()

    assert voided.status == "used"
    assert voided.current_balance == 5000


def test_status_change_only_from_active(db, make_card):
    card = make_card(status="cancelled")

    with pytest.raises(CardInactive):
        void_card(db, card.card_number)
    with pytest.raises(CardInactive):
        cancel_card(db, card.card_number)


def test_cancel_unknown_card(db):
    with pytest.raises(NotFound):
        cancel_card(db, "DIVAA-0000-0000-0000")
