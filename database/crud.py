import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database.models import (
    CallbackRequest,
    CardStatus,
    GiftCard,
    GiftCardOrder,
    GiftCardTransaction,
    PromoCode,
)
from errors import TransientFailure

logger = logging.getLogger("divaa-giftcards")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@contextmanager
def ledger_call(action: str):
    """
    Każdy błąd SQLAlchemy przy dostępie do bazy zamieniamy na TransientFailure –
    wołający decyduje, czy ponowić.
    """
    try:
        yield
    except SQLAlchemyError as e:
        logger.error("Błąd bazy danych (%s): %s", action, e)
        raise TransientFailure("Gift card ledger is unavailable. Please try again.") from e


# ------------------------------------------------------------------------------
#  OPERACJE AKTUALIZACJI (warianty)
# ------------------------------------------------------------------------------


@dataclass(frozen=True)
class ApplyBalance:
    card_id: int
    amount: int
    order_reference: Optional[str] = None


@dataclass(frozen=True)
class CancelCard:
    card_id: int
    notes: Optional[str] = None


@dataclass(frozen=True)
class VoidCard:
    card_id: int
    notes: Optional[str] = None


@dataclass(frozen=True)
class MarkCalled:
    request_id: int
    notes: Optional[str] = None


LedgerUpdate = Union[ApplyBalance, CancelCard, VoidCard, MarkCalled]


def apply_update(db: Session, op: LedgerUpdate) -> int:
    """
    Wykonuje jedną operację aktualizacji i zwraca liczbę zmienionych wierszy.
    0 oznacza, że warunek (np. saldo >= kwota) nie był spełniony.
    """
    now = _utcnow()

    if isinstance(op, ApplyBalance):
        # Atomowe zmniejszenie salda – bez odczytu przed zapisem
        stmt = (
            update(GiftCard)
            .where(
                GiftCard.id == op.card_id,
                GiftCard.status == CardStatus.ACTIVE.value,
                GiftCard.current_balance >= op.amount,
                GiftCard.expiry_date >= now,
            )
            .values(
                current_balance=GiftCard.current_balance - op.amount,
                redeemed_count=GiftCard.redeemed_count + 1,
                last_redeemed_at=now,
                updated_at=now,
            )
        )
    elif isinstance(op, (CancelCard, VoidCard)):
        new_status = CardStatus.CANCELLED if isinstance(op, CancelCard) else CardStatus.USED
        stmt = (
            update(GiftCard)
            .where(GiftCard.id == op.card_id, GiftCard.status == CardStatus.ACTIVE.value)
            .values(status=new_status.value, updated_at=now)
        )
    elif isinstance(op, MarkCalled):
        values: Dict[str, Any] = {"status": "called", "called_at": now}
        if op.notes is not None:
            values["notes"] = op.notes
        stmt = update(CallbackRequest).where(CallbackRequest.id == op.request_id).values(**values)
    else:
        raise TypeError(f"Nieobsługiwana operacja: {op!r}")

    with ledger_call(type(op).__name__):
        res = db.execute(stmt.execution_options(synchronize_session=False))
    return int(res.rowcount or 0)


# ------------------------------------------------------------------------------
#  KARTY
# ------------------------------------------------------------------------------


def card_number_exists(db: Session, card_number: str) -> bool:
    with ledger_call("card_number_exists"):
        row = db.execute(
            text("SELECT 1 FROM gift_cards WHERE card_number = :card_number LIMIT 1"),
            {"card_number": card_number},
        ).first()
    return row is not None


def get_card_by_number(db: Session, card_number: str) -> Optional[GiftCard]:
    with ledger_call("get_card_by_number"):
        return db.execute(
            select(GiftCard).where(GiftCard.card_number == card_number)
        ).scalar_one_or_none()


def get_card(db: Session, card_id: int) -> Optional[GiftCard]:
    with ledger_call("get_card"):
        return db.get(GiftCard, card_id)


def refresh_card(db: Session, card: GiftCard) -> GiftCard:
    with ledger_call("refresh_card"):
        db.refresh(card)
    return card


def insert_card(db: Session, **fields: Any) -> GiftCard:
    card = GiftCard(**fields)
    with ledger_call("insert_card"):
        db.add(card)
        db.flush()
    return card


def insert_transaction(
    db: Session,
    card_id: int,
    transaction_type: str,
    amount: int,
    balance_before: int,
    balance_after: int,
    order_reference: Optional[str] = None,
    notes: Optional[str] = None,
) -> GiftCardTransaction:
    tx = GiftCardTransaction(
        card_id=card_id,
        transaction_type=transaction_type,
        amount=amount,
        balance_before=balance_before,
        balance_after=balance_after,
        order_reference=order_reference,
        notes=notes,
    )
    with ledger_call("insert_transaction"):
        db.add(tx)
        db.flush()
    return tx


def list_cards(
    db: Session,
    status: Optional[str] = None,
    design_theme: Optional[str] = None,
    limit: Optional[int] = 100,
) -> List[Dict[str, Any]]:
    conditions = []
    params: Dict[str, Any] = {}

    if status is not None:
        conditions.append("status = :status")
        params["status"] = status
    if design_theme is not None:
        conditions.append("design_theme = :design_theme")
        params["design_theme"] = design_theme

    where_clause = ""
    if conditions:
        where_clause = "WHERE " + " AND ".join(conditions)

    limit_clause = ""
    if limit is not None:
        limit_clause = "LIMIT :limit"
        params["limit"] = limit

    query = text(
        f"""
        SELECT id, card_number, original_amount, current_balance, status,
               design_theme, card_type, recipient_name, recipient_email,
               expiry_date, created_at
        FROM gift_cards
        {where_clause}
        ORDER BY id DESC
        {limit_clause}
        """
    )
    with ledger_call("list_cards"):
        rows = db.execute(query, params).mappings().all()
    return [dict(r) for r in rows]


def card_stats(db: Session) -> List[Dict[str, Any]]:
    """Proste zestawienie kart wg statusu."""
    with ledger_call("card_stats"):
        rows = db.execute(
            text(
                """
                SELECT
                  status,
                  COUNT(*) AS total,
                  COALESCE(SUM(original_amount), 0) AS issued_amount,
                  COALESCE(SUM(current_balance), 0) AS outstanding_balance,
                  SUM(CASE WHEN current_balance = 0 THEN 1 ELSE 0 END) AS depleted
                FROM gift_cards
                GROUP BY status
                ORDER BY status
                """
            )
        ).fetchall()

    return [
        {
            "status": row.status,
            "total": int(row.total),
            "issued_amount": int(row.issued_amount),
            "outstanding_balance": int(row.outstanding_balance),
            "redeemed_amount": int(row.issued_amount) - int(row.outstanding_balance),
            "depleted": int(row.depleted or 0),
        }
        for row in rows
    ]


def list_transactions(
    db: Session,
    card_id: Optional[int] = None,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    params: Dict[str, Any] = {"limit": limit}
    where_clause = ""
    if card_id is not None:
        where_clause = "WHERE t.card_id = :card_id"
        params["card_id"] = card_id

    with ledger_call("list_transactions"):
        rows = db.execute(
            text(
                f"""
                SELECT t.id, t.card_id, c.card_number, t.transaction_type, t.amount,
                       t.balance_before, t.balance_after, t.order_reference,
                       t.notes, t.created_at
                FROM gift_card_transactions t
                JOIN gift_cards c ON c.id = t.card_id
                {where_clause}
                ORDER BY t.id DESC
                LIMIT :limit
                """
            ),
            params,
        ).mappings().all()
    return [dict(r) for r in rows]


# ------------------------------------------------------------------------------
#  ZAMÓWIENIA
# ------------------------------------------------------------------------------


def count_orders_in_year(db: Session, year: int) -> int:
    with ledger_call("count_orders_in_year"):
        return int(
            db.execute(
                select(func.count(GiftCardOrder.id))
                .where(
                    GiftCardOrder.created_at >= datetime(year, 1, 1),
                    GiftCardOrder.created_at < datetime(year + 1, 1, 1),
                )
            ).scalar_one()
        )


def insert_order(db: Session, **fields: Any) -> GiftCardOrder:
    order = GiftCardOrder(**fields)
    with ledger_call("insert_order"):
        db.add(order)
        db.flush()
    return order


# ------------------------------------------------------------------------------
#  KODY PROMOCYJNE
# ------------------------------------------------------------------------------


def get_promo_by_code(db: Session, code: str) -> Optional[PromoCode]:
    with ledger_call("get_promo_by_code"):
        return db.execute(
            select(PromoCode).where(PromoCode.code == code)
        ).scalar_one_or_none()


def consume_promo_use(db: Session, promo_id: int) -> int:
    """Zwiększa licznik użyć tylko, jeśli limit nie został osiągnięty."""
    stmt = (
        update(PromoCode)
        .where(
            PromoCode.id == promo_id,
            PromoCode.is_active.is_(True),
            (PromoCode.max_uses.is_(None)) | (PromoCode.current_uses < PromoCode.max_uses),
        )
        .values(current_uses=PromoCode.current_uses + 1)
        .execution_options(synchronize_session=False)
    )
    with ledger_call("consume_promo_use"):
        res = db.execute(stmt)
    return int(res.rowcount or 0)


def insert_promo_code(db: Session, **fields: Any) -> PromoCode:
    promo = PromoCode(**fields)
    with ledger_call("insert_promo_code"):
        db.add(promo)
        db.flush()
    return promo


def list_promo_codes(db: Session) -> List[Dict[str, Any]]:
    with ledger_call("list_promo_codes"):
        rows = db.execute(
            text(
                """
                SELECT id, code, discount_type, discount_value, min_purchase_amount,
                       max_uses, current_uses, expires_at, is_active
                FROM promo_codes
                ORDER BY id DESC
                """
            )
        ).mappings().all()
    return [dict(r) for r in rows]


# ------------------------------------------------------------------------------
#  PROŚBY O KONTAKT
# ------------------------------------------------------------------------------


def insert_callback_request(db: Session, name: str, phone: str) -> CallbackRequest:
    req = CallbackRequest(name=name, phone=phone, status="pending")
    with ledger_call("insert_callback_request"):
        db.add(req)
        db.flush()
    return req


def list_callback_requests(
    db: Session,
    status: Optional[str] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    params: Dict[str, Any] = {"limit": limit}
    where_clause = ""
    if status is not None:
        where_clause = "WHERE status = :status"
        params["status"] = status

    with ledger_call("list_callback_requests"):
        rows = db.execute(
            text(
                f"""
                SELECT id, name, phone, status, notes, called_at, created_at
                FROM callback_requests
                {where_clause}
                ORDER BY created_at DESC, id DESC
                LIMIT :limit
                """
            ),
            params,
        ).mappings().all()
    return [dict(r) for r in rows]
