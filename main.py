import logging
import os
import io
import csv
from typing import Dict, Any, Optional

from fastapi import FastAPI, Request, Query, HTTPException, Depends
from fastapi.responses import (
    Response,
    JSONResponse,
    PlainTextResponse,
)
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from bulk_orders import format_csv_errors, generate_csv_template, is_valid_phone, validate_bulk_csv
from card_utils import (
    get_days_until_expiry,
    is_card_expired,
    mask_card_number,
    mask_pin,
    normalize_card_number,
    should_show_expiry_warning,
)
from checkout import build_checkout, finalize_checkout
from database.models import Base, GiftCard
from database.session import engine, SessionLocal
from database import crud
from errors import GiftCardError, InvalidFormat, LimitExceeded, NotFound
from issuance import cancel_card, issue_batch, issue_bulk_order, issue_single, void_card
from pdf_utils import FONT_PATH, generate_giftcard_pdf
from promo_utils import create_promo_code, format_discount
from redemption import lookup_card, redeem
from security import AdminSession, require_admin

# ------------------------------------------------------------------------------
# Konfiguracja aplikacji i logowania
# ------------------------------------------------------------------------------

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("divaa-giftcards")

app = FastAPI(title="DIVAA Gift Cards")

Base.metadata.create_all(bind=engine)


@app.exception_handler(GiftCardError)
def gift_card_error_handler(request: Request, exc: GiftCardError):
    return JSONResponse(exc.to_dict(), status_code=exc.http_status)


# ------------------------------------------------------------------------------
# Funkcje pomocnicze
# ------------------------------------------------------------------------------


def _commit(db) -> None:
    with crud.ledger_call("commit"):
        db.commit()


def _required_str(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if value is None or str(value).strip() == "":
        raise InvalidFormat(f"{key} is required", {"field": key})
    return str(value).strip()


def _int_field(payload: Dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise InvalidFormat(f"{key} must be a whole number", {"field": key})
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidFormat(f"{key} must be a whole number", {"field": key})


def _isoformat(value) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat(sep=" ", timespec="seconds")
    return str(value)


def _card_to_dict(card: GiftCard, include_secrets: bool = False) -> Dict[str, Any]:
    data = {
        "id": card.id,
        "cardNumber": card.card_number if include_secrets else mask_card_number(card.card_number),
        "originalAmount": int(card.original_amount),
        "currentBalance": int(card.current_balance),
        "status": card.status,
        "expiryDate": _isoformat(card.expiry_date),
        "daysUntilExpiry": get_days_until_expiry(card.expiry_date),
        "expiringSoon": should_show_expiry_warning(card.expiry_date),
        "designTheme": card.design_theme,
        "cardType": card.card_type,
        "deliveryMethod": card.delivery_method,
        "senderName": card.sender_name,
        "recipientName": card.recipient_name,
        "recipientEmail": card.recipient_email,
        "recipientPhone": card.recipient_phone,
        "personalMessage": card.personal_message,
        "redeemedCount": card.redeemed_count,
        "lastRedeemedAt": _isoformat(card.last_redeemed_at),
        "createdAt": _isoformat(card.created_at),
    }
    data["pin"] = card.card_pin if include_secrets else mask_pin(card.card_pin)
    return data


_BULK_FILE_ERROR_STATUS = {
    InvalidFormat.kind: InvalidFormat.http_status,
    LimitExceeded.kind: LimitExceeded.http_status,
}


def _bulk_error_response(result) -> JSONResponse:
    # błąd całego pliku wyznacza rodzaj odpowiedzi, inaczej błędy wierszy -> 422
    file_error = result.file_level_error
    kind = file_error.kind if file_error is not None else "RowValidation"
    body = result.to_dict()
    body["error"] = kind
    body["report"] = format_csv_errors(result.errors)
    return JSONResponse(body, status_code=_BULK_FILE_ERROR_STATUS.get(kind, 422))


# ------------------------------------------------------------------------------
# PROSTE ENDPOINTY POMOCNICZE
# ------------------------------------------------------------------------------


@app.get("/", response_class=PlainTextResponse)
def root():
    return PlainTextResponse("DIVAA Gift Cards – działa.")


@app.get("/health")
def health_check():
    """
    Sprawdzenie:
    - połączenia z DB
    - obecności czcionki do PDF (symbol ₹)
    """
    db_ok = False

    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        db_ok = True
    except SQLAlchemyError as e:
        logger.exception("Healthcheck DB failed: %s", e)
    finally:
        db.close()

    font_ok = os.path.exists(FONT_PATH)

    return JSONResponse(
        {
            "database": db_ok,
            "pdf_font_found": font_ok,
        },
        status_code=200 if db_ok else 503,
    )


# ------------------------------------------------------------------------------
# PUBLICZNE API – karty podarunkowe
# ------------------------------------------------------------------------------


@app.post("/api/giftcards/balance")
def giftcard_balance(payload: Dict[str, Any]):
    """
    Podgląd salda karty (numer + PIN). Nie zmienia niczego w bazie.
    """
    db = SessionLocal()
    try:
        card = lookup_card(db, payload.get("cardNumber") or "", payload.get("pin") or "")
        return {
            "cardNumber": mask_card_number(card.card_number),
            "balance": int(card.current_balance),
            "originalAmount": int(card.original_amount),
            "status": card.status,
            "expired": is_card_expired(card.expiry_date),
            "expiryDate": _isoformat(card.expiry_date),
            "daysUntilExpiry": get_days_until_expiry(card.expiry_date),
            "expiringSoon": should_show_expiry_warning(card.expiry_date),
        }
    finally:
        db.close()


@app.post("/api/giftcards/redeem")
def giftcard_redeem(payload: Dict[str, Any]):
    """
    Realizacja karty: pobiera min(saldo, kwota zamówienia).

    payload: { "cardNumber": "...", "pin": "123456", "orderAmount": 2500, "orderReference": "..." }
    """
    db = SessionLocal()
    try:
        result = redeem(
            db,
            payload.get("cardNumber") or "",
            payload.get("pin") or "",
            payload.get("orderAmount"),
            order_reference=payload.get("orderReference"),
        )
        _commit(db)
        return result.to_dict()
    except GiftCardError:
        db.rollback()
        raise
    finally:
        db.close()


@app.post("/api/checkout/quote")
def checkout_quote(payload: Dict[str, Any]):
    """
    Wyliczenie koszyka: rabat z kodu promocyjnego, potem karta podarunkowa.
    Bez zapisów do bazy.
    """
    subtotal = _int_field(payload, "subtotal")
    db = SessionLocal()
    try:
        session = build_checkout(
            db,
            subtotal,
            promo_code=payload.get("promoCode"),
            card_number=payload.get("cardNumber"),
            pin=payload.get("pin"),
        )
        return session.view()
    finally:
        db.close()


@app.post("/api/checkout/finalize")
def checkout_finalize(payload: Dict[str, Any]):
    """
    Zatwierdzenie zamówienia: zużycie kodu promocyjnego i pobranie salda karty.
    """
    subtotal = _int_field(payload, "subtotal")
    order_reference = _required_str(payload, "orderReference")

    db = SessionLocal()
    try:
        session = build_checkout(
            db,
            subtotal,
            promo_code=payload.get("promoCode"),
            card_number=payload.get("cardNumber"),
            pin=payload.get("pin"),
        )
        summary = finalize_checkout(db, session, order_reference)
        _commit(db)
        return summary
    except GiftCardError:
        db.rollback()
        raise
    finally:
        db.close()


@app.post("/api/callback-requests")
def create_callback_request(payload: Dict[str, Any]):
    name = _required_str(payload, "name")
    phone = _required_str(payload, "phone")
    if len(name) < 2:
        raise InvalidFormat("Name must be at least 2 characters", {"field": "name"})
    if not is_valid_phone(phone):
        raise InvalidFormat("Valid phone number is required (min 10 digits)", {"field": "phone"})

    db = SessionLocal()
    try:
        req = crud.insert_callback_request(db, name=name, phone=phone)
        _commit(db)
        logger.info("Nowa prośba o kontakt #%s", req.id)
        return {"status": "ok", "id": req.id}
    except GiftCardError:
        db.rollback()
        raise
    finally:
        db.close()


# ------------------------------------------------------------------------------
# ADMIN API – karty
# ------------------------------------------------------------------------------


@app.get("/admin/api/stats")
def admin_stats(admin: AdminSession = Depends(require_admin)):
    """
    Zwraca statystyki kart (po statusie) i sumy łączne.
    """
    db = SessionLocal()
    try:
        rows = crud.card_stats(db)
        totals = {
            "total": sum(r["total"] for r in rows),
            "issued_amount": sum(r["issued_amount"] for r in rows),
            "outstanding_balance": sum(r["outstanding_balance"] for r in rows),
            "redeemed_amount": sum(r["redeemed_amount"] for r in rows),
        }
        return {"byStatus": rows, "totals": totals}
    finally:
        db.close()


@app.get("/admin/api/cards")
def admin_list_cards(
    status: Optional[str] = Query(None, description="Filtr statusu: active / used / cancelled"),
    theme: Optional[str] = Query(None, description="Filtr motywu: birthday / diwali / general"),
    limit: int = Query(100, ge=1, le=500, description="Maksymalna liczba rekordów"),
    admin: AdminSession = Depends(require_admin),
):
    """
    Zwraca listę ostatnich kart z możliwością filtrowania.
    """
    db = SessionLocal()
    try:
        return crud.list_cards(db, status=status, design_theme=theme, limit=limit)
    finally:
        db.close()


@app.get("/admin/api/cards/export")
def admin_export_cards(
    status: Optional[str] = Query(None, description="Filtr statusu: active / used / cancelled"),
    theme: Optional[str] = Query(None, description="Filtr motywu"),
    admin: AdminSession = Depends(require_admin),
):
    """
    Eksport kart do pliku CSV (bez PIN-ów).
    Respektuje te same filtry, co /admin/api/cards.
    """
    db = SessionLocal()
    try:
        rows = crud.list_cards(db, status=status, design_theme=theme, limit=None)

        output = io.StringIO()
        writer = csv.writer(output, delimiter=";")
        columns = [
            "id",
            "card_number",
            "original_amount",
            "current_balance",
            "status",
            "design_theme",
            "card_type",
            "recipient_name",
            "recipient_email",
            "expiry_date",
            "created_at",
        ]
        writer.writerow(columns)
        for row in rows:
            writer.writerow([row[c] for c in columns])

        return Response(
            content=output.getvalue(),
            media_type="text/csv",
            headers={
                "Content-Disposition": 'attachment; filename="gift_cards_export.csv"'
            },
        )
    finally:
        db.close()


@app.get("/admin/api/cards/{card_number}")
def admin_get_card(card_number: str, admin: AdminSession = Depends(require_admin)):
    db = SessionLocal()
    try:
        card = crud.get_card_by_number(db, normalize_card_number(card_number))
        if card is None:
            raise NotFound("Gift card not found. Please check the card number.")
        data = _card_to_dict(card, include_secrets=True)
        data["transactions"] = crud.list_transactions(db, card_id=card.id)
        return data
    finally:
        db.close()


@app.get("/admin/api/cards/{card_number}/pdf")
def admin_card_pdf(card_number: str, admin: AdminSession = Depends(require_admin)):
    """
    Pobiera PDF z kartą podarunkową (numer, PIN, kwota, ważność).
    """
    db = SessionLocal()
    try:
        card = crud.get_card_by_number(db, normalize_card_number(card_number))
        if card is None:
            raise NotFound("Gift card not found. Please check the card number.")

        pdf_bytes = generate_giftcard_pdf(card)
        filename = f"giftcard-{card.card_number}.pdf"
        return Response(
            content=pdf_bytes,
            media_type="application/pdf",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )
    finally:
        db.close()


@app.post("/admin/api/cards/{card_number}/cancel")
def admin_cancel_card(
    card_number: str,
    payload: Optional[Dict[str, Any]] = None,
    admin: AdminSession = Depends(require_admin),
):
    notes = (payload or {}).get("notes")
    db = SessionLocal()
    try:
        card = cancel_card(db, card_number, notes=notes)
        _commit(db)
        logger.info("Admin %s anulował kartę %s", admin.username, mask_card_number(card.card_number))
        return {"status": "ok", "card": _card_to_dict(card)}
    except GiftCardError:
        db.rollback()
        raise
    finally:
        db.close()


@app.post("/admin/api/cards/{card_number}/void")
def admin_void_card(
    card_number: str,
    payload: Optional[Dict[str, Any]] = None,
    admin: AdminSession = Depends(require_admin),
):
    notes = (payload or {}).get("notes")
    db = SessionLocal()
    try:
        card = void_card(db, card_number, notes=notes)
        _commit(db)
        logger.info("Admin %s unieważnił kartę %s", admin.username, mask_card_number(card.card_number))
        return {"status": "ok", "card": _card_to_dict(card)}
    except GiftCardError:
        db.rollback()
        raise
    finally:
        db.close()


# ------------------------------------------------------------------------------
# ADMIN API – wydawanie kart
# ------------------------------------------------------------------------------


@app.post("/admin/api/cards")
def admin_issue_card(payload: Dict[str, Any], admin: AdminSession = Depends(require_admin)):
    """
    Wydanie pojedynczej karty.

    payload: amount, designTheme?, cardType?, deliveryMethod?, senderName?,
    recipientName?, recipientEmail?, recipientPhone?, personalMessage?,
    buyerName?, buyerEmail?, buyerPhone?
    """
    db = SessionLocal()
    try:
        order, card = issue_single(db, payload)
        _commit(db)
        return {
            "status": "ok",
            "orderNumber": order.order_number,
            "card": _card_to_dict(card, include_secrets=True),
        }
    except GiftCardError:
        db.rollback()
        raise
    finally:
        db.close()


@app.post("/admin/api/cards/batch")
def admin_issue_batch(payload: Dict[str, Any], admin: AdminSession = Depends(require_admin)):
    """
    Wydanie N kart tego samego nominału.

    payload: { "quantity": 10, "amount": 1000, "designTheme": "diwali", "buyerName": "..." }
    """
    db = SessionLocal()
    try:
        order, cards = issue_batch(
            db,
            payload.get("quantity"),
            payload.get("amount"),
            design_theme=payload.get("designTheme"),
            card_type=payload.get("cardType"),
            buyer={
                "name": payload.get("buyerName"),
                "email": payload.get("buyerEmail"),
                "phone": payload.get("buyerPhone"),
            },
        )
        _commit(db)
        return {
            "status": "ok",
            "orderNumber": order.order_number,
            "totalCards": order.total_cards,
            "totalAmount": order.total_amount,
            "cards": [
                {"cardNumber": c.card_number, "pin": c.card_pin, "amount": int(c.original_amount)}
                for c in cards
            ],
        }
    except GiftCardError:
        db.rollback()
        raise
    finally:
        db.close()


# ------------------------------------------------------------------------------
# ADMIN API – zamówienia hurtowe (CSV)
# ------------------------------------------------------------------------------


@app.get("/admin/api/bulk-orders/template")
def admin_bulk_template(admin: AdminSession = Depends(require_admin)):
    return Response(
        content=generate_csv_template(),
        media_type="text/csv",
        headers={
            "Content-Disposition": 'attachment; filename="gift_card_bulk_order_template.csv"'
        },
    )


@app.post("/admin/api/bulk-orders/validate")
async def admin_bulk_validate(
    request: Request,
    filename: Optional[str] = Query(None, description="Nazwa wgrywanego pliku"),
    admin: AdminSession = Depends(require_admin),
):
    """
    Walidacja pliku CSV (treść w body żądania). Zwraca wszystkie błędy naraz.
    """
    content = await request.body()
    result = validate_bulk_csv(content, filename=filename)
    if not result.valid:
        return _bulk_error_response(result)
    return result.to_dict()


@app.post("/admin/api/bulk-orders")
async def admin_bulk_order(
    request: Request,
    filename: Optional[str] = Query(None, description="Nazwa wgrywanego pliku"),
    buyerName: Optional[str] = Query(None),
    buyerEmail: Optional[str] = Query(None),
    buyerPhone: Optional[str] = Query(None),
    admin: AdminSession = Depends(require_admin),
):
    """
    Zamówienie hurtowe: jedna karta na wiersz CSV. Jeśli którykolwiek wiersz
    jest błędny, nie wydajemy żadnej karty.
    """
    content = await request.body()

    db = SessionLocal()
    try:
        result, order, cards = issue_bulk_order(
            db,
            content,
            buyer={"name": buyerName, "email": buyerEmail, "phone": buyerPhone},
            filename=filename,
        )
        if order is None:
            return _bulk_error_response(result)

        _commit(db)
        return {
            "status": "ok",
            "orderNumber": order.order_number,
            "totalCards": order.total_cards,
            "totalAmount": order.total_amount,
            "cards": [
                {
                    "cardNumber": c.card_number,
                    "pin": c.card_pin,
                    "amount": int(c.original_amount),
                    "recipientName": c.recipient_name,
                    "recipientEmail": c.recipient_email,
                }
                for c in cards
            ],
        }
    except GiftCardError:
        db.rollback()
        raise
    finally:
        db.close()


# ------------------------------------------------------------------------------
# ADMIN API – kody promocyjne, transakcje, prośby o kontakt
# ------------------------------------------------------------------------------


@app.get("/admin/api/promo-codes")
def admin_list_promo_codes(admin: AdminSession = Depends(require_admin)):
    db = SessionLocal()
    try:
        return crud.list_promo_codes(db)
    finally:
        db.close()


@app.post("/admin/api/promo-codes")
def admin_add_promo_code(payload: Dict[str, Any], admin: AdminSession = Depends(require_admin)):
    """
    payload: { "code": "DIWALI10", "discountType": "percentage", "discountValue": 10,
               "minPurchaseAmount": 1000, "maxUses": 100, "expiresAt": "2025-12-31T23:59:59" }
    """
    db = SessionLocal()
    try:
        promo = create_promo_code(db, payload)
        _commit(db)
        return {
            "status": "ok",
            "id": promo.id,
            "code": promo.code,
            "discount": format_discount(promo),
        }
    except GiftCardError:
        db.rollback()
        raise
    finally:
        db.close()


@app.get("/admin/api/transactions")
def admin_list_transactions(
    cardNumber: Optional[str] = Query(None, description="Numer karty"),
    limit: int = Query(50, ge=1, le=500, description="Maksymalna liczba wpisów"),
    admin: AdminSession = Depends(require_admin),
):
    """
    Ostatnie wpisy dziennika transakcji (opcjonalnie dla jednej karty).
    """
    db = SessionLocal()
    try:
        card_id = None
        if cardNumber:
            card = crud.get_card_by_number(db, normalize_card_number(cardNumber))
            if card is None:
                raise NotFound("Gift card not found. Please check the card number.")
            card_id = card.id
        return crud.list_transactions(db, card_id=card_id, limit=limit)
    finally:
        db.close()


@app.get("/admin/api/callback-requests")
def admin_list_callback_requests(
    status: Optional[str] = Query(None, description="Filtr statusu: pending / called"),
    limit: int = Query(100, ge=1, le=500),
    admin: AdminSession = Depends(require_admin),
):
    db = SessionLocal()
    try:
        return crud.list_callback_requests(db, status=status, limit=limit)
    finally:
        db.close()


@app.post("/admin/api/callback-requests/{request_id}/called")
def admin_mark_callback_called(
    request_id: int,
    payload: Optional[Dict[str, Any]] = None,
    admin: AdminSession = Depends(require_admin),
):
    notes = (payload or {}).get("notes") or None
    db = SessionLocal()
    try:
        if crud.apply_update(db, crud.MarkCalled(request_id, notes)) != 1:
            raise HTTPException(status_code=404, detail="Callback request not found")
        _commit(db)
        logger.info("Admin %s oznaczył prośbę o kontakt #%s jako wykonaną", admin.username, request_id)
        return {"status": "ok", "id": request_id}
    except (GiftCardError, HTTPException):
        db.rollback()
        raise
    finally:
        db.close()
