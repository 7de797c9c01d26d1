import os
import sys
from datetime import timedelta
from pathlib import Path

import pytest

# Zmienne środowiskowe muszą być ustawione przed importem config.py
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("ADMIN_USERNAME", "admin")
os.environ.setdefault("ADMIN_PASSWORD", "test-password")

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from card_utils import generate_card_number, utcnow
from database import crud
from database.models import Base

ADMIN_AUTH = (os.environ["ADMIN_USERNAME"], os.environ["ADMIN_PASSWORD"])


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_card(db):
    """Zapisuje kartę w bazie testowej i zwraca obiekt GiftCard."""

    def _make(
        amount=5000,
        balance=None,
        status="active",
        pin="123456",
        card_number=None,
        expiry_date=None,
        design_theme="general",
    ):
        now = utcnow()
        card = crud.insert_card(
            db,
            card_number=card_number or generate_card_number(db),
            card_pin=pin,
            original_amount=amount,
            current_balance=amount if balance is None else balance,
            status=status,
            expiry_date=expiry_date or now + timedelta(days=180),
            design_theme=design_theme,
            card_type="regular",
            delivery_method="email",
            redeemed_count=0,
            created_at=now,
            updated_at=now,
        )
        db.commit()
        return card

    return _make


@pytest.fixture
def make_promo(db):
    def _make(code="SAVE10", discount_type="percentage", discount_value=10, **fields):
        promo = crud.insert_promo_code(
            db,
            code=code,
            discount_type=discount_type,
            discount_value=discount_value,
            min_purchase_amount=fields.pop("min_purchase_amount", 0),
            current_uses=fields.pop("current_uses", 0),
            is_active=fields.pop("is_active", True),
            **fields,
        )
        db.commit()
        return promo

    return _make


@pytest.fixture
def client(session_factory, monkeypatch):
    from fastapi.testclient import TestClient

    import main

    monkeypatch.setattr(main, "SessionLocal", session_factory)
    with TestClient(main.app) as test_client:
        yield test_client


@pytest.fixture
def admin_auth():
    return ADMIN_AUTH
