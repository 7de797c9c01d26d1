import enum
from datetime import datetime

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, ForeignKey
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class CardStatus(str, enum.Enum):
    ACTIVE = "active"
    USED = "used"            # unieważniona administracyjnie
    CANCELLED = "cancelled"


class DesignTheme(str, enum.Enum):
    BIRTHDAY = "birthday"
    DIWALI = "diwali"
    GENERAL = "general"


class CardType(str, enum.Enum):
    REGULAR = "regular"
    RELOADABLE = "reloadable"


class DeliveryMethod(str, enum.Enum):
    EMAIL = "email"
    SMS = "sms"
    BOTH = "both"


class GiftCardOrder(Base):
    __tablename__ = "gift_card_orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String, unique=True, index=True)   # np. GC-2025-00001
    order_type = Column(String(10), default="single")        # single / bulk
    total_cards = Column(Integer, default=0)
    total_amount = Column(Integer, default=0)
    buyer_name = Column(String, nullable=True)
    buyer_email = Column(String, nullable=True)
    buyer_phone = Column(String, nullable=True)
    status = Column(String(20), default="completed")
    created_at = Column(DateTime, default=datetime.utcnow)


class GiftCard(Base):
    __tablename__ = "gift_cards"

    id = Column(Integer, primary_key=True, index=True)
    card_number = Column(String(32), unique=True, index=True, nullable=False)  # np. DIVAA-1234-5678-9012
    card_pin = Column(String(6), nullable=False)
    order_id = Column(Integer, ForeignKey("gift_card_orders.id"), nullable=True, index=True)

    original_amount = Column(Integer, nullable=False)
    current_balance = Column(Integer, nullable=False)
    status = Column(String(20), default=CardStatus.ACTIVE.value, nullable=False, index=True)
    expiry_date = Column(DateTime, nullable=False)

    design_theme = Column(String(20), default=DesignTheme.GENERAL.value)
    card_type = Column(String(20), default=CardType.REGULAR.value)
    delivery_method = Column(String(10), default=DeliveryMethod.EMAIL.value)

    sender_name = Column(String, nullable=True)
    recipient_name = Column(String, nullable=True)
    recipient_email = Column(String, nullable=True)
    recipient_phone = Column(String, nullable=True)
    personal_message = Column(Text, nullable=True)

    redeemed_count = Column(Integer, default=0)
    last_redeemed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<GiftCard(id={self.id}, status={self.status}, balance={self.current_balance})>"


class GiftCardTransaction(Base):
    """Dziennik zmian salda/statusu karty – tylko dopisywanie."""

    __tablename__ = "gift_card_transactions"

    id = Column(Integer, primary_key=True, index=True)
    card_id = Column(Integer, ForeignKey("gift_cards.id"), nullable=False, index=True)
    transaction_type = Column(String(20), nullable=False)   # issue / redeem / cancel / void
    amount = Column(Integer, default=0)
    balance_before = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    order_reference = Column(String, nullable=True)
    notes = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class PromoCode(Base):
    __tablename__ = "promo_codes"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, index=True, nullable=False)
    discount_type = Column(String(20), nullable=False)      # percentage / fixed
    discount_value = Column(Integer, nullable=False)        # 10 => 10% albo 10 jednostek
    min_purchase_amount = Column(Integer, default=0)
    max_uses = Column(Integer, nullable=True)
    current_uses = Column(Integer, default=0)
    expires_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class CallbackRequest(Base):
    __tablename__ = "callback_requests"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=False)
    status = Column(String(20), default="pending")   # pending / called / failed / cancelled
    notes = Column(Text, nullable=True)
    called_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
