import io
import os

from reportlab.lib import colors
from reportlab.lib.pagesizes import landscape, A6
from reportlab.pdfgen import canvas
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont

from card_utils import format_card_number_for_display
from config import settings
from database.models import GiftCard

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# Czcionka z symbolem rupii
FONT_PATH = os.path.join(BASE_DIR, "DejaVuSans.ttf")
FONT_NAME = "DejaVuSans"

BRAND_NAME = "DIVAA"

THEME_LABELS = {
    "birthday": "Happy Birthday",
    "diwali": "Happy Diwali",
    "general": "A Gift For You",
}

THEME_COLORS = {
    "birthday": colors.HexColor("#C2185B"),
    "diwali": colors.HexColor("#E65100"),
    "general": colors.HexColor("#4A148C"),
}


def _get_font_names() -> tuple[str, str]:
    """
    Zwraca nazwy czcionek do użycia (value_font, code_font).
    Jeśli jest DejaVuSans.ttf – rejestrujemy ją i używamy.
    Jeśli nie – wracamy do Helvetica (bez znaku ₹).
    """
    if os.path.exists(FONT_PATH):
        if FONT_NAME not in pdfmetrics.getRegisteredFontNames():
            pdfmetrics.registerFont(TTFont(FONT_NAME, FONT_PATH))
        return FONT_NAME, FONT_NAME

    return "Helvetica-Bold", "Courier-Bold"


def _amount_text(amount: int, font: str) -> str:
    text = f"{settings.currency_symbol}{amount:,}"
    # Helvetica nie ma glifu ₹
    if font != FONT_NAME:
        text = text.replace("₹", "Rs. ")
    return text


def generate_giftcard_pdf(card: GiftCard) -> bytes:
    """
    Generuje pojedynczą kartę podarunkową (A6, poziomo) jako PDF.
    """
    width, height = landscape(A6)
    packet = io.BytesIO()
    c = canvas.Canvas(packet, pagesize=(width, height))
    c.setTitle(f"{BRAND_NAME} Gift Card")

    value_font, code_font = _get_font_names()
    theme = card.design_theme or "general"
    accent = THEME_COLORS.get(theme, THEME_COLORS["general"])

    # tło i pasek marki
    c.setFillColor(colors.white)
    c.rect(0, 0, width, height, stroke=0, fill=1)
    c.setFillColor(accent)
    c.rect(0, height * 0.78, width, height * 0.22, stroke=0, fill=1)

    c.setFillColor(colors.white)
    c.setFont("Helvetica-Bold", 20)
    c.drawString(width * 0.06, height * 0.86, BRAND_NAME)
    c.setFont("Helvetica", 11)
    c.drawRightString(width * 0.94, height * 0.865, THEME_LABELS.get(theme, THEME_LABELS["general"]))

    # wartość
    c.setFillColor(colors.black)
    c.setFont(value_font, 26)
    c.drawString(width * 0.06, height * 0.58, _amount_text(int(card.original_amount), value_font))

    if card.recipient_name:
        c.setFont("Helvetica", 10)
        c.drawString(width * 0.06, height * 0.50, f"For: {card.recipient_name}")

    # numer karty i PIN
    c.setFont("Helvetica", 8)
    c.drawString(width * 0.06, height * 0.36, "Card number")
    c.drawString(width * 0.66, height * 0.36, "PIN")
    c.setFont(code_font, 13)
    c.drawString(width * 0.06, height * 0.29, format_card_number_for_display(card.card_number))
    c.drawString(width * 0.66, height * 0.29, str(card.card_pin))

    # ważność
    c.setFont("Helvetica", 8)
    c.setFillColor(colors.grey)
    c.drawString(width * 0.06, height * 0.10, f"Valid until {card.expiry_date.strftime('%d %b %Y')}")
    c.drawRightString(width * 0.94, height * 0.10, "Redeem online at checkout")

    c.showPage()
    c.save()
    return packet.getvalue()
