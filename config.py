from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Konfiguracja serwisu kart podarunkowych (zmienne środowiskowe lub .env).
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Baza danych (Postgres na produkcji, SQLite lokalnie/w testach)
    database_url: str = "sqlite+pysqlite:///./giftcards.db"

    # Format i ważność kart
    card_prefix: str = "DIVAA"
    card_expiry_months: int = 6
    card_number_max_attempts: int = 10
    expiry_warning_days: int = 30

    # Nominały (pełne jednostki waluty)
    gift_card_min_amount: int = 500
    gift_card_max_amount: int = 100000
    currency_symbol: str = "₹"

    # Zamówienia hurtowe (CSV)
    bulk_max_rows: int = 500
    bulk_max_file_size_mb: int = 5

    # Jeśli True – "brak karty" i "zły PIN" zwracają ten sam komunikat
    hide_card_enumeration: bool = False

    # Panel admina (HTTP Basic)
    admin_username: str = "admin"
    # bez domyślnego hasła: brak ADMIN_PASSWORD zatrzymuje start aplikacji
    admin_password: str = Field(min_length=1)


settings = Settings()
