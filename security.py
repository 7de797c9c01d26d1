import logging
import secrets
from dataclasses import dataclass
from datetime import datetime

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from card_utils import utcnow
from config import settings

logger = logging.getLogger("divaa-giftcards")

security = HTTPBasic()


@dataclass(frozen=True)
class AdminSession:
    """Zalogowany administrator – przekazywany jawnie do endpointów /admin."""

    username: str
    authenticated_at: datetime


def require_admin(credentials: HTTPBasicCredentials = Depends(security)) -> AdminSession:
    """
    Uwierzytelnienie admina przez HTTP Basic.
    Porównanie w stałym czasie (secrets.compare_digest).
    """
    is_username_correct = secrets.compare_digest(
        credentials.username.encode("utf-8"), settings.admin_username.encode("utf-8")
    )
    is_password_correct = secrets.compare_digest(
        credentials.password.encode("utf-8"), settings.admin_password.encode("utf-8")
    )

    if not (is_username_correct and is_password_correct):
        logger.warning("Nieudane logowanie do panelu admina (użytkownik '%s')", credentials.username)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin authentication failed",
            headers={"WWW-Authenticate": "Basic"},
        )
    return AdminSession(username=credentials.username, authenticated_at=utcnow())
