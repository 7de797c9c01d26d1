from typing import Any, Dict, Optional


class GiftCardError(Exception):
    """
    Bazowy błąd silnika kart podarunkowych.

    `kind` to nazwa rodzaju błędu zwracana klientowi (np. "Expired"),
    `http_status` – kod HTTP, na który mapuje go API.
    """

    kind = "GiftCardError"
    http_status = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.details:
            data.update(self.details)
        return data


class InvalidFormat(GiftCardError):
    kind = "InvalidFormat"
    http_status = 400


class NotFound(GiftCardError):
    kind = "NotFound"
    http_status = 404


class InvalidCredential(GiftCardError):
    kind = "InvalidCredential"
    http_status = 401


class CardInactive(GiftCardError):
    kind = "CardInactive"
    http_status = 409


class Expired(GiftCardError):
    kind = "Expired"
    http_status = 410


class Depleted(GiftCardError):
    kind = "Depleted"
    http_status = 409


class LimitExceeded(GiftCardError):
    kind = "LimitExceeded"
    http_status = 413


class PromoRejected(GiftCardError):
    kind = "PromoRejected"
    http_status = 400


class AlreadyApplied(GiftCardError):
    kind = "AlreadyApplied"
    http_status = 409


class ConcurrentUpdate(GiftCardError):
    kind = "ConcurrentUpdate"
    http_status = 409


class TransientFailure(GiftCardError):
    kind = "TransientFailure"
    http_status = 503
