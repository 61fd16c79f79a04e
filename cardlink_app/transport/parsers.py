"""
Parsers for backend link session payloads.

The backend has shipped both camelCase and snake_case field names, and list
endpoints sometimes wrap their items. These helpers normalize both shapes
into the canonical session models.
"""

from typing import Any, Optional

from ..session.models import LinkInitResult, PaymentMethod, PaymentMethodSnapshot
from ..utils.time import parse_timestamp


class ParseError(Exception):
    """Raised when a backend payload cannot be interpreted."""
    pass


def _pick(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_bool(value: Any, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def parse_link_init(payload: Any) -> LinkInitResult:
    """Parse the POST /link-sessions response."""
    if not isinstance(payload, dict):
        raise ParseError(f"Expected object for link session, got {type(payload).__name__}")

    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload

    reference = _pick(data, "reference", "ref")
    if not reference:
        raise ParseError("Link session response is missing a reference")

    checkout_token = _pick(data, "checkoutToken", "checkout_token", "accessCode", "access_code")
    authorization_url = _pick(data, "authorizationUrl", "authorization_url")
    if not checkout_token and not authorization_url:
        raise ParseError("Link session response has neither checkout token nor authorization URL")

    return LinkInitResult(
        reference=str(reference),
        checkout_token=checkout_token,
        authorization_url=authorization_url,
        expires_at=parse_timestamp(_pick(data, "expiresAt", "expires_at")),
    )


def parse_payment_method(item: Any) -> PaymentMethod:
    """Parse a single payment method entry."""
    if not isinstance(item, dict):
        raise ParseError(f"Expected object for payment method, got {type(item).__name__}")

    method_id = _pick(item, "id", "authorizationCode", "authorization_code")
    if method_id is None:
        raise ParseError("Payment method entry is missing an id")

    last4 = _pick(item, "last4", "last_4")
    return PaymentMethod(
        id=str(method_id),
        brand=_pick(item, "brand", "cardType", "card_type"),
        last4=str(last4) if last4 is not None else None,
        exp_month=_as_int(_pick(item, "expMonth", "exp_month")),
        exp_year=_as_int(_pick(item, "expYear", "exp_year")),
        reusable=_as_bool(item.get("reusable")),
    )


def parse_payment_methods(payload: Any) -> PaymentMethodSnapshot:
    """Parse the GET /accounts/{id}/payment-methods response."""
    items = payload
    if isinstance(payload, dict):
        for key in ("items", "paymentMethods", "payment_methods", "data"):
            if isinstance(payload.get(key), list):
                items = payload[key]
                break
        else:
            raise ParseError("Payment method response has no list of items")

    if not isinstance(items, list):
        raise ParseError(f"Expected list of payment methods, got {type(items).__name__}")

    return PaymentMethodSnapshot(parse_payment_method(item) for item in items)


def parse_verify_status(payload: Any) -> Optional[str]:
    """Parse the POST /link-sessions/{reference}/verify response."""
    if isinstance(payload, dict):
        status = _pick(payload, "status", "state")
        return str(status) if status is not None else None
    return None
