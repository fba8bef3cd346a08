"""
Settlement-portal validator registry.

A validator turns a portal's report into a SettlementConfirmation, or rejects
it with PaymentValidationError. How a portal matches money to orders (exact
amount, several partial transfers, ...) is the validator's business; the
payment engine only sees confirmed matches.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict

from orderledger.core.exceptions import NotFoundError, PaymentValidationError
from orderledger.schemas.transaction import SettlementPayload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementConfirmation:
    portal: str
    order_id: str
    amount: int
    direction: str
    reference: str


SettlementValidator = Callable[[SettlementPayload], Awaitable[SettlementConfirmation]]

_validators: Dict[str, SettlementValidator] = {}


def register_validator(name: str):
    """Decorator registering a coroutine as the validator for a portal name."""

    def decorator(func: SettlementValidator) -> SettlementValidator:
        if name in _validators:
            logger.warning(f"Replacing settlement validator for portal '{name}'")
        _validators[name] = func
        return func

    return decorator


def unregister_validator(name: str) -> None:
    _validators.pop(name, None)


def get_validator(name: str) -> SettlementValidator:
    try:
        return _validators[name]
    except KeyError:
        raise NotFoundError("Settlement portal", name)


@register_validator("signed")
async def signed_settlement(payload: SettlementPayload) -> SettlementConfirmation:
    """
    Portal that reports settlements as HMAC-signed JSON.

    The signature is checked at the HTTP boundary before this runs, so the
    payload is trusted as reported.
    """
    if payload.amount <= 0:
        raise PaymentValidationError("Settled amount must be positive", "amount", payload.amount)

    reference = payload.reference.strip()
    if not reference:
        raise PaymentValidationError("Settlement reference cannot be empty", "reference")

    return SettlementConfirmation(
        portal="signed",
        order_id=payload.order_id,
        amount=payload.amount,
        direction=payload.direction,
        reference=reference,
    )
