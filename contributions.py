"""
Payment intake: the payment processor reports a confirmed contribution and
the contributor gets a one-time karma bonus (one point per whole currency
unit). Verification of the payment itself happens upstream.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from pymongo.errors import DuplicateKeyError

import actors
import karma
from database import create_document, find_one, get_document_by_id, transaction
from errors import StateError, ValidationError
from schemas import Contribution

logger = logging.getLogger(__name__)


def record_payment(actor_id: str, payment_id: str, amount_cents: int, currency: str = "USD",
                   method: str = "stripe", now: Optional[datetime] = None) -> Dict[str, Any]:
    if amount_cents <= 0:
        raise ValidationError("Amount must be positive", amount_cents=amount_cents)
    if method not in ("stripe", "crypto"):
        raise ValidationError(f"Unknown payment method: {method}")
    actors.get_actor(actor_id)
    if find_one("contribution", {"payment_id": payment_id}):
        raise StateError("Payment already recorded", payment_id=payment_id)

    bonus = amount_cents // 100
    contribution = Contribution(
        actor_id=actor_id,
        payment_id=payment_id,
        amount_cents=amount_cents,
        currency=currency.upper(),
        method=method,
        bonus_points=bonus,
    )
    with transaction() as s:
        try:
            contribution_id = create_document("contribution", contribution, session=s)
        except DuplicateKeyError:
            raise StateError("Payment already recorded", payment_id=payment_id)
        if bonus:
            karma.award_bonus(actor_id, contribution_id, bonus, "Contribution bonus", now=now, session=s)

    logger.info("Contribution %s from %s: %d %s cents, bonus %d", payment_id, actor_id,
                amount_cents, currency, bonus)
    return get_document_by_id("contribution", contribution_id)
