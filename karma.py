"""
Karma service

Every balance mutation is one unit of work: the actor update, any daily
bucket update and the audit entry share a single transaction boundary.
Preconditions are part of the update filter, so two concurrent callers
cannot both pass a check that only one of them should.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from database import (
    compare_and_set,
    create_document,
    day_key,
    find_one,
    get_documents,
    increment_field,
    oid,
    transaction,
    upsert_increment,
    utcnow,
)
from errors import InsufficientBalanceError, NotFoundError, StateError, ValidationError
from schemas import KarmaKind, KarmaTransaction

logger = logging.getLogger(__name__)

CAS_ATTEMPTS = 10


def _require_positive(points: int) -> None:
    if not isinstance(points, int) or points <= 0:
        raise ValidationError("Points must be a positive integer", points=points)


def _audit(actor_id: str, amount: int, kind: KarmaKind, reference_id: Optional[str],
           description: str, now: datetime, session) -> None:
    entry = KarmaTransaction(
        actor_id=actor_id,
        amount=amount,
        kind=kind,
        reference_id=reference_id,
        description=description,
        created_at=now,
    )
    create_document("karmatransaction", entry, session=session)


def _missing_actor(actor_id: str, session) -> bool:
    return find_one("actor", {"_id": oid(actor_id)}, session=session) is None


def _credit_day(actor_id: str, points: int, now: datetime, session) -> str:
    """Add points to the actor's open bucket for the day of `now`.

    A bucket that has been synced to the chain is closed; if the day's bucket
    is already closed the points roll forward to the next open day. Closed
    days are skipped before writing, since a failed write aborts a server
    transaction.
    """
    day = now
    for _ in range(CAS_ATTEMPTS):
        key = day_key(day)
        if find_one("dailypoints", {"actor_id": actor_id, "day": key, "synced": True}, session=session):
            logger.warning("Bucket %s for actor %s already synced, rolling forward", key, actor_id)
            day = day + timedelta(days=1)
            continue
        try:
            upsert_increment(
                "dailypoints",
                {"actor_id": actor_id, "day": key, "synced": False},
                {"points": points},
                on_insert={"submit_attempts": 0},
                session=session,
            )
            return key
        except DuplicateKeyError:
            if session is not None:
                raise StateError("Daily bucket was closed concurrently, retry")
            logger.warning("Bucket %s for actor %s synced concurrently, rolling forward", key, actor_id)
            day = day + timedelta(days=1)
    raise StateError("Could not find an open daily bucket")


def grant_pending(actor_id: str, reference_id: str, points: int,
                  now: Optional[datetime] = None, session=None) -> Dict[str, Any]:
    _require_positive(points)
    now = now or utcnow()
    with transaction(session) as s:
        updated = increment_field("actor", actor_id, {"pending_points": points}, session=s)
        if not updated:
            raise NotFoundError("Actor not found")
        _audit(actor_id, points, KarmaKind.GRANT_PENDING, reference_id,
               "Pending karma for donation", now, s)
    return updated


def confirm(actor_id: str, reference_id: str, points: int, now: Optional[datetime] = None,
            session=None, description: str = "Karma confirmed") -> Dict[str, Any]:
    """Move points from pending to confirmed and accrue them to today's bucket.

    "Today" is the day of the confirm call, not of the original claim.
    """
    _require_positive(points)
    now = now or utcnow()
    with transaction(session) as s:
        updated = compare_and_set(
            "actor",
            {"_id": oid(actor_id), "pending_points": {"$gte": points}},
            {"$inc": {"pending_points": -points, "confirmed_points": points, "confirmed_donations": 1}},
            session=s,
        )
        if not updated:
            if _missing_actor(actor_id, s):
                raise NotFoundError("Actor not found")
            raise InsufficientBalanceError("Pending balance is lower than the confirmed amount",
                                           points=points)
        first = compare_and_set(
            "actor",
            {"_id": oid(actor_id), "first_confirmed_at": None},
            {"$set": {"first_confirmed_at": now}},
            session=s,
        )
        if first:
            updated = first
        _credit_day(actor_id, points, now, s)
        _audit(actor_id, points, KarmaKind.CONFIRM, reference_id, description, now, s)
    return updated


def cancel(actor_id: str, reference_id: str, points: int, now: Optional[datetime] = None,
           session=None, description: str = "Karma cancelled due to dispute") -> Dict[str, Any]:
    """Remove points from pending, floored at zero. Confirmed is untouched."""
    _require_positive(points)
    now = now or utcnow()
    with transaction(session) as s:
        for _ in range(CAS_ATTEMPTS):
            actor = find_one("actor", {"_id": oid(actor_id)}, session=s)
            if not actor:
                raise NotFoundError("Actor not found")
            current = actor.get("pending_points", 0)
            updated = compare_and_set(
                "actor",
                {"_id": oid(actor_id), "pending_points": current},
                {"$set": {"pending_points": max(0, current - points)}},
                session=s,
            )
            if updated:
                break
        else:
            raise StateError("Pending balance kept changing, retry")
        _audit(actor_id, -points, KarmaKind.CANCEL, reference_id, description, now, s)
    return updated


def deduct_for_exchange(actor_id: str, amount: int, reference_id: Optional[str] = None,
                        now: Optional[datetime] = None, session=None) -> bool:
    """Debit confirmed points. False means the balance was too low."""
    _require_positive(amount)
    now = now or utcnow()
    with transaction(session) as s:
        updated = compare_and_set(
            "actor",
            {"_id": oid(actor_id), "confirmed_points": {"$gte": amount}},
            {"$inc": {"confirmed_points": -amount}},
            session=s,
        )
        if not updated:
            return False
        _audit(actor_id, -amount, KarmaKind.EXCHANGE, reference_id, "Karma exchanged for tokens", now, s)
    return True


def refund_exchange(actor_id: str, reference_id: str, amount: int,
                    now: Optional[datetime] = None, session=None) -> Dict[str, Any]:
    _require_positive(amount)
    now = now or utcnow()
    with transaction(session) as s:
        updated = increment_field("actor", actor_id, {"confirmed_points": amount}, session=s)
        if not updated:
            raise NotFoundError("Actor not found")
        _audit(actor_id, amount, KarmaKind.EXCHANGE, reference_id, "Exchange reversed", now, s)
    return updated


def award_bonus(actor_id: str, reference_id: str, points: int, description: str = "Bonus karma",
                now: Optional[datetime] = None, session=None) -> Dict[str, Any]:
    """Immediate confirmed credit that skips the pending stage."""
    _require_positive(points)
    now = now or utcnow()
    with transaction(session) as s:
        updated = increment_field("actor", actor_id, {"confirmed_points": points}, session=s)
        if not updated:
            raise NotFoundError("Actor not found")
        _audit(actor_id, points, KarmaKind.BONUS, reference_id, description, now, s)
    return updated


def record_penalty(actor_id: str, reference_id: str, description: str = "Fraud strike",
                   now: Optional[datetime] = None, session=None) -> None:
    """Audit a fraud strike. Penalties carry no points; balances are untouched."""
    now = now or utcnow()
    with transaction(session) as s:
        _audit(actor_id, 0, KarmaKind.PENALTY, reference_id, description, now, s)


def get_balance(actor_id: str) -> Dict[str, int]:
    actor = find_one("actor", {"_id": oid(actor_id)})
    if not actor:
        return {"confirmed": 0, "pending": 0, "total": 0}
    confirmed = actor.get("confirmed_points", 0)
    pending = actor.get("pending_points", 0)
    return {"confirmed": confirmed, "pending": pending, "total": confirmed + pending}


def get_history(actor_id: str, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
    return get_documents(
        "karmatransaction",
        {"actor_id": actor_id},
        limit=limit,
        skip=offset,
        sort=[("created_at", -1), ("_id", -1)],
    )


def reconcile(actor_id: str) -> Dict[str, Any]:
    """Replay the audit log and compare it with the stored balances."""
    entries = get_documents("karmatransaction", {"actor_id": actor_id}, sort=[("created_at", 1), ("_id", 1)])
    pending = confirmed = 0
    for entry in entries:
        kind, amount = entry["kind"], entry["amount"]
        if kind == KarmaKind.GRANT_PENDING.value:
            pending += amount
        elif kind == KarmaKind.CONFIRM.value:
            pending -= amount
            confirmed += amount
        elif kind == KarmaKind.CANCEL.value:
            pending = max(0, pending + amount)
        elif kind == KarmaKind.PENALTY.value:
            continue
        else:
            confirmed += amount

    stored = get_balance(actor_id)
    return {
        "derived": {"confirmed": confirmed, "pending": pending},
        "stored": {"confirmed": stored["confirmed"], "pending": stored["pending"]},
        "consistent": confirmed == stored["confirmed"] and pending == stored["pending"],
        "entries": len(entries),
    }
