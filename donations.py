"""
Donation lifecycle.

    pending -> confirmed   (recipient on site, or dispute window lapsed)
    pending -> disputed
    pending -> cancelled   (claimant withdraws)

Every transition is a compare-and-set on status == pending inside the same
transaction as its karma effects, so exactly one of two racing transitions
wins and the other sees a StateError.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import actors
import karma
from database import compare_and_set, create_document, get_document_by_id, get_documents, oid, transaction, utcnow
from errors import AuthorizationError, GeofenceError, NotFoundError, StateError, ValidationError, WindowExpiredError
from geofence import validate_point, within_geofence
from schemas import Donation, DonationStatus, Report
from settings import settings

logger = logging.getLogger(__name__)

PENDING = DonationStatus.PENDING.value


def _clock(now: Optional[datetime]) -> datetime:
    if now is None:
        return utcnow()
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc).replace(tzinfo=None)
    return now


def get_claim(donation_id: str, session=None) -> Dict[str, Any]:
    donation = get_document_by_id("donation", donation_id, session=session)
    if not donation:
        raise NotFoundError("Donation not found")
    return donation


def list_claims(status: Optional[str] = None, claimant_id: Optional[str] = None,
                limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if status:
        try:
            query["status"] = DonationStatus(status).value
        except ValueError:
            raise ValidationError(f"Unknown status: {status}")
    else:
        query["status"] = {"$ne": DonationStatus.CANCELLED.value}
    if claimant_id:
        query["claimant_id"] = claimant_id
    return get_documents("donation", query, limit=limit, skip=offset, sort=[("created_at", -1)])


def create_claim(claimant_id: str, location, description: str, photo_url: Optional[str] = None,
                 now: Optional[datetime] = None) -> Dict[str, Any]:
    now = _clock(now)
    point = validate_point(location)
    actors.get_actor(claimant_id)
    points = settings.points_per_donation

    with transaction() as s:
        donation = Donation(
            claimant_id=claimant_id,
            location=point,
            description=description,
            photo_url=photo_url,
            points_awarded=points,
            dispute_deadline=now + timedelta(days=settings.challenge_period_days),
            created_at=now,
        )
        donation_id = create_document("donation", donation, session=s)
        karma.grant_pending(claimant_id, donation_id, points, now=now, session=s)

    logger.info("Donation %s claimed by %s for %d points", donation_id, claimant_id, points)
    return get_claim(donation_id)


def confirm_claim(donation_id: str, actor_id: str, location,
                  now: Optional[datetime] = None) -> Dict[str, Any]:
    now = _clock(now)
    donation = get_claim(donation_id)
    if donation["status"] != PENDING:
        raise StateError("Donation is not pending")
    if donation["claimant_id"] == actor_id:
        raise StateError("Cannot confirm your own donation")
    actors.get_actor(actor_id)

    check = within_geofence(donation["location"], location)
    if not check.ok:
        raise GeofenceError(settings.geofence_meters, check.meters)
    point = validate_point(location)

    points = donation["points_awarded"]
    with transaction() as s:
        updated = compare_and_set(
            "donation",
            {"_id": oid(donation_id), "status": PENDING},
            {"$set": {
                "status": DonationStatus.CONFIRMED.value,
                "counterparty_id": actor_id,
                "confirm_location": point.model_dump(),
                "confirmed_at": now,
                "closed_at": now,
            }},
            session=s,
        )
        if not updated:
            raise StateError("Donation is not pending")
        karma.confirm(donation["claimant_id"], donation_id, points, now=now, session=s,
                      description="Donation confirmed by recipient")
        bonus = points // 2
        if bonus:
            karma.award_bonus(actor_id, donation_id, bonus, "Karma for confirming a donation",
                              now=now, session=s)

    logger.info("Donation %s confirmed by %s at %dm", donation_id, actor_id, check.meters)
    return {"donation": updated, "distance": check.meters}


def dispute_claim(donation_id: str, actor_id: str, reason: Optional[str] = None,
                  now: Optional[datetime] = None) -> Dict[str, Any]:
    now = _clock(now)
    donation = get_claim(donation_id)
    claimant_id = donation["claimant_id"]
    if claimant_id == actor_id:
        raise AuthorizationError("Cannot dispute your own donation")
    if donation["status"] != PENDING:
        raise StateError("Donation is not pending")
    if now > donation["dispute_deadline"]:
        raise WindowExpiredError("Challenge period has expired", deadline=donation["dispute_deadline"].isoformat())
    actors.get_actor(actor_id)

    with transaction() as s:
        updated = compare_and_set(
            "donation",
            {"_id": oid(donation_id), "status": PENDING, "dispute_deadline": {"$gte": now}},
            {"$set": {"status": DonationStatus.DISPUTED.value, "closed_at": now}},
            session=s,
        )
        if not updated:
            if get_claim(donation_id, session=s)["status"] != PENDING:
                raise StateError("Donation is not pending")
            raise WindowExpiredError("Challenge period has expired")
        karma.cancel(claimant_id, donation_id, donation["points_awarded"], now=now, session=s)
        actors.add_fraud_strike(claimant_id, session=s)
        karma.record_penalty(claimant_id, donation_id, "Fraud strike for disputed donation", now=now, session=s)
        report = Report(
            reporter_id=actor_id,
            reported_actor_id=claimant_id,
            donation_id=donation_id,
            reason=reason or "Donation disputed",
        )
        create_document("report", report, session=s)

    logger.info("Donation %s disputed by %s; strike added to %s", donation_id, actor_id, claimant_id)
    return updated


def cancel_claim(donation_id: str, actor_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = _clock(now)
    donation = get_claim(donation_id)
    if donation["claimant_id"] != actor_id:
        raise AuthorizationError("Not authorized")
    if donation["status"] != PENDING:
        raise StateError("Can only cancel pending donations")

    with transaction() as s:
        updated = compare_and_set(
            "donation",
            {"_id": oid(donation_id), "status": PENDING},
            {"$set": {"status": DonationStatus.CANCELLED.value, "closed_at": now}},
            session=s,
        )
        if not updated:
            raise StateError("Can only cancel pending donations")
        karma.cancel(actor_id, donation_id, donation["points_awarded"], now=now, session=s,
                     description="Donation cancelled by donor")
    return updated


def expired_claims(now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    now = _clock(now)
    return get_documents("donation", {"status": PENDING, "dispute_deadline": {"$lt": now}},
                         sort=[("dispute_deadline", 1)])


def expire_claim(donation_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Auto-confirm a pending donation whose dispute window has lapsed.

    The predicate is checked again at write time; a donation that another
    transition settled first raises StateError and credits nothing.
    """
    now = _clock(now)
    with transaction() as s:
        updated = compare_and_set(
            "donation",
            {"_id": oid(donation_id), "status": PENDING, "dispute_deadline": {"$lt": now}},
            {"$set": {
                "status": DonationStatus.CONFIRMED.value,
                "auto_confirmed": True,
                "confirmed_at": now,
                "closed_at": now,
            }},
            session=s,
        )
        if not updated:
            raise StateError("Donation is not pending or its window is still open")
        karma.confirm(updated["claimant_id"], donation_id, updated["points_awarded"], now=now,
                      session=s, description="Auto-confirmed after challenge period")
    return updated


def list_reports(reporter_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    return get_documents("report", {"reporter_id": reporter_id}, limit=limit, sort=[("created_at", -1)])
