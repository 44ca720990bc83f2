"""
Actor ledger: one document per user holding balances, strikes and medal
progress. Balance mutations live in karma.py; this module owns identity,
wallet linking and the fraud-strike counter.
"""

import logging
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from database import compare_and_set, create_document, find_one, get_document_by_id, get_documents, oid
from errors import NotFoundError, StateError, ValidationError
from schemas import Actor

logger = logging.getLogger(__name__)

MAX_FRAUD_STRIKES = 255


def create_actor(name: str, email: Optional[str] = None) -> Dict[str, Any]:
    if email:
        existing = find_one("actor", {"email": email})
        if existing:
            return existing
    actor = Actor(name=name, email=email)
    # unset optional fields stay absent so the sparse wallet index ignores them
    actor_id = create_document("actor", actor.model_dump(exclude_none=True))
    return get_document_by_id("actor", actor_id)


def get_actor(actor_id: str, session=None) -> Dict[str, Any]:
    actor = get_document_by_id("actor", actor_id, session=session)
    if not actor:
        raise NotFoundError("Actor not found")
    return actor


def find_by_wallet(address: str) -> Optional[Dict[str, Any]]:
    return find_one("actor", {"wallet_address": address.lower()})


def _normalize_address(address: str) -> str:
    address = address.strip()
    if not (address.startswith("0x") and len(address) == 42):
        raise ValidationError("Malformed wallet address", address=address)
    try:
        int(address[2:], 16)
    except ValueError:
        raise ValidationError("Malformed wallet address", address=address)
    return address.lower()


def link_wallet(actor_id: str, address: str, relink: bool = False) -> Dict[str, Any]:
    """Attach an external-ledger address to an actor.

    An address, once set, only changes through an explicit relink, and no
    two actors may share one.
    """
    address = _normalize_address(address)
    actor = get_actor(actor_id)
    current = actor.get("wallet_address")
    if current == address:
        return actor
    if current and not relink:
        raise StateError("Wallet already linked to another address")

    owner = find_by_wallet(address)
    if owner and owner["id"] != actor["id"]:
        raise StateError("Address is linked to another account")

    precondition = {"_id": oid(actor_id)}
    if current:
        precondition["wallet_address"] = current
    else:
        precondition["wallet_address"] = {"$exists": False}
    try:
        # a new address starts with no mirrored strikes, so the propagation
        # job replays the full strike history onto it
        updated = compare_and_set(
            "actor", precondition, {"$set": {"wallet_address": address, "strikes_on_chain": 0}}
        )
    except DuplicateKeyError:
        raise StateError("Address is linked to another account")
    if not updated:
        raise StateError("Wallet changed concurrently, retry")
    logger.info("Actor %s linked wallet %s (relink=%s)", actor_id, address, bool(current))
    return updated


def add_fraud_strike(actor_id: str, session=None) -> Dict[str, Any]:
    updated = compare_and_set(
        "actor",
        {"_id": oid(actor_id), "fraud_strikes": {"$lt": MAX_FRAUD_STRIKES}},
        {"$inc": {"fraud_strikes": 1}},
        session=session,
    )
    if updated:
        return updated
    # already at the bound; strikes saturate
    return get_actor(actor_id, session=session)


def actors_with_unsynced_strikes() -> List[Dict[str, Any]]:
    candidates = get_documents("actor", {"wallet_address": {"$exists": True}, "fraud_strikes": {"$gt": 0}})
    return [a for a in candidates if a.get("fraud_strikes", 0) > a.get("strikes_on_chain", 0)]


def mark_strike_on_chain(actor_id: str, seen: int) -> bool:
    """Advance the mirrored-strike counter from `seen` to `seen + 1`."""
    updated = compare_and_set(
        "actor",
        {"_id": oid(actor_id), "strikes_on_chain": seen},
        {"$inc": {"strikes_on_chain": 1}},
    )
    return updated is not None


def record_medal(actor_id: str, tier: str, medal: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    return compare_and_set(
        "actor",
        {"_id": oid(actor_id), f"medals.{tier}": {"$exists": False}},
        {"$set": {f"medals.{tier}": medal}},
    )
