"""
Settlement of karma into SHARE tokens and medal NFTs.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import actors
import karma
from chain import ChainClient, get_chain
from database import create_document, get_documents, update_document, utcnow
from errors import InsufficientBalanceError, KarmaError, StateError, ValidationError
from ledger import MEDAL_REQUIREMENTS, format_units
from schemas import ExchangeRequest, Medal, MedalTier
from settings import settings
from storage import ContentStore, gateway_url, get_store, medal_metadata

logger = logging.getLogger(__name__)


def _wallet(actor: Dict[str, Any]) -> str:
    address = actor.get("wallet_address")
    if not address:
        raise StateError("Must link wallet first")
    return address


def exchange(actor_id: str, points: int, chain: Optional[ChainClient] = None,
             now: Optional[datetime] = None) -> Dict[str, Any]:
    """Convert confirmed karma into tokens through the emission pool.

    The local debit happens first; if the pool then rejects the exchange the
    debit is reversed and the ledger's error is re-raised to the caller.
    """
    chain = chain or get_chain()
    if points < settings.min_exchange_points:
        raise ValidationError(f"Minimum exchange is {settings.min_exchange_points} points", points=points)
    actor = actors.get_actor(actor_id)
    address = _wallet(actor)
    if not chain.is_withdrawal_eligible(address):
        raise StateError("Must stake at least 10 SHARE to withdraw")

    quote = chain.quote_exchange(address, points)
    request = ExchangeRequest(actor_id=actor_id, karma_amount=points, token_amount=format_units(quote))
    request_id = create_document("exchangerequest", request)

    if not karma.deduct_for_exchange(actor_id, points, reference_id=request_id, now=now):
        update_document("exchangerequest", request_id, {"status": "failed", "error": "Insufficient karma balance"})
        raise InsufficientBalanceError("Insufficient karma balance", requested=points,
                                       available=karma.get_balance(actor_id)["confirmed"])

    try:
        tx_hash, amount = chain.exchange_points(address, points)
    except KarmaError as e:
        karma.refund_exchange(actor_id, request_id, points, now=now)
        update_document("exchangerequest", request_id, {"status": "failed", "error": e.message})
        logger.warning("Exchange %s for %s rejected by the pool: %s", request_id, actor_id, e.message)
        raise

    logger.info("Exchange %s: %d karma -> %s SHARE (%s)", request_id, points, format_units(amount), tx_hash)
    return update_document("exchangerequest", request_id, {
        "status": "completed",
        "tx_hash": tx_hash,
        "token_amount": format_units(amount),
    })


def list_exchanges(actor_id: str, limit: int = 20) -> List[Dict[str, Any]]:
    return get_documents("exchangerequest", {"actor_id": actor_id}, limit=limit, sort=[("created_at", -1)])


def token_summary(actor_id: str, chain: Optional[ChainClient] = None) -> Dict[str, Any]:
    chain = chain or get_chain()
    actor = actors.get_actor(actor_id)
    address = actor.get("wallet_address")
    if not address:
        return {"balance": "0", "staked": "0", "wallet_linked": False}

    stake = chain.stake_info(address)
    return {
        "balance": format_units(chain.token_balance(address)),
        "staked": stake["amount"],
        "is_super_donor": stake["is_super_donor"],
        "unlock_time": stake["unlock_time"],
        "fraud_strikes": stake["fraud_strikes"],
        "multiplier": chain.get_multiplier(address),
        "point_balance": chain.point_balance(address),
        "wallet_linked": True,
    }


def _requirements() -> Dict[str, Dict[str, Any]]:
    return {
        tier.label: {
            "min_days": req.min_days,
            "min_donations": req.min_donations,
            "burn_cost": format_units(req.burn_cost),
        }
        for tier, req in MEDAL_REQUIREMENTS.items()
    }


def medal_eligibility(actor_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    actor = actors.get_actor(actor_id)
    first = actor.get("first_confirmed_at")
    owned = [tier.label for tier in MedalTier if tier.label in actor.get("medals", {})]
    if not first:
        return {"progress": None, "requirements": _requirements(), "eligibility": {}, "owned": owned}

    days = (now - first).days
    donations = actor.get("confirmed_donations", 0)
    eligibility: Dict[str, Dict[str, Any]] = {}
    for tier in MedalTier:
        req = MEDAL_REQUIREMENTS[tier]
        if tier.label in owned:
            eligibility[tier.label] = {"eligible": False, "reason": "Already owned"}
        elif days < req.min_days:
            eligibility[tier.label] = {"eligible": False, "reason": f"Need {req.min_days - days} more days"}
        elif donations < req.min_donations:
            eligibility[tier.label] = {"eligible": False,
                                       "reason": f"Need {req.min_donations - donations} more donations"}
        else:
            eligibility[tier.label] = {"eligible": True}

    return {
        "progress": {
            "first_confirmed_at": first,
            "confirmed_donations": donations,
            "days_since_first": days,
        },
        "requirements": _requirements(),
        "eligibility": eligibility,
        "owned": owned,
    }


def mint_medal(actor_id: str, tier_name: str, chain: Optional[ChainClient] = None,
               schedule: Optional[Callable[..., Any]] = None,
               now: Optional[datetime] = None) -> Dict[str, Any]:
    """Burn-gated medal mint.

    Metadata upload and the on-chain URI are handed to `schedule` (FastAPI
    background tasks in the API) and never undo the mint.
    """
    chain = chain or get_chain()
    now = now or utcnow()
    try:
        tier = MedalTier.parse(tier_name)
    except KeyError:
        raise ValidationError(f"Unknown medal tier: {tier_name}")

    actor = actors.get_actor(actor_id)
    address = _wallet(actor)
    first = actor.get("first_confirmed_at")
    if not first:
        raise StateError("No donation history found")
    if tier.label in actor.get("medals", {}):
        raise StateError("Already owns this medal")

    donations = actor.get("confirmed_donations", 0)
    first_ts = int(first.replace(tzinfo=timezone.utc).timestamp())
    ok, reason = chain.can_mint_medal(address, tier, first_ts, donations)
    if not ok:
        raise StateError(reason or "Not eligible to mint this medal")

    tx_hash, token_id = chain.mint_medal(address, tier, first_ts, donations)
    minted_at = int(now.replace(tzinfo=timezone.utc).timestamp())
    actors.record_medal(actor_id, tier.label, {"token_id": token_id, "tx_hash": tx_hash, "minted_at": now})
    create_document("medal", Medal(actor_id=actor_id, tier=tier.label, token_id=token_id, tx_hash=tx_hash))

    run = schedule or (lambda fn, *args: fn(*args))
    run(publish_medal_metadata, token_id, tier, minted_at, donations, address, chain)

    return {
        "message": f"{tier.label.capitalize()} medal minted successfully!",
        "tx_hash": tx_hash,
        "token_id": token_id,
    }


def publish_medal_metadata(token_id: int, tier: MedalTier, minted_at: int, donations: int,
                           owner: str, chain: Optional[ChainClient] = None,
                           store: Optional[ContentStore] = None) -> Optional[str]:
    """Upload medal metadata and point the token at it. Best effort."""
    chain = chain or get_chain()
    store = store or get_store()
    try:
        metadata = medal_metadata(token_id, tier, minted_at, donations, owner)
        cid = store.upload_json(metadata, f"{tier.label.capitalize()} Medal #{token_id} Metadata")
        uri = f"ipfs://{cid}"
        tx_hash = chain.set_token_metadata_uri(token_id, uri)
        update_document("medal", {"token_id": token_id}, {"metadata_uri": uri, "metadata_url": gateway_url(cid)})
    except Exception:
        # the mint already happened on-chain; a missing URI can be set later
        logger.exception("Failed to upload medal metadata or set URI for token %s", token_id)
        return None
    logger.info("Medal %s metadata at %s (%s)", token_id, uri, tx_hash)
    return uri
