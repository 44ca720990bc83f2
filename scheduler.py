"""
Periodic settlement jobs.

Each job is a sweep over persisted state: it picks up whatever matches its
predicate at run time, so a run that dies halfway is finished by the next
one. Jobs can also be triggered by hand through the API.
"""

import logging
import threading
import time
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

import actors
import donations
from chain import ChainClient, get_chain
from database import day_key, get_documents, increment_many, oid, update_many, utcnow
from errors import ExternalLedgerError, LedgerRejectedError, NotFoundError, PointsCapExceededError, StateError
from ledger import ShareToken, format_units

logger = logging.getLogger(__name__)

HOUR = 3600
DAY = 24 * HOUR


def expire_challenges(now: Optional[datetime] = None) -> Dict[str, int]:
    now = now or utcnow()
    due = donations.expired_claims(now)
    logger.info("Found %d expired challenges", len(due))
    confirmed = skipped = failed = 0
    for donation in due:
        try:
            donations.expire_claim(donation["id"], now=now)
            confirmed += 1
        except StateError:
            # settled by a confirm or dispute since the query ran
            skipped += 1
        except Exception:
            failed += 1
            logger.exception("Failed to process donation %s", donation["id"])
    return {"found": len(due), "confirmed": confirmed, "skipped": skipped, "failed": failed}


def run_daily_emission(now: Optional[datetime] = None) -> Dict[str, Any]:
    """Report each actor's proportional share of yesterday's emission.

    Informational only; the pool computes the real payouts at claim time.
    """
    now = now or utcnow()
    day = day_key(now - timedelta(days=1))
    rows = get_documents("dailypoints", {"day": day, "synced": False})
    total = sum(r["points"] for r in rows)
    if not total:
        logger.info("No points to distribute for %s", day)
        return {"day": day, "total_points": 0, "shares": []}

    shares = []
    for row in rows:
        tokens = row["points"] * ShareToken.DAILY_EMISSION // total
        shares.append({"actor_id": row["actor_id"], "points": row["points"], "tokens": format_units(tokens)})
        logger.info("Actor %s: %d points -> %s SHARE", row["actor_id"], row["points"], format_units(tokens))
    logger.info("Emission for %s: %d points across %d actors", day, total, len(rows))
    return {"day": day, "total_points": total, "shares": shares}


Pending = List[Tuple[Dict[str, Any], str]]


def _mark_synced(rows: List[Dict[str, Any]], tx_hash: Optional[str], now: datetime) -> int:
    ids = [oid(r["id"]) for r in rows]
    return update_many("dailypoints", {"_id": {"$in": ids}, "synced": False},
                       {"synced": True, "synced_at": now, "sync_tx": tx_hash})


def _count_attempt(rows: List[Dict[str, Any]], step: int = 1) -> None:
    """Track submissions whose outcome is unknown.

    The counter goes up before each call and comes back down once the ledger
    definitively rejects it, so only lost replies and crashes leave a mark.
    """
    increment_many("dailypoints", {"_id": {"$in": [oid(r["id"]) for r in rows]}}, {"submit_attempts": step})


def _attempted_before(row: Dict[str, Any]) -> bool:
    return row.get("submit_attempts", 0) > 0


def _sync_one_by_one(chain: ChainClient, day: str, batch: Pending, now: datetime) -> int:
    synced = 0
    for row, address in batch:
        _count_attempt([row])
        try:
            tx_hash = chain.record_points(address, row["points"])
        except PointsCapExceededError:
            if _attempted_before(row):
                # an earlier attempt most likely landed before we lost the reply
                synced += _mark_synced([row], None, now)
            else:
                _count_attempt([row], -1)
                logger.error("Bucket %s/%s exceeds the daily cap, excluded", row["actor_id"], day)
        except LedgerRejectedError as e:
            _count_attempt([row], -1)
            logger.error("Bucket %s/%s rejected: %s", row["actor_id"], day, e.reason)
        except ExternalLedgerError:
            logger.exception("Ledger unavailable while syncing %s/%s", row["actor_id"], day)
            break
        else:
            synced += _mark_synced([row], tx_hash, now)
    return synced


def _sync_day(chain: ChainClient, day: str, batch: Pending, now: datetime) -> int:
    rows = [row for row, _ in batch]
    _count_attempt(rows)
    try:
        tx_hash = chain.record_points_batch([a for _, a in batch], [r["points"] for r in rows])
    except PointsCapExceededError:
        if all(_attempted_before(r) for r in rows):
            logger.warning("Cap hit resubmitting %s; treating earlier attempt as recorded", day)
            return _mark_synced(rows, None, now)
        _count_attempt(rows, -1)
        logger.warning("Batch for %s hit the daily cap, isolating records", day)
        return _sync_one_by_one(chain, day, batch, now)
    except LedgerRejectedError as e:
        _count_attempt(rows, -1)
        logger.warning("Batch for %s rejected (%s), isolating records", day, e.reason)
        return _sync_one_by_one(chain, day, batch, now)
    except ExternalLedgerError:
        logger.exception("Failed to sync %s; will retry next run", day)
        return 0

    logger.info("Synced %d buckets for %s in %s", len(rows), day, tx_hash)
    return _mark_synced(rows, tx_hash, now)


def sync_points_to_chain(chain: Optional[ChainClient] = None, now: Optional[datetime] = None) -> Dict[str, int]:
    """Push closed, unsynced daily buckets to the emission pool.

    Buckets of actors without a wallet stay unsynced until one is linked.
    """
    chain = chain or get_chain()
    now = now or utcnow()
    rows = get_documents("dailypoints", {"synced": False, "day": {"$lt": day_key(now)}},
                         sort=[("day", 1)])
    if not rows:
        logger.info("No points to sync")
        return {"buckets": 0, "synced": 0, "waiting_for_wallet": 0}

    ids = list({r["actor_id"] for r in rows})
    wallets = {
        a["id"]: a["wallet_address"]
        for a in get_documents("actor", {"_id": {"$in": [oid(i) for i in ids]},
                                         "wallet_address": {"$exists": True}})
    }
    by_day: "OrderedDict[str, Pending]" = OrderedDict()
    waiting = 0
    for row in rows:
        address = wallets.get(row["actor_id"])
        if not address:
            waiting += 1
            continue
        by_day.setdefault(row["day"], []).append((row, address))

    synced = 0
    for day, batch in by_day.items():
        synced += _sync_day(chain, day, batch, now)
    return {"buckets": len(rows), "synced": synced, "waiting_for_wallet": waiting}


def finalize_chain_days(chain: Optional[ChainClient] = None) -> Dict[str, Any]:
    chain = chain or get_chain()
    day = chain.current_day() - 1
    if chain.is_day_finalized(day):
        return {"day": day, "finalized": False}
    try:
        tx_hash = chain.finalize_day(day)
    except LedgerRejectedError as e:
        if "already finalized" in e.reason:
            return {"day": day, "finalized": False}
        raise
    logger.info("Finalized chain day %d in %s", day, tx_hash)
    return {"day": day, "finalized": True, "tx_hash": tx_hash}


def propagate_fraud_strikes(chain: Optional[ChainClient] = None) -> Dict[str, int]:
    """Mirror off-chain fraud strikes onto the staking ledger, one at a time.

    The ledger's own strike count is read first, so a strike that landed
    before its local counter could be advanced is not pushed twice.
    """
    chain = chain or get_chain()
    pushed = slashes = 0
    for actor in actors.actors_with_unsynced_strikes():
        seen = actor.get("strikes_on_chain", 0)
        address = actor["wallet_address"]
        target = actor["fraud_strikes"]
        try:
            on_chain = chain.stake_info(address)["fraud_strikes"]
        except ExternalLedgerError:
            logger.exception("Failed to read strikes for actor %s", actor["id"])
            continue
        caught_up = True
        while seen < min(on_chain, target):
            if not actors.mark_strike_on_chain(actor["id"], seen):
                caught_up = False
                break
            logger.info("Strike %d for actor %s already on chain", seen + 1, actor["id"])
            seen += 1
        if not caught_up:
            logger.warning("Strike counter for %s moved concurrently", actor["id"])
            continue
        while seen < target:
            try:
                _, slashed = chain.add_fraud_strike(address)
            except ExternalLedgerError:
                logger.exception("Failed to push strike %d for actor %s", seen + 1, actor["id"])
                break
            if not actors.mark_strike_on_chain(actor["id"], seen):
                logger.warning("Strike counter for %s moved concurrently", actor["id"])
                break
            seen += 1
            pushed += 1
            if slashed:
                slashes += 1
                logger.warning("Stake of %s slashed by %s SHARE", address, format_units(slashed))
    return {"strikes": pushed, "slashes": slashes}


class Job(NamedTuple):
    name: str
    interval: int
    run: Callable[[], Any]


JOBS: Dict[str, Job] = {
    job.name: job
    for job in (
        Job("expire_challenges", HOUR, expire_challenges),
        Job("daily_emission", DAY, run_daily_emission),
        Job("finalize_chain_days", DAY, finalize_chain_days),
        Job("sync_points_to_chain", 6 * HOUR, sync_points_to_chain),
        Job("propagate_fraud_strikes", 6 * HOUR, propagate_fraud_strikes),
    )
}


def run_job(name: str) -> Any:
    job = JOBS.get(name)
    if job is None:
        raise NotFoundError(f"Unknown job: {name}")
    logger.info("Running %s", name)
    return job.run()


def seconds_until_next(interval: int, now: float) -> float:
    """Time to the next wall-clock multiple of interval (UTC)."""
    return interval - (now % interval)


class Scheduler:
    """
    Runs every job on its own daemon thread, aligned to UTC boundaries
    (hourly jobs on the hour, daily jobs at midnight).
    """

    def __init__(self, jobs: Optional[List[Job]] = None, clock: Callable[[], float] = time.time):
        self.jobs = list(jobs if jobs is not None else JOBS.values())
        self.clock = clock
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def start(self):
        if any(t.is_alive() for t in self._threads):
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._run, args=(job,), name=f"job-{job.name}", daemon=True)
            for job in self.jobs
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Scheduler started with %d jobs", len(self.jobs))

    def stop(self):
        self._stop.set()
        for thread in self._threads:
            if thread.is_alive():
                thread.join(timeout=1)

    def run_once(self, job: Job) -> None:
        try:
            result = job.run()
            logger.info("%s: %s", job.name, result)
        except Exception:
            logger.exception("Job %s failed", job.name)

    def _run(self, job: Job):
        while not self._stop.is_set():
            if self._stop.wait(seconds_until_next(job.interval, self.clock())):
                break
            self.run_once(job)
