import threading
from datetime import timedelta

import pytest

import actors
import donations
import scheduler
from conftest import ALICE, BOB
from database import create_document, find_one, get_document_by_id
from errors import LedgerUnavailableError, NotFoundError
from schemas import DailyPoints


SPOT = {"latitude": 51.5074, "longitude": -0.1278}


def _bucket(actor, day, points, attempts=0):
    return create_document("dailypoints", DailyPoints(actor_id=actor["id"], day=day, points=points,
                                                      submit_attempts=attempts))


class TestExpireChallenges:
    def test_auto_confirms_lapsed_claims(self, make_actor, now):
        donor = make_actor("donor")
        lapsed = donations.create_claim(donor["id"], SPOT, "Rice", now=now)
        fresh = donations.create_claim(donor["id"], SPOT, "Beans", now=now + timedelta(days=2))

        result = scheduler.expire_challenges(now=now + timedelta(days=3, seconds=1))
        assert result == {"found": 1, "confirmed": 1, "skipped": 0, "failed": 0}
        assert donations.get_claim(lapsed["id"])["auto_confirmed"] is True
        assert donations.get_claim(fresh["id"])["status"] == "pending"
        assert actors.get_actor(donor["id"])["confirmed_points"] == 10

    def test_one_failure_does_not_stop_the_sweep(self, make_actor, now, monkeypatch):
        donor = make_actor("donor")
        first = donations.create_claim(donor["id"], SPOT, "Rice", now=now)
        second = donations.create_claim(donor["id"], SPOT, "Beans", now=now)
        real = donations.expire_claim

        def flaky(donation_id, now=None):
            if donation_id == first["id"]:
                raise RuntimeError("boom")
            return real(donation_id, now=now)

        monkeypatch.setattr(donations, "expire_claim", flaky)
        result = scheduler.expire_challenges(now=now + timedelta(days=4))
        assert result["failed"] == 1
        assert result["confirmed"] == 1
        assert donations.get_claim(second["id"])["status"] == "confirmed"
        assert donations.get_claim(first["id"])["status"] == "pending"


def test_daily_emission_shares(make_actor, now):
    a, b = make_actor("a"), make_actor("b")
    _bucket(a, "2024-04-30", 30)
    _bucket(b, "2024-04-30", 10)
    _bucket(a, "2024-05-01", 99)

    report = scheduler.run_daily_emission(now=now)
    assert report["day"] == "2024-04-30"
    assert report["total_points"] == 40
    assert {s["actor_id"]: s["tokens"] for s in report["shares"]} == {a["id"]: "750", b["id"]: "250"}


def test_daily_emission_with_nothing_to_share(now):
    assert scheduler.run_daily_emission(now=now)["shares"] == []


class TestSyncPoints:
    def test_closed_buckets_are_recorded_and_marked(self, chain, make_actor, now):
        alice = make_actor("alice", wallet=ALICE)
        closed = _bucket(alice, "2024-04-30", 20)
        today = _bucket(alice, "2024-05-01", 10)

        result = scheduler.sync_points_to_chain(now=now)
        assert result["synced"] == 1
        doc = get_document_by_id("dailypoints", closed)
        assert doc["synced"] is True
        assert doc["sync_tx"].startswith("0x")
        assert doc["submit_attempts"] == 1
        assert get_document_by_id("dailypoints", today)["synced"] is False
        assert chain.point_balance(ALICE) == 20

        # a second run has nothing left to send
        assert scheduler.sync_points_to_chain(now=now)["synced"] == 0
        assert chain.point_balance(ALICE) == 20

    def test_actors_without_wallet_wait(self, make_actor, now):
        nowallet = make_actor("nowallet")
        bucket = _bucket(nowallet, "2024-04-30", 20)
        result = scheduler.sync_points_to_chain(now=now)
        assert result["waiting_for_wallet"] == 1
        assert get_document_by_id("dailypoints", bucket)["synced"] is False

    def test_cap_on_resubmission_counts_as_recorded(self, chain, make_actor, now):
        alice = make_actor("alice", wallet=ALICE)
        # the earlier attempt landed but the reply was lost
        chain.record_points_batch([ALICE], [9_995])
        bucket = _bucket(alice, "2024-04-30", 9_995, attempts=1)

        assert scheduler.sync_points_to_chain(now=now)["synced"] == 1
        assert get_document_by_id("dailypoints", bucket)["synced"] is True
        assert chain.point_balance(ALICE) == 9_995

    def test_bad_record_is_isolated(self, chain, make_actor, now):
        alice = make_actor("alice", wallet=ALICE)
        bob = make_actor("bob", wallet=BOB)
        good = _bucket(alice, "2024-04-30", 20)
        bad = _bucket(bob, "2024-04-30", 20_000)

        assert scheduler.sync_points_to_chain(now=now)["synced"] == 1
        assert get_document_by_id("dailypoints", good)["synced"] is True
        assert get_document_by_id("dailypoints", bad)["synced"] is False
        assert chain.point_balance(ALICE) == 20
        assert chain.point_balance(BOB) == 0

    def test_rejected_bucket_stays_unsynced_across_runs(self, chain, make_actor, now):
        alice = make_actor("alice", wallet=ALICE)
        bob = make_actor("bob", wallet=BOB)
        _bucket(alice, "2024-04-30", 20)
        bad = _bucket(bob, "2024-04-30", 20_000)

        scheduler.sync_points_to_chain(now=now)
        second = scheduler.sync_points_to_chain(now=now)
        assert second["buckets"] == 1
        assert second["synced"] == 0
        doc = get_document_by_id("dailypoints", bad)
        assert doc["synced"] is False
        assert doc["submit_attempts"] == 0
        assert chain.point_balance(BOB) == 0

    def test_unavailable_ledger_leaves_buckets_unsynced(self, chain, make_actor, now, monkeypatch):
        alice = make_actor("alice", wallet=ALICE)
        bucket = _bucket(alice, "2024-04-30", 20)

        def down(*args):
            raise LedgerUnavailableError("node down")

        monkeypatch.setattr(chain.network, "transact", down)
        assert scheduler.sync_points_to_chain(now=now)["synced"] == 0
        doc = get_document_by_id("dailypoints", bucket)
        assert doc["synced"] is False
        assert doc["submit_attempts"] == 1


def test_finalize_previous_chain_day(chain):
    first = scheduler.finalize_chain_days()
    assert first["finalized"] is True
    assert first["day"] == chain.current_day() - 1
    assert scheduler.finalize_chain_days()["finalized"] is False


class TestFraudStrikes:
    def test_strikes_are_mirrored_and_slash(self, chain, make_actor, staked):
        alice = make_actor("alice", wallet=ALICE)
        staked(ALICE, 100)
        for _ in range(3):
            actors.add_fraud_strike(alice["id"])

        assert scheduler.propagate_fraud_strikes() == {"strikes": 3, "slashes": 1}
        assert actors.get_actor(alice["id"])["strikes_on_chain"] == 3
        info = chain.stake_info(ALICE)
        assert info["amount"] == "50"
        assert info["fraud_strikes"] == 3

        assert scheduler.propagate_fraud_strikes() == {"strikes": 0, "slashes": 0}

    def test_strike_already_on_chain_is_not_pushed_again(self, chain, make_actor):
        alice = make_actor("alice", wallet=ALICE)
        actors.add_fraud_strike(alice["id"])
        # landed on the ledger, but the local counter was never advanced
        chain.add_fraud_strike(ALICE)

        assert scheduler.propagate_fraud_strikes() == {"strikes": 0, "slashes": 0}
        assert actors.get_actor(alice["id"])["strikes_on_chain"] == 1
        assert chain.stake_info(ALICE)["fraud_strikes"] == 1

    def test_relinked_wallet_receives_full_history(self, chain, make_actor):
        alice = make_actor("alice", wallet=ALICE)
        actors.add_fraud_strike(alice["id"])
        scheduler.propagate_fraud_strikes()
        actors.link_wallet(alice["id"], "0x" + "d" * 40, relink=True)

        assert scheduler.propagate_fraud_strikes()["strikes"] == 1
        assert chain.stake_info("0x" + "d" * 40)["fraud_strikes"] == 1

    def test_strikes_wait_for_ledger(self, chain, make_actor, monkeypatch):
        alice = make_actor("alice", wallet=ALICE)
        actors.add_fraud_strike(alice["id"])

        def down(*args):
            raise LedgerUnavailableError("node down")

        monkeypatch.setattr(chain.network, "transact", down)
        assert scheduler.propagate_fraud_strikes()["strikes"] == 0
        assert find_one("actor", {"name": "alice"}).get("strikes_on_chain", 0) == 0


def test_run_unknown_job():
    with pytest.raises(NotFoundError):
        scheduler.run_job("nope")


def test_seconds_until_next_boundary():
    assert scheduler.seconds_until_next(3600, 7200 + 10) == 3590
    assert scheduler.seconds_until_next(86400, 86400 * 5) == 86400


def test_scheduler_survives_failing_job():
    ran = threading.Event()
    calls = []

    def job():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("first run fails")
        ran.set()

    sched = scheduler.Scheduler(jobs=[scheduler.Job("flaky", 1, job)], clock=lambda: 0.99)
    sched.start()
    try:
        assert ran.wait(timeout=2)
    finally:
        sched.stop()
    assert len(calls) >= 2
