import pytest

from chain import ChainClient
from conftest import ALICE, Clock
from errors import LedgerRejectedError, LedgerUnavailableError
from ledger import Network


class Flaky:
    def __init__(self, failures, result=None):
        self.failures = failures
        self.calls = 0
        self.result = result

    def __call__(self, *args):
        self.calls += 1
        if self.calls <= self.failures:
            raise LedgerUnavailableError("node timeout")
        return self.result


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(sleeps):
    return ChainClient(Network(clock=Clock()), attempts=3, delay=0.5, sleep=sleeps.append)


def test_transient_failures_are_retried_with_backoff(client, sleeps):
    flaky = Flaky(failures=2, result=42)
    client.network.emission.get_current_day = flaky
    assert client.current_day() == 42
    assert flaky.calls == 3
    assert sleeps == [0.5, 1.0]


def test_gives_up_with_retry_guidance(client, sleeps):
    client.network.emission.get_current_day = Flaky(failures=10)
    with pytest.raises(LedgerUnavailableError) as exc:
        client.current_day()
    assert exc.value.details["retry_after"] == 60
    assert len(sleeps) == 2


def test_reverts_are_not_retried(client, sleeps):
    with pytest.raises(LedgerRejectedError):
        client.finalize_day(client.current_day())
    assert sleeps == []


def test_writes_return_receipted_hashes(client):
    tx_hash = client.record_points_batch([ALICE], [25])
    assert tx_hash.startswith("0x")
    assert client.receipt(tx_hash)["status"] == 1
    assert client.point_balance(ALICE) == 25
    assert client.user_points(ALICE, client.current_day()) == 25


def test_single_record_through_client(client):
    tx_hash = client.record_points(ALICE, 15)
    assert client.receipt(tx_hash)["method"] == "recordPoints"
    assert client.point_balance(ALICE) == 15


def test_stake_info_is_formatted(client):
    client.fund(ALICE, 20 * 10 ** 18)
    client.stake(ALICE, 15 * 10 ** 18)
    info = client.stake_info(ALICE)
    assert info["amount"] == "15"
    assert info["is_super_donor"] is False
    assert client.token_balance(ALICE) == 5 * 10 ** 18
    assert client.is_withdrawal_eligible(ALICE)


def test_claim_day_through_client(client):
    client.record_points_batch([ALICE], [40])
    day = client.current_day()
    client.network.clock.advance(86400)
    client.finalize_day(day)
    assert client.is_day_finalized(day)

    assert client.claimable(ALICE, day) == 1000 * 10 ** 18
    _, amount = client.claim(ALICE, day)
    assert amount == 1000 * 10 ** 18
    assert client.point_balance(ALICE) == 0
    assert client.exchange_rate() == 10


def test_unstake_returns_tokens(client):
    client.fund(ALICE, 10 * 10 ** 18)
    client.stake(ALICE, 10 * 10 ** 18)
    client.unstake(ALICE, 4 * 10 ** 18)
    assert client.token_balance(ALICE) == 4 * 10 ** 18
    assert not client.is_withdrawal_eligible(ALICE)


def test_granted_oracle_can_record():
    network = Network(clock=Clock())
    network.grant_role("ORACLE_ROLE", ALICE)
    network.transact("recordPointsBatch", network.emission.record_points_batch, ALICE, [ALICE], [5])
    assert network.emission.get_point_balance(ALICE) == 5
