from datetime import datetime, timedelta, timezone

import mongomock
import pytest

import actors
import database
from chain import ChainClient, set_chain
from ledger import Network, to_wei
from storage import MemoryStore, set_store

START = 1_700_000_000


class Clock:
    """Controllable unix clock for the in-process chain."""

    def __init__(self, start: int = START):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def db():
    client = mongomock.MongoClient()
    database.use_database(client["karma_test"])
    database.ensure_indexes()
    yield database.get_db()
    database.use_database(None)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture(autouse=True)
def chain(clock):
    client = ChainClient(Network(clock=clock), attempts=3, delay=0, sleep=lambda s: None)
    set_chain(client)
    yield client
    set_chain(None)


@pytest.fixture(autouse=True)
def store():
    memory = MemoryStore()
    set_store(memory)
    yield memory
    set_store(None)


@pytest.fixture
def now():
    return datetime(2024, 5, 1, 12, 0, 0)


@pytest.fixture
def make_actor():
    def _make(name="alice", wallet=None):
        actor = actors.create_actor(name)
        if wallet:
            actor = actors.link_wallet(actor["id"], wallet)
        return actor
    return _make


@pytest.fixture
def staked(chain):
    """Give an address tokens and put some of them at stake."""
    def _stake(address, stake=10, extra=0):
        chain.fund(address, to_wei(stake + extra))
        chain.stake(address, to_wei(stake))
    return _stake


def chain_datetime(clock: Clock, days_ago: int = 0) -> datetime:
    moment = datetime.fromtimestamp(clock.now, timezone.utc) - timedelta(days=days_ago)
    return moment.replace(tzinfo=None)


ALICE = "0x" + "a" * 40
BOB = "0x" + "b" * 40
CAROL = "0x" + "c" * 40
