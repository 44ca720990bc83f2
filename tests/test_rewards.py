import pytest

import actors
import karma
import rewards
from conftest import ALICE, BOB, chain_datetime
from database import find_one, get_documents, update_document
from errors import InsufficientBalanceError, StateError, ValidationError
from ledger import to_wei


@pytest.fixture
def alice(make_actor):
    return make_actor("alice", wallet=ALICE)


def _with_karma(chain, actor, local, on_chain=None):
    karma.award_bonus(actor["id"], "seed", local)
    chain.record_points_batch([actor["wallet_address"]], [local if on_chain is None else on_chain])


class TestExchange:
    def test_hundred_points_for_ten_tokens(self, chain, alice, staked):
        staked(ALICE, 10)
        _with_karma(chain, alice, 150)

        request = rewards.exchange(alice["id"], 100)
        assert request["status"] == "completed"
        assert request["token_amount"] == "10"
        assert request["tx_hash"].startswith("0x")
        assert karma.get_balance(alice["id"])["confirmed"] == 50
        assert chain.point_balance(ALICE) == 50
        assert chain.token_balance(ALICE) == to_wei(10)

    def test_super_donor_rate(self, chain, alice, staked):
        staked(ALICE, 500)
        chain.activate_super_donor(ALICE)
        _with_karma(chain, alice, 100)
        assert rewards.exchange(alice["id"], 100)["token_amount"] == "15"

    def test_not_enough_local_karma(self, chain, alice, staked):
        staked(ALICE, 10)
        _with_karma(chain, alice, 50, on_chain=500)
        with pytest.raises(InsufficientBalanceError):
            rewards.exchange(alice["id"], 100)
        assert karma.get_balance(alice["id"])["confirmed"] == 50
        assert chain.point_balance(ALICE) == 500

    def test_pool_rejection_refunds_karma(self, chain, alice, staked):
        staked(ALICE, 10)
        _with_karma(chain, alice, 150, on_chain=60)
        with pytest.raises(InsufficientBalanceError, match="Insufficient point balance"):
            rewards.exchange(alice["id"], 100)
        assert karma.get_balance(alice["id"])["confirmed"] == 150
        assert chain.point_balance(ALICE) == 60
        failed = rewards.list_exchanges(alice["id"])
        assert [r["status"] for r in failed] == ["failed"]
        assert karma.reconcile(alice["id"])["consistent"]

    def test_minimum_exchange(self, alice):
        with pytest.raises(ValidationError, match="Minimum exchange"):
            rewards.exchange(alice["id"], 99)

    def test_requires_wallet(self, make_actor):
        actor = make_actor("nowallet")
        with pytest.raises(StateError, match="link wallet"):
            rewards.exchange(actor["id"], 100)

    def test_requires_stake(self, chain, alice):
        _with_karma(chain, alice, 100)
        with pytest.raises(StateError, match="stake"):
            rewards.exchange(alice["id"], 100)
        assert karma.get_balance(alice["id"])["confirmed"] == 100


def test_token_summary(chain, alice, make_actor, staked):
    staked(ALICE, 10, extra=5)
    summary = rewards.token_summary(alice["id"])
    assert summary["balance"] == "5"
    assert summary["staked"] == "10"
    assert summary["multiplier"] == 100
    assert summary["wallet_linked"] is True

    bare = rewards.token_summary(make_actor("bob")["id"])
    assert bare == {"balance": "0", "staked": "0", "wallet_linked": False}


class TestMedals:
    @pytest.fixture(autouse=True)
    def images(self, monkeypatch):
        from settings import settings
        monkeypatch.setattr(settings, "medal_image_cids", {"bronze": "QmBronzeImage"})

    @pytest.fixture
    def veteran(self, chain, clock, alice):
        update_document("actor", alice["id"], {
            "first_confirmed_at": chain_datetime(clock, days_ago=31),
            "confirmed_donations": 25,
        })
        chain.fund(ALICE, to_wei(60))
        return alice

    def test_eligibility(self, veteran, clock):
        status = rewards.medal_eligibility(veteran["id"], now=chain_datetime(clock))
        assert status["progress"]["days_since_first"] == 31
        assert status["eligibility"]["bronze"] == {"eligible": True}
        assert status["eligibility"]["silver"]["reason"] == "Need 59 more days"
        assert status["requirements"]["bronze"]["burn_cost"] == "50"

    def test_no_history(self, alice):
        status = rewards.medal_eligibility(alice["id"])
        assert status["progress"] is None
        assert status["eligibility"] == {}

    def test_donation_shortfall(self, veteran, clock):
        update_document("actor", veteran["id"], {"confirmed_donations": 12})
        status = rewards.medal_eligibility(veteran["id"], now=chain_datetime(clock))
        assert status["eligibility"]["bronze"]["reason"] == "Need 8 more donations"

    def test_bronze_mint_burns_fifty(self, chain, store, veteran):
        supply = chain.network.token.total_supply
        result = rewards.mint_medal(veteran["id"], "bronze")

        assert result["token_id"] == 1
        assert chain.token_balance(ALICE) == to_wei(10)
        assert chain.network.token.total_supply == supply - to_wei(50)
        assert chain.user_medals(ALICE) == [1, 0, 0, 0]
        assert "bronze" in actors.get_actor(veteran["id"])["medals"]

        uri = chain.token_uri(1)
        assert uri.startswith("ipfs://")
        metadata = store.get_json(uri[len("ipfs://"):])
        assert metadata["name"] == "Bronze Medal #1"
        assert metadata["image"] == "ipfs://QmBronzeImage"
        assert find_one("medal", {"token_id": 1})["metadata_uri"] == uri

        with pytest.raises(StateError, match="Already owns this medal"):
            rewards.mint_medal(veteran["id"], "bronze")
        assert chain.token_balance(ALICE) == to_wei(10)

    def test_metadata_failure_keeps_mint(self, chain, veteran, monkeypatch):
        from settings import settings
        monkeypatch.setattr(settings, "medal_image_cids", {})
        result = rewards.mint_medal(veteran["id"], "bronze")
        assert result["token_id"] == 1
        assert chain.user_medals(ALICE)[0] == 1
        assert chain.token_uri(1) == ""
        assert find_one("medal", {"token_id": 1})["metadata_uri"] is None

    def test_not_eligible_yet(self, chain, veteran):
        with pytest.raises(StateError, match="Time requirement not met"):
            rewards.mint_medal(veteran["id"], "silver")
        assert get_documents("medal") == []

    def test_unknown_tier(self, veteran):
        with pytest.raises(ValidationError):
            rewards.mint_medal(veteran["id"], "diamond")

    def test_requires_history(self, make_actor):
        actor = make_actor("fresh", wallet=BOB)
        with pytest.raises(StateError, match="No donation history"):
            rewards.mint_medal(actor["id"], "bronze")
