import pytest

import actors
import contributions
import karma
from conftest import ALICE, BOB
from errors import StateError, ValidationError


def test_create_actor_dedupes_by_email():
    first = actors.create_actor("Ana", "ana@example.org")
    again = actors.create_actor("Ana B", "ana@example.org")
    assert again["id"] == first["id"]
    assert first["confirmed_points"] == 0
    assert "wallet_address" not in first


class TestWalletLink:
    def test_link_normalizes_address(self, make_actor):
        actor = make_actor()
        linked = actors.link_wallet(actor["id"], ALICE.upper().replace("0X", "0x"))
        assert linked["wallet_address"] == ALICE
        assert actors.find_by_wallet(ALICE)["id"] == actor["id"]

    @pytest.mark.parametrize("address", ["abc", "0x123", "0x" + "g" * 40])
    def test_malformed_address(self, make_actor, address):
        with pytest.raises(ValidationError):
            actors.link_wallet(make_actor()["id"], address)

    def test_relink_requires_flag(self, make_actor):
        actor = make_actor(wallet=ALICE)
        with pytest.raises(StateError, match="already linked"):
            actors.link_wallet(actor["id"], BOB)
        assert actors.link_wallet(actor["id"], BOB, relink=True)["wallet_address"] == BOB

    def test_address_belongs_to_one_actor(self, make_actor):
        make_actor("first", wallet=ALICE)
        other = make_actor("second")
        with pytest.raises(StateError, match="another account"):
            actors.link_wallet(other["id"], ALICE)

    def test_linking_same_address_is_a_no_op(self, make_actor):
        actor = make_actor(wallet=ALICE)
        assert actors.link_wallet(actor["id"], ALICE)["wallet_address"] == ALICE


def test_strikes_saturate(make_actor):
    from database import update_document
    actor = make_actor()
    update_document("actor", actor["id"], {"fraud_strikes": 255})
    assert actors.add_fraud_strike(actor["id"])["fraud_strikes"] == 255


class TestContributions:
    def test_bonus_is_one_point_per_dollar(self, make_actor):
        actor = make_actor()
        record = contributions.record_payment(actor["id"], "pi_123", 2599)
        assert record["bonus_points"] == 25
        assert record["currency"] == "USD"
        assert karma.get_balance(actor["id"])["confirmed"] == 25
        assert karma.get_history(actor["id"])[0]["reference_id"] == record["id"]

    def test_payment_counted_once(self, make_actor):
        actor = make_actor()
        contributions.record_payment(actor["id"], "pi_123", 1000)
        with pytest.raises(StateError, match="already recorded"):
            contributions.record_payment(actor["id"], "pi_123", 1000)
        assert karma.get_balance(actor["id"])["confirmed"] == 10

    def test_small_payment_earns_nothing(self, make_actor):
        actor = make_actor()
        record = contributions.record_payment(actor["id"], "pi_small", 99, method="crypto")
        assert record["bonus_points"] == 0
        assert karma.get_history(actor["id"]) == []

    def test_rejects_non_positive_amount(self, make_actor):
        with pytest.raises(ValidationError):
            contributions.record_payment(make_actor()["id"], "pi_0", 0)
