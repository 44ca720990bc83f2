"""
On-chain contract logic: SHARE token, treasury, staking, emission pool and
medal NFTs.

The contracts run inside a `Network`, which plays the part of the chain:
every write is a transaction that either applies completely or reverts,
gets a hash and a receipt, and is serialized against every other write.
Token amounts are integers in 18-decimal base units. Wherever a ratio is
taken, all numerators are multiplied before the single final division.
"""

import copy
import hashlib
import json
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

from errors import InsufficientBalanceError, LedgerRejectedError, PointsCapExceededError
from schemas import MedalTier

logger = logging.getLogger(__name__)

WEI = 10 ** 18
SECONDS_PER_DAY = 86400

OPERATOR = "0x" + "0" * 39 + "1"
STAKING_ADDRESS = "0x" + "5" * 40
TREASURY_ADDRESS = "0x" + "7" * 40

ORACLE_ROLE = "ORACLE_ROLE"
SLASHER_ROLE = "SLASHER_ROLE"
MINTER_ROLE = "MINTER_ROLE"
ADMIN_ROLE = "DEFAULT_ADMIN_ROLE"


def to_wei(tokens) -> int:
    return int(Decimal(str(tokens)) * WEI)


def format_units(amount: int) -> str:
    return format(Decimal(amount).scaleb(-18).normalize(), "f")


def revert(reason: str):
    raise LedgerRejectedError(reason)


def _addr(address: str) -> str:
    return address.lower()


class ShareToken:
    INITIAL_SUPPLY = 1_000_000 * WEI
    DAILY_EMISSION = 1000 * WEI
    # ceiling on emission mints (claims plus exchanges) per chain day
    DAILY_MINT_CAP = 10_000 * WEI

    def __init__(self, network: "Network"):
        self.network = network
        self.balances: Dict[str, int] = {}
        self.total_supply = 0
        self.minted_per_day: Dict[str, int] = {}
        self._mint(network.operator, self.INITIAL_SUPPLY)

    def balance_of(self, account: str) -> int:
        return self.balances.get(_addr(account), 0)

    def _mint(self, to: str, amount: int) -> None:
        to = _addr(to)
        self.balances[to] = self.balances.get(to, 0) + amount
        self.total_supply += amount

    def mint_emission(self, to: str, amount: int) -> None:
        day = str(self.network.current_day())
        minted = self.minted_per_day.get(day, 0)
        if minted + amount > self.DAILY_MINT_CAP:
            revert("Daily emission cap reached")
        self.minted_per_day[day] = minted + amount
        self._mint(to, amount)

    def transfer(self, sender: str, to: str, amount: int) -> None:
        sender, to = _addr(sender), _addr(to)
        if amount < 0:
            revert("Negative amount")
        if self.balances.get(sender, 0) < amount:
            revert("Insufficient balance")
        self.balances[sender] -= amount
        self.balances[to] = self.balances.get(to, 0) + amount

    def burn(self, account: str, amount: int) -> None:
        account = _addr(account)
        if self.balances.get(account, 0) < amount:
            revert("Insufficient balance to burn")
        self.balances[account] -= amount
        self.total_supply -= amount

    def state(self) -> Dict[str, Any]:
        return {"balances": self.balances, "total_supply": self.total_supply, "minted_per_day": self.minted_per_day}

    def restore(self, state: Dict[str, Any]) -> None:
        self.balances = state["balances"]
        self.total_supply = state["total_supply"]
        self.minted_per_day = state["minted_per_day"]


class Treasury:
    def __init__(self, network: "Network"):
        self.network = network
        self.address = TREASURY_ADDRESS
        self.slashed_total = 0

    def record_slash(self, amount: int) -> None:
        self.slashed_total += amount

    def balance(self) -> int:
        return self.network.token.balance_of(self.address)

    def state(self) -> Dict[str, Any]:
        return {"slashed_total": self.slashed_total}

    def restore(self, state: Dict[str, Any]) -> None:
        self.slashed_total = state["slashed_total"]


@dataclass
class StakeRecord:
    amount: int = 0
    staked_at: int = 0
    unlock_time: int = 0
    is_super_donor: bool = False
    fraud_strikes: int = 0
    # a slash disarms the record; new collateral re-arms it
    slash_armed: bool = True


class StakingLedger:
    MIN_STAKE = 10 * WEI
    SUPER_DONOR_THRESHOLD = 500 * WEI
    SUPER_DONOR_LOCK = 30 * SECONDS_PER_DAY
    STRIKE_THRESHOLD = 3
    SLASH_PERCENT = 50
    MAX_STRIKES = 255

    def __init__(self, network: "Network"):
        self.network = network
        self.address = STAKING_ADDRESS
        self.stakes: Dict[str, StakeRecord] = {}
        self.total_staked = 0

    def _record(self, user: str) -> StakeRecord:
        user = _addr(user)
        if user not in self.stakes:
            self.stakes[user] = StakeRecord()
        return self.stakes[user]

    def get_stake_info(self, user: str) -> StakeRecord:
        return copy.copy(self.stakes.get(_addr(user), StakeRecord()))

    def stake(self, sender: str, amount: int) -> None:
        if amount <= 0:
            revert("Cannot stake 0")
        rec = self._record(sender)
        rec.amount += amount
        rec.staked_at = self.network.now()
        rec.slash_armed = True
        self.total_staked += amount
        self.network.token.transfer(sender, self.address, amount)

    def unstake(self, sender: str, amount: int) -> None:
        rec = self._record(sender)
        if amount <= 0:
            revert("Cannot unstake 0")
        if amount > rec.amount:
            revert("Insufficient stake")
        if rec.is_super_donor and self.network.now() < rec.unlock_time:
            revert("Stake is locked")
        rec.amount -= amount
        self.total_staked -= amount
        if rec.is_super_donor and rec.amount < self.SUPER_DONOR_THRESHOLD:
            rec.is_super_donor = False
            rec.unlock_time = 0
        self.network.token.transfer(self.address, sender, amount)

    def activate_super_donor(self, sender: str) -> None:
        rec = self._record(sender)
        if rec.amount < self.SUPER_DONOR_THRESHOLD:
            revert("Insufficient stake for super donor")
        if rec.is_super_donor:
            revert("Already a super donor")
        rec.is_super_donor = True
        rec.unlock_time = self.network.now() + self.SUPER_DONOR_LOCK

    def is_withdrawal_eligible(self, user: str) -> bool:
        return self.stakes.get(_addr(user), StakeRecord()).amount >= self.MIN_STAKE

    def is_super_donor(self, user: str) -> bool:
        return self.stakes.get(_addr(user), StakeRecord()).is_super_donor

    def get_multiplier(self, user: str) -> int:
        return 150 if self.is_super_donor(user) else 100

    def add_fraud_strike(self, sender: str, user: str) -> Optional[int]:
        """Count a strike; at the threshold, slash once and return the amount.

        Strikes persist. A record that was already slashed is not slashed
        again until more collateral is staked.
        """
        self.network.require_role(SLASHER_ROLE, sender)
        rec = self._record(user)
        rec.fraud_strikes = min(rec.fraud_strikes + 1, self.MAX_STRIKES)
        if rec.fraud_strikes < self.STRIKE_THRESHOLD or rec.amount == 0 or not rec.slash_armed:
            return None

        slashed = rec.amount * self.SLASH_PERCENT // 100
        rec.amount -= slashed
        rec.is_super_donor = False
        rec.unlock_time = 0
        rec.slash_armed = False
        self.total_staked -= slashed
        self.network.treasury.record_slash(slashed)
        # state is settled before tokens move
        self.network.token.transfer(self.address, self.network.treasury.address, slashed)
        logger.info("Slashed %s from %s after %d strikes", format_units(slashed), user, rec.fraud_strikes)
        return slashed

    def state(self) -> Dict[str, Any]:
        return {"stakes": {k: asdict(v) for k, v in self.stakes.items()}, "total_staked": self.total_staked}

    def restore(self, state: Dict[str, Any]) -> None:
        self.stakes = {k: StakeRecord(**v) for k, v in state["stakes"].items()}
        self.total_staked = state["total_staked"]


class EmissionLedger:
    MAX_POINTS_PER_USER_PER_DAY = 10_000

    def __init__(self, network: "Network"):
        self.network = network
        self.exchange_rate = 10
        self.daily_emission = ShareToken.DAILY_EMISSION
        # day -> user -> points; day keys are strings so the state is JSON-safe
        self.user_points: Dict[str, Dict[str, int]] = {}
        self.total_points: Dict[str, int] = {}
        self.finalized: Dict[str, Dict[str, int]] = {}
        self.claimed: Dict[str, List[str]] = {}
        self.point_balance: Dict[str, int] = {}

    def get_current_day(self) -> int:
        return self.network.current_day()

    def get_user_points(self, user: str, day: int) -> int:
        return self.user_points.get(str(day), {}).get(_addr(user), 0)

    def get_point_balance(self, user: str) -> int:
        return self.point_balance.get(_addr(user), 0)

    def _check_cap(self, day: str, user: str, points: int, pending: Dict[str, int]) -> None:
        if points <= 0:
            revert("Points must be positive")
        already = self.user_points.get(day, {}).get(user, 0) + pending.get(user, 0)
        if already + points > self.MAX_POINTS_PER_USER_PER_DAY:
            raise PointsCapExceededError("Exceeds max points per user per day", user=user)

    def _apply(self, day: str, user: str, points: int) -> None:
        bucket = self.user_points.setdefault(day, {})
        bucket[user] = bucket.get(user, 0) + points
        self.total_points[day] = self.total_points.get(day, 0) + points
        self.point_balance[user] = self.point_balance.get(user, 0) + points

    def record_points_batch(self, sender: str, users: List[str], points: List[int]) -> None:
        """Record a batch for the current day; one capped entry rejects all."""
        self.network.require_role(ORACLE_ROLE, sender)
        if len(users) != len(points):
            revert("Array length mismatch")
        day = str(self.get_current_day())
        pending: Dict[str, int] = {}
        for user, amount in zip(users, points):
            user = _addr(user)
            self._check_cap(day, user, amount, pending)
            pending[user] = pending.get(user, 0) + amount
        for user, amount in pending.items():
            self._apply(day, user, amount)

    def record_points(self, sender: str, user: str, points: int) -> None:
        self.network.require_role(ORACLE_ROLE, sender)
        day = str(self.get_current_day())
        user = _addr(user)
        self._check_cap(day, user, points, {})
        self._apply(day, user, points)

    def finalize_day(self, sender: str, day: int) -> Tuple[int, int]:
        self.network.require_role(ORACLE_ROLE, sender)
        if day >= self.get_current_day():
            revert("Day not yet ended")
        key = str(day)
        if key in self.finalized:
            revert("Day already finalized")
        total = self.total_points.get(key, 0)
        self.finalized[key] = {"total_points": total, "emission": self.daily_emission}
        logger.info("DayFinalized day=%d total_points=%d emission=%s", day, total, format_units(self.daily_emission))
        return total, self.daily_emission

    def get_claimable(self, user: str, day: int) -> int:
        key, user = str(day), _addr(user)
        info = self.finalized.get(key)
        if not info or info["total_points"] == 0 or user in self.claimed.get(key, []):
            return 0
        points = self.get_user_points(user, day)
        multiplier = self.network.staking.get_multiplier(user)
        return points * info["emission"] * multiplier // (info["total_points"] * 100)

    def claim(self, sender: str, day: int) -> int:
        key, user = str(day), _addr(sender)
        info = self.finalized.get(key)
        if not info:
            revert("Day not finalized")
        if user in self.claimed.get(key, []):
            revert("Already claimed")
        points = self.get_user_points(user, day)
        if points == 0 or info["total_points"] == 0:
            revert("No points for this day")
        if self.point_balance.get(user, 0) < points:
            revert("Points already exchanged")
        amount = self.get_claimable(user, day)
        self.claimed.setdefault(key, []).append(user)
        self.point_balance[user] -= points
        self.network.token.mint_emission(user, amount)
        return amount

    def quote_exchange(self, user: str, points: int) -> int:
        multiplier = self.network.staking.get_multiplier(user)
        return points * multiplier * WEI // (self.exchange_rate * 100)

    def exchange_points(self, sender: str, points: int) -> int:
        user = _addr(sender)
        if points <= 0:
            revert("Points must be positive")
        if not self.network.staking.is_withdrawal_eligible(user):
            revert("Must stake to withdraw")
        if self.point_balance.get(user, 0) < points:
            raise InsufficientBalanceError("Insufficient point balance", points=points,
                                           balance=self.point_balance.get(user, 0))
        amount = self.quote_exchange(user, points)
        self.point_balance[user] -= points
        self.network.token.mint_emission(user, amount)
        return amount

    def set_exchange_rate(self, sender: str, rate: int) -> None:
        self.network.require_role(ADMIN_ROLE, sender)
        if rate <= 0:
            revert("Invalid rate")
        self.exchange_rate = rate

    def state(self) -> Dict[str, Any]:
        return {
            "exchange_rate": self.exchange_rate,
            "user_points": self.user_points,
            "total_points": self.total_points,
            "finalized": self.finalized,
            "claimed": self.claimed,
            "point_balance": self.point_balance,
        }

    def restore(self, state: Dict[str, Any]) -> None:
        for key, value in state.items():
            setattr(self, key, value)


class MedalRequirement(NamedTuple):
    min_days: int
    min_donations: int
    burn_cost: int


MEDAL_REQUIREMENTS: Dict[MedalTier, MedalRequirement] = {
    MedalTier.BRONZE: MedalRequirement(30, 20, 50 * WEI),
    MedalTier.SILVER: MedalRequirement(90, 70, 150 * WEI),
    MedalTier.GOLD: MedalRequirement(180, 150, 300 * WEI),
    MedalTier.PLATINUM: MedalRequirement(365, 320, 500 * WEI),
}
assert set(MEDAL_REQUIREMENTS) == set(MedalTier), "every medal tier needs requirements"


class MedalLedger:
    def __init__(self, network: "Network"):
        self.network = network
        self.next_token_id = 1
        # user -> [token id per tier], 0 when not owned
        self.user_medals: Dict[str, List[int]] = {}
        self.medal_data: Dict[str, Dict[str, Any]] = {}
        self.token_uris: Dict[str, str] = {}

    def get_user_medals(self, user: str) -> List[int]:
        return list(self.user_medals.get(_addr(user), [0] * len(MedalTier)))

    def can_mint(self, user: str, tier: MedalTier, first_donation_ts: int, donations: int) -> Tuple[bool, str]:
        req = MEDAL_REQUIREMENTS[tier]
        if self.get_user_medals(user)[tier] != 0:
            return False, "Already owns this medal"
        if first_donation_ts <= 0 or self.network.now() - first_donation_ts < req.min_days * SECONDS_PER_DAY:
            return False, "Time requirement not met"
        if donations < req.min_donations:
            return False, "Donation count not met"
        return True, ""

    def mint(self, sender: str, to: str, tier: MedalTier, first_donation_ts: int, donations: int) -> int:
        self.network.require_role(MINTER_ROLE, sender)
        ok, reason = self.can_mint(to, tier, first_donation_ts, donations)
        if not ok:
            revert(reason)
        to = _addr(to)
        token_id = self.next_token_id
        self.next_token_id += 1
        medals = self.user_medals.setdefault(to, [0] * len(MedalTier))
        medals[tier] = token_id
        self.medal_data[str(token_id)] = {
            "tier": int(tier),
            "minted_at": self.network.now(),
            "donations_at_mint": donations,
            "owner": to,
        }
        # state is settled before the burn; a failed burn reverts all of it
        self.network.token.burn(to, MEDAL_REQUIREMENTS[tier].burn_cost)
        logger.info("MedalMinted user=%s token=%d tier=%s", to, token_id, tier.label)
        return token_id

    def set_token_metadata_uri(self, sender: str, token_id: int, uri: str) -> None:
        self.network.require_role(MINTER_ROLE, sender)
        if str(token_id) not in self.medal_data:
            revert("Token does not exist")
        self.token_uris[str(token_id)] = uri

    def token_uri(self, token_id: int) -> str:
        return self.token_uris.get(str(token_id), "")

    def state(self) -> Dict[str, Any]:
        return {
            "next_token_id": self.next_token_id,
            "user_medals": self.user_medals,
            "medal_data": self.medal_data,
            "token_uris": self.token_uris,
        }

    def restore(self, state: Dict[str, Any]) -> None:
        for key, value in state.items():
            setattr(self, key, value)


class Network:
    """In-process chain hosting the contracts.

    `clock` returns unix seconds; chain days are `now // 86400`. When
    `state_path` is set the full state is written after every transaction
    and read back on start.
    """

    def __init__(self, clock: Callable[[], float] = time.time, operator: str = OPERATOR,
                 state_path: Optional[str] = None):
        self.clock = clock
        self.operator = _addr(operator)
        self.state_path = state_path
        self._lock = threading.RLock()
        self.nonce = 0
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.roles: Dict[str, List[str]] = {
            role: [self.operator] for role in (ADMIN_ROLE, ORACLE_ROLE, SLASHER_ROLE, MINTER_ROLE)
        }
        self.token = ShareToken(self)
        self.treasury = Treasury(self)
        self.staking = StakingLedger(self)
        self.emission = EmissionLedger(self)
        self.medals = MedalLedger(self)
        if state_path and os.path.exists(state_path):
            self.load(state_path)

    def now(self) -> int:
        return int(self.clock())

    def current_day(self) -> int:
        return self.now() // SECONDS_PER_DAY

    def require_role(self, role: str, account: str) -> None:
        if _addr(account) not in self.roles.get(role, []):
            revert(f"AccessControl: account {account} is missing role {role}")

    def grant_role(self, role: str, account: str) -> None:
        with self._lock:
            members = self.roles.setdefault(role, [])
            if _addr(account) not in members:
                members.append(_addr(account))

    def _contracts(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "treasury": self.treasury,
            "staking": self.staking,
            "emission": self.emission,
            "medals": self.medals,
        }

    def _ledger_state(self) -> Dict[str, Any]:
        return {
            "nonce": self.nonce,
            "roles": self.roles,
            **{name: c.state() for name, c in self._contracts().items()},
        }

    def state(self) -> Dict[str, Any]:
        return {"receipts": self.receipts, **self._ledger_state()}

    def restore(self, state: Dict[str, Any]) -> None:
        self.nonce = state["nonce"]
        self.roles = state["roles"]
        if "receipts" in state:
            self.receipts = state["receipts"]
        for name, contract in self._contracts().items():
            contract.restore(state[name])

    def transact(self, method: str, fn: Callable[..., Any], *args) -> Tuple[str, Any]:
        """Run fn as one transaction. Any exception reverts every change.

        Receipts are append-only and stay out of the snapshot.
        """
        with self._lock:
            snapshot = copy.deepcopy(self._ledger_state())
            try:
                result = fn(*args)
            except Exception:
                self.restore(snapshot)
                raise
            self.nonce += 1
            tx_hash = "0x" + hashlib.sha256(f"{self.nonce}:{method}:{args!r}".encode()).hexdigest()
            self.receipts[tx_hash] = {"status": 1, "method": method, "block_time": self.now()}
            if self.state_path:
                self.save(self.state_path)
            return tx_hash, result

    def receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return self.receipts.get(tx_hash)

    def save(self, path: str) -> None:
        tmp = f"{path}.tmp"
        with open(tmp, "w") as f:
            json.dump(self.state(), f)
        os.replace(tmp, path)

    def load(self, path: str) -> None:
        with open(path) as f:
            self.restore(json.load(f))
        logger.info("Loaded chain state from %s (nonce=%d)", path, self.nonce)
