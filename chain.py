"""
Client for the external ledgers (emission pool, staking, SHARE token, medals).

All calls are blocking and may fail transiently; those failures are retried
with exponential backoff. Reverts are final and are never retried.
- Global: set_chain(...), get_chain()
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from errors import LedgerUnavailableError
from ledger import Network, format_units
from schemas import MedalTier
from settings import settings

logger = logging.getLogger(__name__)

# Global singleton
_chain: Optional["ChainClient"] = None


class ChainClient:
    def __init__(self, network: Network, attempts: int = None, delay: float = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.network = network
        self.attempts = attempts if attempts is not None else settings.chain_retry_attempts
        self.delay = delay if delay is not None else settings.chain_retry_delay
        self.sleep = sleep

    @property
    def operator(self) -> str:
        return self.network.operator

    def _call(self, what: str, fn: Callable[..., Any], *args) -> Any:
        last_error = None
        for attempt in range(max(1, self.attempts)):
            try:
                return fn(*args)
            except LedgerUnavailableError as e:
                last_error = e
                wait = self.delay * (2 ** attempt)
                logger.warning("%s failed (attempt %d/%d): %s; retrying in %.1fs",
                               what, attempt + 1, self.attempts, e, wait)
                if attempt + 1 < self.attempts:
                    self.sleep(wait)
        raise LedgerUnavailableError(f"{what} failed after {self.attempts} attempts: {last_error}",
                                     retry_after=60)

    def _send(self, method: str, fn: Callable[..., Any], *args) -> Tuple[str, Any]:
        return self._call(method, self.network.transact, method, fn, *args)

    # --- Emission pool ---
    def current_day(self) -> int:
        return self._call("getCurrentDay", self.network.emission.get_current_day)

    def exchange_rate(self) -> int:
        return self._call("exchangeRate", lambda: self.network.emission.exchange_rate)

    def record_points(self, address: str, points: int) -> str:
        tx_hash, _ = self._send("recordPoints", self.network.emission.record_points,
                                self.operator, address, points)
        return tx_hash

    def record_points_batch(self, users: List[str], points: List[int]) -> str:
        tx_hash, _ = self._send("recordPointsBatch", self.network.emission.record_points_batch,
                                self.operator, users, points)
        return tx_hash

    def finalize_day(self, day: int) -> str:
        tx_hash, _ = self._send("finalizeDay", self.network.emission.finalize_day, self.operator, day)
        return tx_hash

    def is_day_finalized(self, day: int) -> bool:
        return self._call("finalized", lambda: str(day) in self.network.emission.finalized)

    def claim(self, address: str, day: int) -> Tuple[str, int]:
        return self._send("claim", self.network.emission.claim, address, day)

    def claimable(self, address: str, day: int) -> int:
        return self._call("getClaimable", self.network.emission.get_claimable, address, day)

    def quote_exchange(self, address: str, points: int) -> int:
        return self._call("quoteExchange", self.network.emission.quote_exchange, address, points)

    def exchange_points(self, address: str, points: int) -> Tuple[str, int]:
        return self._send("exchangePoints", self.network.emission.exchange_points, address, points)

    def point_balance(self, address: str) -> int:
        return self._call("getUserPointBalance", self.network.emission.get_point_balance, address)

    def user_points(self, address: str, day: int) -> int:
        return self._call("getUserPoints", self.network.emission.get_user_points, address, day)

    # --- Staking ---
    def stake(self, address: str, amount: int) -> str:
        tx_hash, _ = self._send("stake", self.network.staking.stake, address, amount)
        return tx_hash

    def unstake(self, address: str, amount: int) -> str:
        tx_hash, _ = self._send("unstake", self.network.staking.unstake, address, amount)
        return tx_hash

    def activate_super_donor(self, address: str) -> str:
        tx_hash, _ = self._send("activateSuperDonor", self.network.staking.activate_super_donor, address)
        return tx_hash

    def is_withdrawal_eligible(self, address: str) -> bool:
        return self._call("isWithdrawalEligible", self.network.staking.is_withdrawal_eligible, address)

    def get_multiplier(self, address: str) -> int:
        return self._call("getMultiplier", self.network.staking.get_multiplier, address)

    def stake_info(self, address: str) -> Dict[str, Any]:
        info = self._call("stakes", self.network.staking.get_stake_info, address)
        return {
            "amount": format_units(info.amount),
            "staked_at": info.staked_at,
            "unlock_time": info.unlock_time,
            "is_super_donor": info.is_super_donor,
            "fraud_strikes": info.fraud_strikes,
        }

    def add_fraud_strike(self, address: str) -> Tuple[str, Optional[int]]:
        return self._send("addFraudStrike", self.network.staking.add_fraud_strike, self.operator, address)

    # --- Token ---
    def token_balance(self, address: str) -> int:
        return self._call("balanceOf", self.network.token.balance_of, address)

    def fund(self, address: str, amount: int) -> str:
        """Transfer tokens from the operator account (faucet / payouts)."""
        tx_hash, _ = self._send("transfer", self.network.token.transfer, self.operator, address, amount)
        return tx_hash

    # --- Medals ---
    def can_mint_medal(self, address: str, tier: MedalTier, first_donation_ts: int,
                       donations: int) -> Tuple[bool, str]:
        return self._call("canMintMedal", self.network.medals.can_mint, address, tier,
                          first_donation_ts, donations)

    def mint_medal(self, address: str, tier: MedalTier, first_donation_ts: int,
                   donations: int) -> Tuple[str, int]:
        return self._send("mint", self.network.medals.mint, self.operator, address, tier,
                          first_donation_ts, donations)

    def set_token_metadata_uri(self, token_id: int, uri: str) -> str:
        tx_hash, _ = self._send("setTokenMetadataURI", self.network.medals.set_token_metadata_uri,
                                self.operator, token_id, uri)
        return tx_hash

    def token_uri(self, token_id: int) -> str:
        return self._call("getStoredTokenURI", self.network.medals.token_uri, token_id)

    def user_medals(self, address: str) -> List[int]:
        return self._call("getUserMedals", self.network.medals.get_user_medals, address)

    def receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return self._call("getTransactionReceipt", self.network.receipt, tx_hash)


def set_chain(client: Optional[ChainClient]) -> None:
    global _chain
    _chain = client


def get_chain() -> ChainClient:
    global _chain
    if _chain is None:
        _chain = ChainClient(Network(state_path=settings.chain_state_path or None))
    return _chain
