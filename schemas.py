"""
Karma Settlement Schemas

Each class corresponds to a MongoDB collection (lowercased class name).
"""
from datetime import datetime
from enum import Enum, IntEnum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class DonationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


class KarmaKind(str, Enum):
    GRANT_PENDING = "grant-pending"
    CONFIRM = "confirm"
    CANCEL = "cancel"
    EXCHANGE = "exchange"
    BONUS = "bonus"
    PENALTY = "penalty"


class MedalTier(IntEnum):
    BRONZE = 0
    SILVER = 1
    GOLD = 2
    PLATINUM = 3

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: str) -> "MedalTier":
        return cls[value.upper()]


class GeoPoint(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class Actor(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: Optional[str] = None
    wallet_address: Optional[str] = Field(None, description="Linked on-chain address")
    confirmed_points: int = Field(0, ge=0)
    pending_points: int = Field(0, ge=0)
    fraud_strikes: int = Field(0, ge=0, le=255)
    strikes_on_chain: int = Field(0, ge=0, description="Strikes already mirrored on the staking ledger")
    first_confirmed_at: Optional[datetime] = None
    confirmed_donations: int = 0
    medals: Dict[str, Dict] = {}

class Donation(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    claimant_id: str
    counterparty_id: Optional[str] = None
    location: GeoPoint
    confirm_location: Optional[GeoPoint] = None
    description: str
    photo_url: Optional[str] = None
    status: DonationStatus = DonationStatus.PENDING
    auto_confirmed: bool = False
    points_awarded: int = Field(..., ge=0)
    dispute_deadline: datetime
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

class KarmaTransaction(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    actor_id: str
    amount: int
    kind: KarmaKind
    reference_id: Optional[str] = None
    description: str = ""
    created_at: datetime

class DailyPoints(BaseModel):
    actor_id: str
    day: str = Field(..., description="UTC calendar day, YYYY-MM-DD")
    points: int = 0
    synced: bool = False
    submit_attempts: int = 0

class Report(BaseModel):
    reporter_id: str
    reported_actor_id: str
    donation_id: str
    reason: str
    status: str = Field("pending", description="pending, reviewed, resolved, dismissed")

class ExchangeRequest(BaseModel):
    actor_id: str
    karma_amount: int
    token_amount: str = Field(..., description="Decimal token amount")
    status: str = Field("pending", description="pending, completed, failed")
    tx_hash: Optional[str] = None
    error: Optional[str] = None

class Contribution(BaseModel):
    actor_id: str
    payment_id: str
    amount_cents: int = Field(..., gt=0)
    currency: str
    method: str = Field(..., description="stripe, crypto")
    bonus_points: int = 0
    status: str = "completed"

class Medal(BaseModel):
    actor_id: str
    tier: str
    token_id: int
    tx_hash: str
    metadata_uri: Optional[str] = None
