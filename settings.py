"""
Runtime settings

Values come from the environment (a local .env file is loaded first).
"""

import json
import os
from dataclasses import dataclass, field
from typing import Dict

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_json(name: str) -> Dict[str, str]:
    raw = os.getenv(name)
    if not raw:
        return {}
    return json.loads(raw)


@dataclass
class Settings:
    database_url: str = os.getenv("DATABASE_URL", "")
    database_name: str = os.getenv("DATABASE_NAME", "")
    mongo_transactions: bool = _env_bool("MONGO_TRANSACTIONS")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    geofence_meters: int = int(os.getenv("GEOFENCE_METERS", 100))
    challenge_period_days: int = int(os.getenv("CHALLENGE_PERIOD_DAYS", 3))
    points_per_donation: int = int(os.getenv("POINTS_PER_DONATION", 10))
    min_exchange_points: int = int(os.getenv("MIN_EXCHANGE_POINTS", 100))

    chain_state_path: str = os.getenv("CHAIN_STATE_PATH", "")
    chain_retry_attempts: int = int(os.getenv("CHAIN_RETRY_ATTEMPTS", 3))
    chain_retry_delay: float = float(os.getenv("CHAIN_RETRY_DELAY", 0.5))
    scheduler_enabled: bool = _env_bool("SCHEDULER_ENABLED", True)
    # shared secret for the payment webhook and manual job triggers; unset disables both
    service_key: str = os.getenv("SERVICE_KEY", "")

    pinata_jwt: str = os.getenv("PINATA_JWT", "")
    pinata_gateway: str = os.getenv("PINATA_GATEWAY", "https://gateway.pinata.cloud/ipfs")
    medal_image_cids: Dict[str, str] = field(default_factory=lambda: _env_json("MEDAL_IMAGE_CIDS"))


settings = Settings()
