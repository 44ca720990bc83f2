"""
Content-addressed storage for medal metadata and images.

- PinataStore pins through the Pinata HTTP API
- MemoryStore keeps blobs in process (development, tests)
- Global: set_store(...), get_store()
"""

import hashlib
import json
import logging
from typing import Any, Dict, Optional

import requests

from schemas import MedalTier
from settings import settings

logger = logging.getLogger(__name__)

PINATA_API = "https://api.pinata.cloud"

MEDAL_DESCRIPTIONS = {
    MedalTier.BRONZE: "Awarded to donors who have made 20+ food donations over at least 30 days.",
    MedalTier.SILVER: "Awarded to donors who have made 70+ food donations over at least 90 days.",
    MedalTier.GOLD: "Awarded to donors who have made 150+ food donations over at least 180 days.",
    MedalTier.PLATINUM: "Awarded to donors who have made 320+ food donations over at least 365 days.",
}

_store: Optional["ContentStore"] = None


class ContentStore:
    def upload_json(self, obj: Dict[str, Any], name: str = "") -> str:
        raise NotImplementedError

    def upload_file(self, data: bytes, name: str = "") -> str:
        raise NotImplementedError


class PinataStore(ContentStore):
    def __init__(self, jwt: str, base_url: str = PINATA_API, timeout: int = 30):
        self.base = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers["Authorization"] = f"Bearer {jwt}"

    def upload_json(self, obj: Dict[str, Any], name: str = "") -> str:
        r = self.session.post(
            self.base + "/pinning/pinJSONToIPFS",
            json={"pinataContent": obj, "pinataMetadata": {"name": name}},
            timeout=self.timeout,
        )
        r.raise_for_status()
        return r.json()["IpfsHash"]

    def upload_file(self, data: bytes, name: str = "") -> str:
        r = self.session.post(
            self.base + "/pinning/pinFileToIPFS",
            files={"file": (name or "blob", data)},
            data={"pinataMetadata": json.dumps({"name": name})},
            timeout=60,
        )
        r.raise_for_status()
        return r.json()["IpfsHash"]


class MemoryStore(ContentStore):
    def __init__(self):
        self.blobs: Dict[str, bytes] = {}

    def _put(self, data: bytes) -> str:
        cid = "mem" + hashlib.sha256(data).hexdigest()[:43]
        self.blobs[cid] = data
        return cid

    def upload_json(self, obj: Dict[str, Any], name: str = "") -> str:
        return self._put(json.dumps(obj, sort_keys=True).encode())

    def upload_file(self, data: bytes, name: str = "") -> str:
        return self._put(data)

    def get_json(self, cid: str) -> Dict[str, Any]:
        return json.loads(self.blobs[cid])


def medal_metadata(token_id: int, tier: MedalTier, minted_at: int, donations_at_mint: int,
                   owner: str) -> Dict[str, Any]:
    image_cid = settings.medal_image_cids.get(tier.label)
    if not image_cid:
        raise ValueError(f"No image CID configured for tier: {tier.label}")
    title = tier.label.capitalize()
    return {
        "name": f"{title} Medal #{token_id}",
        "description": MEDAL_DESCRIPTIONS[tier],
        "image": f"ipfs://{image_cid}",
        "attributes": [
            {"trait_type": "Tier", "value": title},
            {"trait_type": "Tier Level", "value": int(tier) + 1, "display_type": "number"},
            {"trait_type": "Donations at Mint", "value": donations_at_mint, "display_type": "number"},
            {"trait_type": "Minted At", "value": minted_at, "display_type": "date"},
            {"trait_type": "Original Owner", "value": owner},
        ],
    }


def gateway_url(cid: str) -> str:
    return f"{settings.pinata_gateway.rstrip('/')}/{cid}"


def set_store(store: Optional[ContentStore]) -> None:
    global _store
    _store = store


def get_store() -> ContentStore:
    global _store
    if _store is None:
        if settings.pinata_jwt:
            _store = PinataStore(settings.pinata_jwt)
        else:
            logger.warning("PINATA_JWT not set; medal metadata is kept in memory only")
            _store = MemoryStore()
    return _store
