"""
SenseLink Pairing Store -- persisted device/agent pairings.

One record per paired (user, device, agent) tuple. Only the SHA-256 hash of
a pairing's bearer token is stored; the raw token exists in memory just long
enough to be handed to the device once.

File format (``<storage_path>/pairings.json``)::

    {
      "pairings": {
        "pair_3f9c0a1b2c3d4e5f": {
          "pairing_id": "pair_3f9c0a1b2c3d4e5f",
          "token_hash": "9b1c...",
          "agent_id": "@kathy:example.org",
          "user_id": "@anna:example.org",
          "device_id": "ios-1",
          "device_name": "Anna's phone",
          "created_at": 1767225600,
          "last_seen_at": 1767229200,
          "senses": {"location": true}
        }
      }
    }
"""

import logging
import os
import threading
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

from senselink.storage import read_json, write_json

logger = logging.getLogger("SenseLink.Pairing")

PAIRINGS_FILE = "pairings.json"


@dataclass
class Pairing:
    """A persistent binding between one user device and one agent."""

    pairing_id: str
    token_hash: str
    agent_id: str
    user_id: str
    device_id: str
    device_name: str = ""
    created_at: int = 0
    last_seen_at: int = 0
    senses: Dict[str, bool] = field(default_factory=dict)

    @property
    def key(self) -> tuple:
        return (self.user_id, self.device_id, self.agent_id)

    def to_dict(self) -> dict:
        return asdict(self)

    def public_dict(self) -> dict:
        """Record without the token hash, for listings and responses."""
        d = self.to_dict()
        d.pop("token_hash", None)
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "Pairing":
        return cls(
            pairing_id=data["pairing_id"],
            token_hash=data["token_hash"],
            agent_id=data.get("agent_id", ""),
            user_id=data.get("user_id", ""),
            device_id=data.get("device_id", ""),
            device_name=data.get("device_name") or data.get("device_id", ""),
            created_at=int(data.get("created_at", 0)),
            last_seen_at=int(data.get("last_seen_at", 0)),
            senses=dict(data.get("senses") or {}),
        )


class PairingStore:
    """In-memory pairing records mirrored to a JSON file.

    The in-memory copy is authoritative: a failed save is logged and retried
    implicitly by the next successful one.
    """

    def __init__(self, path: str):
        self.path = path
        self._pairings: Dict[str, Pairing] = {}
        self._by_hash: Dict[str, str] = {}  # token_hash -> pairing_id
        self._lock = threading.Lock()
        self.load()

    def __len__(self) -> int:
        return len(self._pairings)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def load(self):
        """Load pairings from disk. Missing or corrupt file yields an empty store."""
        with self._lock:
            self._pairings = {}
            self._by_hash = {}
            data = read_json(self.path, fallback=None)
            if data is None:
                return
            records = data.get("pairings") if isinstance(data, dict) else None
            if not isinstance(records, dict):
                logger.warning(f"Ignoring malformed pairings file {self.path}")
                return
            for pairing_id, record in records.items():
                try:
                    pairing = Pairing.from_dict(record)
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning(f"Skipping malformed pairing {pairing_id}: {exc}")
                    continue
                self._index(pairing)
            logger.info(f"Loaded {len(self._pairings)} pairing(s) from {self.path}")

    def save(self) -> bool:
        """Persist all pairings. Returns False (and logs) on failure."""
        with self._lock:
            payload = {"pairings": {pid: p.to_dict() for pid, p in self._pairings.items()}}
        try:
            write_json(self.path, payload)
            return True
        except OSError as exc:
            logger.error(f"Failed to save pairings to {self.path}: {exc}")
            return False

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------
    def _index(self, pairing: Pairing):
        previous = self._by_hash.get(pairing.token_hash)
        if previous and previous != pairing.pairing_id:
            # A hash identifies at most one live pairing
            self._pairings.pop(previous, None)
        self._pairings[pairing.pairing_id] = pairing
        self._by_hash[pairing.token_hash] = pairing.pairing_id

    def add(self, pairing: Pairing):
        with self._lock:
            self._index(pairing)
        self.save()

    def remove(self, pairing_id: str) -> Optional[Pairing]:
        with self._lock:
            pairing = self._pairings.pop(pairing_id, None)
            if pairing:
                self._by_hash.pop(pairing.token_hash, None)
        if pairing:
            self.save()
        return pairing

    def get(self, pairing_id: str) -> Optional[Pairing]:
        return self._pairings.get(pairing_id)

    def find_by_hash(self, token_hash: str) -> Optional[Pairing]:
        pairing_id = self._by_hash.get(token_hash)
        return self._pairings.get(pairing_id) if pairing_id else None

    def find_by_key(self, user_id: str, device_id: str, agent_id: str) -> Optional[Pairing]:
        key = (user_id, device_id, agent_id)
        for pairing in self._pairings.values():
            if pairing.key == key:
                return pairing
        return None

    def list(self, agent_id: Optional[str] = None) -> List[Pairing]:
        return [
            p for p in self._pairings.values()
            if agent_id is None or p.agent_id == agent_id
        ]


def default_store_path(base_dir: str) -> str:
    return os.path.join(base_dir, PAIRINGS_FILE)
