"""
SenseLink Auth Gate -- bearer-token policy and pairing lifecycle.

Token format::

    krill_tk_v1_<43 chars of URL-safe base64, 32 random bytes>

Policy:
    1. ``pair.request`` and ``health.ping`` need no token.
    2. Everything else needs a valid inline token whose pairing belongs to
       the sender. Anything less is dropped without a reply, so an unpaired
       sender learns nothing about whether the protocol is even present.
"""

import base64
import hashlib
import logging
import re
import secrets
import time
from dataclasses import dataclass
from typing import Dict, Optional

from senselink.errors import NotFoundError, ValidationError
from senselink.pairing import Pairing, PairingStore

logger = logging.getLogger("SenseLink.Auth")

TOKEN_PREFIX = "krill_tk_v1_"
TOKEN_BYTES = 32
_TOKEN_RE = re.compile(r"^" + re.escape(TOKEN_PREFIX) + r"[A-Za-z0-9_-]{43}$")

# Message names (namespace stripped) that may arrive without a token
AUTH_EXEMPT = frozenset({"pair.request", "health.ping"})


def generate_token() -> str:
    raw = base64.urlsafe_b64encode(secrets.token_bytes(TOKEN_BYTES)).decode().rstrip("=")
    return f"{TOKEN_PREFIX}{raw}"


def generate_pairing_id() -> str:
    return f"pair_{secrets.token_hex(8)}"


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def is_well_formed(token) -> bool:
    return isinstance(token, str) and bool(_TOKEN_RE.match(token))


def requires_auth(name: str) -> bool:
    """Return True unless *name* (namespace stripped) is auth-exempt."""
    return name not in AUTH_EXEMPT


@dataclass
class PairingGrant:
    """Outcome of :meth:`AuthGate.create_pairing`.

    ``token`` is set only when a new pairing was created; an existing
    pairing is confirmed without disclosing anything secret.
    """

    pairing: Pairing
    token: Optional[str] = None

    @property
    def created(self) -> bool:
        return self.token is not None


class AuthGate:
    """Issues, validates and revokes pairing tokens on top of a PairingStore."""

    def __init__(self, store: PairingStore):
        self.store = store

    def validate_token(self, token) -> Optional[Pairing]:
        """Return the live pairing for *token* (bumping ``last_seen_at``), or None."""
        if not is_well_formed(token):
            return None
        pairing = self.store.find_by_hash(hash_token(token))
        if pairing is None:
            return None
        pairing.last_seen_at = int(time.time())
        self.store.save()
        return pairing

    def authenticate(self, inline_auth: Optional[dict], sender_id: str) -> Optional[Pairing]:
        """Validate an inline auth block for *sender_id*. None means unauthenticated."""
        if not inline_auth:
            return None
        token = inline_auth.get("pairing_token")
        if not is_well_formed(token):
            logger.debug(f"Malformed token from {sender_id}")
            return None
        pairing = self.validate_token(token)
        if pairing is None:
            logger.info(f"Unknown pairing token from {sender_id}")
            return None
        if pairing.user_id != sender_id:
            logger.warning(
                f"Token/sender mismatch for {pairing.pairing_id}: "
                f"expected {pairing.user_id}, got {sender_id}"
            )
            return None
        return pairing

    def create_pairing(
        self,
        sender_id: str,
        device_id: str,
        device_name: Optional[str],
        agent_id: str,
        rotate: bool = False,
    ) -> PairingGrant:
        """Pair (sender, device, agent), idempotently.

        An existing pairing for the same tuple is returned as-is with no
        token. With ``rotate=True`` the existing pairing is superseded and a
        fresh token is issued.
        """
        if not device_id or not isinstance(device_id, str):
            raise ValidationError("INVALID_REQUEST", "device_id is required")
        if not agent_id:
            raise ValidationError("AGENT_NOT_CONFIGURED", "Agent not configured")

        existing = self.store.find_by_key(sender_id, device_id, agent_id)
        if existing and not rotate:
            existing.last_seen_at = int(time.time())
            self.store.save()
            logger.info(f"Existing pairing {existing.pairing_id} confirmed for {sender_id}")
            return PairingGrant(pairing=existing)

        if existing:
            self.store.remove(existing.pairing_id)
            logger.info(f"Superseded pairing {existing.pairing_id} for {sender_id}")

        token = generate_token()
        now = int(time.time())
        pairing = Pairing(
            pairing_id=generate_pairing_id(),
            token_hash=hash_token(token),
            agent_id=agent_id,
            user_id=sender_id,
            device_id=device_id,
            device_name=device_name or device_id,
            created_at=now,
            last_seen_at=now,
        )
        self.store.add(pairing)
        logger.info(f"New pairing {pairing.pairing_id} ({sender_id} -> {agent_id})")
        return PairingGrant(pairing=pairing, token=token)

    def revoke_pairing(self, token) -> Optional[Pairing]:
        """Delete the pairing for *token*. Returns it, or None if there was none."""
        if not is_well_formed(token):
            return None
        pairing = self.store.find_by_hash(hash_token(token))
        if pairing is None:
            return None
        self.store.remove(pairing.pairing_id)
        logger.info(f"Pairing revoked: {pairing.pairing_id}")
        return pairing

    def update_senses(self, token, senses: Dict[str, bool]) -> Pairing:
        """Merge *senses* into the permission map of the pairing for *token*."""
        if not isinstance(senses, dict) or not all(isinstance(v, bool) for v in senses.values()):
            raise ValidationError("INVALID_SENSES", "senses must map names to booleans")
        pairing = self.validate_token(token)
        if pairing is None:
            raise NotFoundError("INVALID_TOKEN", "No pairing for that token")
        pairing.senses = {**pairing.senses, **senses}
        self.store.save()
        logger.info(f"Senses updated for {pairing.pairing_id}: {senses}")
        return pairing
