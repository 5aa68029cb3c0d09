"""Agent verification: challenge echo and enrollment-hash checks."""

import hashlib
import hmac
import logging
import time
from typing import Any, Dict, Optional

from senselink.errors import AuthorizationError, ValidationError

logger = logging.getLogger("SenseLink.Verify")


def enrollment_hash(secret: str, agent_id: str, gateway_id: str, enrolled_at: int) -> str:
    message = f"{agent_id}|{gateway_id}|{enrolled_at}"
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def verify_enrollment_hash(
    secret: Optional[str],
    agent_id: str,
    gateway_id: str,
    enrolled_at: int,
    candidate: str,
    expected_gateway_id: str,
) -> bool:
    """Check an enrollment hash issued for this gateway.

    The gateway id must match ours and the HMAC is compared in constant time.
    Without a configured secret nothing verifies.
    """
    if not secret or not isinstance(candidate, str) or not candidate or enrolled_at is None:
        return False
    if gateway_id != expected_gateway_id:
        return False
    expected = enrollment_hash(secret, agent_id, gateway_id, enrolled_at)
    return hmac.compare_digest(expected.encode(), candidate.encode())


def build_verify_response(
    content: Dict[str, Any],
    agent: Dict[str, Any],
    gateway_id: str,
    secret: Optional[str] = None,
) -> Dict[str, Any]:
    """Content of ``verify.response`` for a ``verify.request``.

    When the request carries a ``verification_hash`` (with ``enrolled_at``
    and optionally ``gateway_id``) it is checked against *secret* and the
    reply gains ``enrollment_verified``. A hash that does not verify is an
    error, not a silent downgrade.
    """
    challenge = content.get("challenge")
    if not isinstance(challenge, str) or not challenge:
        raise ValidationError("INVALID_CHALLENGE", "challenge is required")
    if not agent.get("agent_id"):
        raise ValidationError("AGENT_NOT_CONFIGURED", "Agent not configured")

    candidate = content.get("verification_hash") or content.get("enrollment_hash")
    if candidate is not None:
        claimed_gateway = content.get("gateway_id") or gateway_id
        if not verify_enrollment_hash(
            secret, agent["agent_id"], claimed_gateway, content.get("enrolled_at"), candidate, gateway_id
        ):
            logger.warning(f"Enrollment hash rejected for {agent['agent_id']} (gateway {claimed_gateway})")
            raise AuthorizationError("INVALID_ENROLLMENT", "Enrollment hash mismatch")

    logger.info(f"Verified: {agent['agent_id']}")
    body = {
        "challenge": challenge,
        "verified": True,
        "agent": {
            "agent_id": agent["agent_id"],
            "display_name": agent.get("display_name", ""),
            "gateway_id": gateway_id,
            "capabilities": agent.get("capabilities", ["chat"]),
            "status": "online",
        },
        "responded_at": int(time.time()),
    }
    if candidate is not None:
        body["enrollment_verified"] = True
    return body
