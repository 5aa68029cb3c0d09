"""
SenseLink Allowlist -- add/remove users from the gateway's DM allow-list.

Message::

    {"type": "ai.krill.allowlist",
     "content": {"action": "add", "user_id": "@anna:example.org",
                 "reason": "hire", "contract_id": "c-42"}}

The list lives inside the same file the config patch engine edits, at
``allowlist.key_path`` (default ``channels.matrix.allowFrom``); the sibling
``dmPolicy`` is forced to ``"allowlist"``.
"""

import asyncio
import logging
import os
import re
import time
from typing import Any, Dict, List, Optional

import yaml

from senselink.config_patch import DEFAULT_CONFIG_PATH
from senselink.errors import AuthorizationError, ProtocolError, TransientIOError, ValidationError
from senselink.storage import dump_document, load_document

logger = logging.getLogger("SenseLink.Allowlist")

DEFAULT_KEY_PATH = "channels.matrix.allowFrom"
ACTIONS = ("add", "remove")
_USER_ID_RE = re.compile(r"^@[^:\s]+:\S+$")


def is_valid_user_id(user_id) -> bool:
    return isinstance(user_id, str) and bool(_USER_ID_RE.match(user_id))


class AllowlistManager:
    def __init__(self, config: Optional[dict] = None, config_path: Optional[str] = None,
                 lock: Optional[asyncio.Lock] = None):
        config = config or {}
        self.config_path = os.path.expanduser(config_path or config.get("config_path") or DEFAULT_CONFIG_PATH)
        self.allowed_senders = list(config.get("allowed_senders") or [])
        self.key_path = (config.get("key_path") or DEFAULT_KEY_PATH).split(".")
        self.lock = lock or asyncio.Lock()

    def read_list(self, document: Dict[str, Any]) -> List[str]:
        node: Any = document
        for key in self.key_path:
            if not isinstance(node, dict):
                return []
            node = node.get(key)
        return list(node) if isinstance(node, list) else []

    def write_list(self, document: Dict[str, Any], values: List[str]):
        node = document
        for key in self.key_path[:-1]:
            if not isinstance(node.get(key), dict):
                node[key] = {}
            node = node[key]
        node[self.key_path[-1]] = values
        node["dmPolicy"] = "allowlist"

    async def apply(self, content: Dict[str, Any], sender_id: str) -> Dict[str, Any]:
        """Apply one add/remove. Raises ProtocolError subclasses on failure."""
        async with self.lock:
            return self._apply(content, sender_id)

    def _apply(self, content: Dict[str, Any], sender_id: str) -> Dict[str, Any]:
        action = content.get("action")
        user_id = content.get("user_id", content.get("mxid"))
        logger.info(f"{action} {user_id} from {sender_id} (reason: {content.get('reason') or 'none'})")

        if sender_id not in self.allowed_senders:
            raise AuthorizationError("UNAUTHORIZED_SENDER", f"{sender_id} may not modify the allowlist")
        if not is_valid_user_id(user_id):
            raise ValidationError("INVALID_USER_ID", f"Not a user id: {user_id!r}")
        if action not in ACTIONS:
            raise ValidationError("INVALID_ACTION", f"action must be one of {', '.join(ACTIONS)}")

        try:
            document = load_document(self.config_path)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            raise TransientIOError("CONFIG_READ_ERROR", f"Could not read {self.config_path}: {exc}")

        values = self.read_list(document)
        if action == "add" and user_id not in values:
            values.append(user_id)
        elif action == "remove" and user_id in values:
            values.remove(user_id)
        else:
            logger.info(f"{user_id} already {'present' if action == 'add' else 'absent'}")

        self.write_list(document, values)
        try:
            dump_document(self.config_path, document)
        except OSError as exc:
            raise TransientIOError("CONFIG_WRITE_ERROR", f"Could not write {self.config_path}: {exc}")

        if content.get("contract_id"):
            logger.info(f"Contract {content['contract_id']}: {action} {user_id}")
        return {
            "success": True,
            "action": action,
            "user_id": user_id,
            "allowlist": values,
            "timestamp": int(time.time()),
        }


def error_content(exc: ProtocolError, content: Dict[str, Any]) -> Dict[str, Any]:
    """Failure response carrying the request's action and user id back."""
    return {
        **exc.to_content(),
        "action": content.get("action"),
        "user_id": content.get("user_id", content.get("mxid")),
        "timestamp": int(time.time()),
    }
