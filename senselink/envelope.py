"""
SenseLink Protocol Envelope.

Protocol messages travel as plain JSON bodies of ordinary chat messages::

    {
      "type": "ai.krill.pair.request",
      "content": {"device_id": "ios-1", "device_name": "Phone"},
      "ai.krill.auth": {"pairing_token": "krill_tk_v1_..."}
    }

A body is a protocol message iff it parses as a JSON object whose ``type``
starts with the reserved namespace prefix. Everything else is ordinary chat
and passes through to the agent untouched.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

DEFAULT_NAMESPACE = "ai.krill."


@dataclass
class ProtocolMessage:
    """Parsed protocol envelope.

    Attributes:
        type:       Full namespaced type, e.g. ``ai.krill.sense.location``.
        content:    Message payload (always a dict).
        auth:       Inline auth block, if the sender attached one.
        namespace:  Namespace prefix the type was matched against.
    """

    type: str
    content: Dict[str, Any] = field(default_factory=dict)
    auth: Optional[Dict[str, Any]] = None
    namespace: str = DEFAULT_NAMESPACE

    @property
    def name(self) -> str:
        """Type with the namespace stripped (``pair.request``)."""
        return self.type[len(self.namespace):]

    @property
    def category(self) -> str:
        """First segment of :attr:`name` (``pair``, ``sense``, ...)."""
        return self.name.split(".", 1)[0]

    @classmethod
    def parse(cls, text: str, namespace: str = DEFAULT_NAMESPACE) -> Optional[ProtocolMessage]:
        """Parse *text* as a protocol envelope, or return None for ordinary chat."""
        if not text or not isinstance(text, str):
            return None
        # Cheap reject before paying for a JSON parse
        if not text.lstrip().startswith("{"):
            return None
        try:
            data = json.loads(text)
        except (ValueError, RecursionError):
            return None
        if not isinstance(data, dict):
            return None

        msg_type = data.get("type")
        if not isinstance(msg_type, str) or not msg_type.startswith(namespace):
            return None

        content = data.get("content")
        auth = data.get(f"{namespace}auth")
        return cls(
            type=msg_type,
            content=content if isinstance(content, dict) else {},
            auth=auth if isinstance(auth, dict) else None,
            namespace=namespace,
        )


def build_envelope(namespace: str, name: str, content: Dict[str, Any]) -> Dict[str, Any]:
    """Create an outbound envelope dict for ``<namespace><name>``."""
    return {"type": f"{namespace}{name}", "content": content}


def encode(envelope: Dict[str, Any]) -> str:
    """Serialise an envelope to the compact JSON body sent over the transport."""
    return json.dumps(envelope, separators=(",", ":"), default=str)
