"""
SenseLink Senses Router.

Routes ``sense.<kind>`` messages to the per-agent handler for that kind.
Sense data is persisted, never forwarded raw; the only agent-visible output
is a derived message (geofence transition, wake-word query) returned in the
:class:`SenseOutcome`.

A pairing must have the sense switched on (``senses.update``) before its
data is accepted.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from senselink.envelope import DEFAULT_NAMESPACE
from senselink.pairing import Pairing
from senselink.senses.audio import AudioSense
from senselink.senses.camera import CameraSense
from senselink.senses.location import GeofenceEvent, LocationSense

logger = logging.getLogger("SenseLink.Senses")

SENSE_KINDS = ("location", "audio", "camera")


def agent_dir_name(agent_id: str) -> str:
    """Filesystem-safe directory name for an agent id (``@kathy:x.org`` -> ``_kathy_x.org``)."""
    return re.sub(r"[^A-Za-z0-9._-]", "_", agent_id) or "_"


@dataclass
class SenseOutcome:
    agent_messages: List[str] = field(default_factory=list)
    events: List[GeofenceEvent] = field(default_factory=list)


class AgentSenses:
    """All sense state for one agent."""

    def __init__(self, base_dir: str, config: dict, namespace: str = DEFAULT_NAMESPACE):
        self.base_dir = base_dir
        self.location = LocationSense(base_dir, config.get("location", {}))
        self.audio = AudioSense(base_dir, config.get("audio", {}))
        self.camera = CameraSense(base_dir, config.get("camera", {}), sense_key=f"{namespace}sense")


class SensesRouter:
    def __init__(self, senses_config: Optional[dict], storage_dir: str, namespace: str = DEFAULT_NAMESPACE):
        self.config = senses_config or {}
        self.root = os.path.join(storage_dir, "senses")
        self.namespace = namespace
        self._agents: Dict[str, AgentSenses] = {}

    def for_agent(self, agent_id: str) -> AgentSenses:
        if agent_id not in self._agents:
            self._agents[agent_id] = AgentSenses(
                os.path.join(self.root, agent_dir_name(agent_id)), self.config, self.namespace
            )
        return self._agents[agent_id]

    async def handle(self, name: str, content: dict, pairing: Pairing) -> SenseOutcome:
        """Handle ``sense.<kind>`` for *pairing*. Raises ValidationError on bad payloads."""
        kind = name.split(".", 1)[1] if "." in name else ""
        outcome = SenseOutcome()
        if kind not in SENSE_KINDS:
            logger.warning(f"Unknown sense type: {kind!r}")
            return outcome
        if not pairing.senses.get(kind):
            logger.info(f"Sense {kind} not enabled for {pairing.pairing_id}, ignoring")
            return outcome

        senses = self.for_agent(pairing.agent_id)
        if kind == "location":
            result = await senses.location.handle(content)
            outcome.events.extend(result.events)
            outcome.agent_messages.extend(e.describe() for e in result.events)
        elif kind == "audio":
            message = await senses.audio.handle(content)
            if message:
                outcome.agent_messages.append(message)
        else:
            await senses.camera.handle(content)
        return outcome


__all__ = [
    "AgentSenses",
    "SenseOutcome",
    "SensesRouter",
    "SENSE_KINDS",
    "agent_dir_name",
]
