"""
SenseLink Protocol Dispatcher.

Every inbound transport event passes through :meth:`ProtocolDispatcher.handle_event`:

    1. Classify the body. Ordinary chat marks the agent active and passes through.
    2. Blank the event so nothing downstream (the agent included) sees protocol JSON.
    3. Resolve a route by exact name, then by family prefix (``sense.``).
       Unrouted names are swallowed.
    4. Authenticate unless the name is exempt. Failures are dropped without a reply.
    5. Run the handler. A ``ProtocolError`` becomes an error payload of the
       route's response type; anything else becomes ``HANDLER_ERROR``.

Config patches and allowlist edits run as background tasks so a
restart-and-poll cycle never stalls the event stream.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from senselink import config as cfg
from senselink.allowlist import AllowlistManager, error_content
from senselink.auth import AuthGate, hash_token, is_well_formed, requires_auth
from senselink.config_patch import ConfigPatchEngine
from senselink.envelope import ProtocolMessage, build_envelope, encode
from senselink.errors import NotFoundError, ProtocolError, ValidationError
from senselink.health import HealthResponder
from senselink.pairing import Pairing, PairingStore, default_store_path
from senselink.senses import SensesRouter
from senselink.senses.location import GeofenceEvent
from senselink.transport import InboundEvent, Transport
from senselink.verify import build_verify_response

logger = logging.getLogger("SenseLink.Dispatcher")

# Families whose unrouted members are expected traffic, not anomalies
QUIET_FAMILIES = ("pair.", "senses.")


@dataclass
class Request:
    message: ProtocolMessage
    event: InboundEvent
    pairing: Optional[Pairing] = None

    @property
    def content(self) -> Dict[str, Any]:
        return self.message.content

    @property
    def token(self) -> Optional[str]:
        return (self.message.auth or {}).get("pairing_token")


@dataclass
class DispatchResult:
    """What the dispatcher did with one inbound event."""

    protocol: bool
    name: Optional[str] = None
    handled: bool = False
    dropped: bool = False
    responses: List[Dict[str, Any]] = field(default_factory=list)
    agent_messages: List[str] = field(default_factory=list)
    events: List[GeofenceEvent] = field(default_factory=list)


HandlerFn = Callable[[Request, DispatchResult], Awaitable[None]]


def welcome_message(pairing: Pairing, platform: Optional[str] = None) -> str:
    """Agent-facing announcement of a freshly completed pairing."""
    name = pairing.user_id.split(":", 1)[0].lstrip("@") or pairing.user_id
    when = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
    return (
        "🦐 **New Krill Connection!**\n\n"
        f"**{name}** just paired with you via Krill App.\n\n"
        f"• **User ID:** {pairing.user_id}\n"
        f"• **Device:** {pairing.device_name or pairing.device_id}\n"
        f"• **Platform:** {platform or 'unknown'}\n"
        f"• **Time:** {when}\n\n"
        "Say hello and introduce yourself! 👋"
    )


class ProtocolDispatcher:
    """Classifies inbound events and routes protocol messages to their handlers.

    Components not passed in are built from *config*.
    """

    def __init__(
        self,
        config: dict,
        transport: Transport,
        store: Optional[PairingStore] = None,
        senses: Optional[SensesRouter] = None,
        patch_engine: Optional[ConfigPatchEngine] = None,
        allowlist: Optional[AllowlistManager] = None,
        health: Optional[HealthResponder] = None,
    ):
        self.config = config
        self.transport = transport
        self.namespace = cfg.namespace(config)
        self.agent = cfg.agent_info(config)
        self.gateway_id = config.get("gateway_id", "")
        base_dir = cfg.storage_path(config)

        self.store = store or PairingStore(default_store_path(base_dir))
        self.auth = AuthGate(self.store)
        self.senses = senses or SensesRouter(config.get("senses", {}), base_dir, self.namespace)
        self.patch_engine = patch_engine or ConfigPatchEngine(config.get("config_patch", {}))
        self.allowlist = allowlist or AllowlistManager(
            config.get("allowlist", {}),
            config_path=self.patch_engine.config_path,
            lock=self.patch_engine.lock,
        )
        self.health = health or HealthResponder(config)

        self._routes: Dict[str, Tuple[HandlerFn, Optional[str]]] = {}
        self._prefix_routes: List[Tuple[str, HandlerFn, Optional[str]]] = []
        self._tasks: Set[asyncio.Task] = set()
        self._register_defaults()

    # ------------------------------------------------------------------
    # Routing table
    # ------------------------------------------------------------------
    def register(self, name: str, handler: HandlerFn, response: Optional[str] = None):
        """Route *name* to *handler*; errors are reported as *response* (None = silent)."""
        self._routes[name] = (handler, response)

    def register_prefix(self, prefix: str, handler: HandlerFn, response: Optional[str] = None):
        self._prefix_routes.append((prefix, handler, response))

    def _register_defaults(self):
        self.register("pair.request", self._on_pair_request, "pair.response")
        self.register("pair.revoke", self._on_pair_revoke, "pair.revoked")
        self.register("pair.complete", self._on_pair_complete)
        self.register("senses.update", self._on_senses_update, "senses.updated")
        self.register("verify.request", self._on_verify, "verify.response")
        self.register("health.ping", self._on_health_ping, "health.pong")
        self.register("config.update", self._on_config_update, "config.update.result")
        self.register("allowlist", self._on_allowlist, "allowlist.response")
        self.register_prefix("sense.", self._on_sense)

    def resolve(self, name: str) -> Optional[Tuple[HandlerFn, Optional[str]]]:
        if name in self._routes:
            return self._routes[name]
        for prefix, handler, response in self._prefix_routes:
            if name.startswith(prefix):
                return handler, response
        return None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def classify(self, text: str) -> Optional[ProtocolMessage]:
        return ProtocolMessage.parse(text, self.namespace)

    async def handle_event(self, event: InboundEvent) -> DispatchResult:
        message = self.classify(event.body)
        if message is None:
            self.health.mark_activity()
            return DispatchResult(protocol=False)

        event.blank()
        name = message.name
        result = DispatchResult(protocol=True, name=name)

        route = self.resolve(name)
        if route is None:
            if name.startswith(QUIET_FAMILIES):
                logger.debug(f"Ignoring {name} from {event.sender}")
            else:
                logger.info(f"Swallowed unknown protocol type {message.type} from {event.sender}")
            return result

        pairing = None
        if requires_auth(name):
            pairing = self.auth.authenticate(message.auth, event.sender)
            if pairing is None:
                logger.info(f"Dropped unauthenticated {name} from {event.sender}")
                result.dropped = True
                return result

        handler, response = route
        request = Request(message=message, event=event, pairing=pairing)
        try:
            await handler(request, result)
        except ProtocolError as exc:
            logger.warning(f"{name} from {event.sender} failed: {exc.code} {exc.message}")
            if response:
                await self.respond(request, result, response, exc.to_content())
        except Exception as exc:
            logger.error("Handler error for %s: %s", name, exc, exc_info=True)
            if response:
                await self.respond(request, result, response, {
                    "success": False, "error": "HANDLER_ERROR", "message": str(exc),
                })
        result.handled = True
        return result

    async def respond(self, request: Request, result: DispatchResult, name: str, content: Dict[str, Any]):
        envelope = await self.send(request.event.room_id, name, content)
        result.responses.append(envelope)

    async def send(self, room_id: str, name: str, content: Dict[str, Any]) -> Dict[str, Any]:
        envelope = build_envelope(self.namespace, name, content)
        if not await self.transport.send(room_id, encode(envelope)):
            logger.warning(f"Transport refused {name} to {room_id}")
        return envelope

    async def inject(self, room_id: str, text: str, result: DispatchResult):
        await self.transport.inject(room_id, text)
        result.agent_messages.append(text)

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------
    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self):
        """Wait for all outstanding background work."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    def _agent_block(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent["agent_id"],
            "display_name": self.agent["display_name"],
            "capabilities": self.agent["capabilities"],
        }

    async def _on_pair_request(self, req: Request, result: DispatchResult):
        content = req.content
        grant = self.auth.create_pairing(
            req.event.sender,
            content.get("device_id"),
            content.get("device_name"),
            self.agent["agent_id"],
            rotate=content.get("rotate") is True,
        )
        body = {
            "success": True,
            "pairing_id": grant.pairing.pairing_id,
            "agent": self._agent_block(),
            "created_at": grant.pairing.created_at,
        }
        if grant.created:
            body["pairing_token"] = grant.token
            body["message"] = "Paired"
        else:
            body["message"] = "Already paired"
        await self.respond(req, result, "pair.response", body)

    async def _on_pair_revoke(self, req: Request, result: DispatchResult):
        token = req.content.get("pairing_token") or req.token
        target = self.store.find_by_hash(hash_token(token)) if is_well_formed(token) else None
        if target is None or target.user_id != req.event.sender:
            raise NotFoundError("PAIRING_NOT_FOUND", "No pairing for that token")
        self.auth.revoke_pairing(token)
        await self.respond(req, result, "pair.revoked", {
            "success": True,
            "revoked": True,
            "pairing_id": target.pairing_id,
        })

    async def _on_pair_complete(self, req: Request, result: DispatchResult):
        platform = req.content.get("platform")
        text = welcome_message(req.pairing, platform if isinstance(platform, str) else None)
        logger.info(f"Pairing {req.pairing.pairing_id} completed by {req.event.sender}")
        await self.inject(req.event.room_id, text, result)

    async def _on_senses_update(self, req: Request, result: DispatchResult):
        senses = req.content.get("senses")
        if not isinstance(senses, dict):
            raise ValidationError("INVALID_SENSES", "senses must be an object")
        pairing = self.auth.update_senses(req.token, senses)
        await self.respond(req, result, "senses.updated", {"success": True, "senses": dict(pairing.senses)})

    async def _on_verify(self, req: Request, result: DispatchResult):
        secret = cfg.resolve_secret("gateway_secret", self.config)
        body = build_verify_response(req.content, self.agent, self.gateway_id, secret=secret)
        await self.respond(req, result, "verify.response", body)

    async def _on_health_ping(self, req: Request, result: DispatchResult):
        await self.respond(req, result, "health.ack", self.health.build_ack(req.content))
        pong = await self.health.build_pong(req.content)
        await self.respond(req, result, "health.pong", pong)

    async def _on_sense(self, req: Request, result: DispatchResult):
        outcome = await self.senses.handle(req.message.name, req.content, req.pairing)
        result.events.extend(outcome.events)
        for text in outcome.agent_messages:
            await self.inject(req.event.room_id, text, result)

    async def _on_config_update(self, req: Request, result: DispatchResult):
        request_id = req.content.get("request_id") or req.event.event_id
        self._spawn(self._run_config_update(req, request_id))

    async def _run_config_update(self, req: Request, request_id: str):
        try:
            outcome = await self.patch_engine.apply(req.content, req.event.sender, request_id)
            content = outcome.to_content()
        except Exception as exc:
            logger.error("Config update %s crashed: %s", request_id, exc, exc_info=True)
            content = {"request_id": request_id, "success": False, "error": "HANDLER_ERROR", "message": str(exc)}
        await self.send(req.event.room_id, "config.update.result", content)

    async def _on_allowlist(self, req: Request, result: DispatchResult):
        self._spawn(self._run_allowlist(req))

    async def _run_allowlist(self, req: Request):
        try:
            content = await self.allowlist.apply(req.content, req.event.sender)
        except ProtocolError as exc:
            logger.warning(f"Allowlist request from {req.event.sender} failed: {exc.code}")
            content = error_content(exc, req.content)
        except Exception as exc:
            logger.error("Allowlist request crashed: %s", exc, exc_info=True)
            content = {"success": False, "error": "HANDLER_ERROR", "message": str(exc)}
        await self.send(req.event.room_id, "allowlist.response", content)
