"""
SenseLink Health Responder -- answers ``health.ping`` liveness probes.

A ping gets two replies: ``health.ack`` straight away, proving the process
is scheduling at all, then ``health.pong`` once the reasoning path has been
checked. The check is skipped when genuine (non-protocol) traffic was seen
within the grace period, or when the prober asks for ``skip_llm_test``.

Config::

    health:
      grace_period_s: 300
      probe_timeout_s: 10
"""

import asyncio
import logging
import os
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from senselink import __version__

logger = logging.getLogger("SenseLink.Health")

DEFAULT_GRACE_PERIOD_S = 300.0
DEFAULT_PROBE_TIMEOUT_S = 10.0

ProbeFn = Callable[[], Awaitable[bool]]


def system_load() -> Optional[float]:
    try:
        return round(os.getloadavg()[0], 2)
    except (AttributeError, OSError):
        return None


class HealthResponder:
    """Tracks agent activity and builds ack/pong payloads.

    Args:
        config: Full SenseLink config dict (reads ``health``, ``agent``, ``gateway_id``).
        probe_fn: Async callable exercising the agent's reasoning path.
            Without one the path is assumed healthy.
        clock: Monotonic time source, replaceable in tests.
    """

    def __init__(self, config: dict, probe_fn: Optional[ProbeFn] = None, clock=time.monotonic):
        health_cfg = config.get("health", {})
        self.grace_period = float(health_cfg.get("grace_period_s", DEFAULT_GRACE_PERIOD_S))
        self.probe_timeout = float(health_cfg.get("probe_timeout_s", DEFAULT_PROBE_TIMEOUT_S))
        self.agent_id = (config.get("agent") or {}).get("id", "")
        self.gateway_id = config.get("gateway_id", "")
        self._probe_fn = probe_fn
        self._clock = clock
        self._started = clock()
        self._last_activity: Optional[float] = None

    def mark_activity(self):
        """Record genuine agent traffic (any non-protocol message)."""
        self._last_activity = self._clock()

    def recently_active(self) -> bool:
        if self._last_activity is None:
            return False
        return (self._clock() - self._last_activity) < self.grace_period

    @property
    def uptime_seconds(self) -> int:
        return int(self._clock() - self._started)

    def build_ack(self, content: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "request_id": content.get("request_id"),
            "agent_id": self.agent_id,
            "gateway_id": self.gateway_id,
            "timestamp": int(time.time() * 1000),
        }

    async def check_reasoning(self) -> tuple:
        """Run the probe. Returns ``(llm_status, latency_ms)``."""
        if self._probe_fn is None:
            return "ok", 0
        started = time.perf_counter()
        try:
            ok = await asyncio.wait_for(self._probe_fn(), timeout=self.probe_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Reasoning probe timed out after {self.probe_timeout}s")
            return "timeout", int(self.probe_timeout * 1000)
        except Exception as exc:
            logger.warning(f"Reasoning probe failed: {exc}")
            return "error", int((time.perf_counter() - started) * 1000)
        latency = int((time.perf_counter() - started) * 1000)
        return ("ok" if ok else "error"), latency

    async def build_pong(self, content: Dict[str, Any]) -> Dict[str, Any]:
        if content.get("skip_llm_test") or self.recently_active():
            logger.debug("Skipping reasoning probe (recent activity)")
            llm_status, latency = "ok", 0
        else:
            llm_status, latency = await self.check_reasoning()

        status = "online" if llm_status == "ok" else "unresponsive"
        logger.info(f"Health {content.get('request_id')}: {status} (llm={llm_status}, {latency}ms)")
        return {
            "request_id": content.get("request_id"),
            "agent_id": self.agent_id,
            "gateway_id": self.gateway_id,
            "status": status,
            "llm_status": llm_status,
            "llm_latency_ms": latency,
            "load": system_load(),
            "uptime_seconds": self.uptime_seconds,
            "version": __version__,
            "timestamp": int(time.time() * 1000),
        }
