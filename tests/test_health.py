"""Tests for senselink.health -- ack/pong liveness responses."""

import asyncio

from senselink import __version__
from senselink.health import HealthResponder

CONFIG = {"gateway_id": "gw-1", "agent": {"id": "@kathy:example.org"}, "health": {"probe_timeout_s": 0.05}}


def run(coro):
    return asyncio.run(coro)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


# =====================================================================
# HealthResponder.build_ack
# =====================================================================
class TestAck:
    def test_ack_fields(self):
        ack = HealthResponder(CONFIG).build_ack({"request_id": "req-1"})
        assert ack["request_id"] == "req-1"
        assert ack["agent_id"] == "@kathy:example.org"
        assert ack["gateway_id"] == "gw-1"
        assert isinstance(ack["timestamp"], int)


# =====================================================================
# HealthResponder.build_pong
# =====================================================================
class TestPong:
    def test_no_probe_assumed_healthy(self):
        pong = run(HealthResponder(CONFIG).build_pong({"request_id": "r"}))
        assert pong["status"] == "online"
        assert pong["llm_status"] == "ok"
        assert pong["version"] == __version__
        for key in ("load", "uptime_seconds", "timestamp", "llm_latency_ms"):
            assert key in pong

    def test_probe_success(self):
        async def probe():
            return True

        pong = run(HealthResponder(CONFIG, probe_fn=probe).build_pong({}))
        assert pong["status"] == "online"

    def test_probe_false_is_unresponsive(self):
        async def probe():
            return False

        pong = run(HealthResponder(CONFIG, probe_fn=probe).build_pong({}))
        assert pong["status"] == "unresponsive"
        assert pong["llm_status"] == "error"

    def test_probe_exception_is_unresponsive(self):
        async def probe():
            raise ConnectionError("model down")

        pong = run(HealthResponder(CONFIG, probe_fn=probe).build_pong({}))
        assert pong["llm_status"] == "error"

    def test_probe_timeout(self):
        async def probe():
            await asyncio.sleep(1)
            return True

        pong = run(HealthResponder(CONFIG, probe_fn=probe).build_pong({}))
        assert pong["status"] == "unresponsive"
        assert pong["llm_status"] == "timeout"


# =====================================================================
# HealthResponder -- activity-based skipping
# =====================================================================
class TestSkipping:
    def _counting_probe(self, calls):
        async def probe():
            calls.append(1)
            return False
        return probe

    def test_recent_activity_skips_probe(self):
        calls = []
        responder = HealthResponder(CONFIG, probe_fn=self._counting_probe(calls))
        responder.mark_activity()
        pong = run(responder.build_pong({}))
        assert calls == []
        assert pong["status"] == "online"
        assert pong["llm_latency_ms"] == 0

    def test_skip_flag(self):
        calls = []
        responder = HealthResponder(CONFIG, probe_fn=self._counting_probe(calls))
        run(responder.build_pong({"skip_llm_test": True}))
        assert calls == []

    def test_grace_period_expires(self):
        calls = []
        clock = FakeClock()
        responder = HealthResponder(CONFIG, probe_fn=self._counting_probe(calls), clock=clock)
        responder.mark_activity()
        clock.now += 299
        assert responder.recently_active()
        clock.now += 2
        assert not responder.recently_active()
        run(responder.build_pong({}))
        assert calls == [1]

    def test_uptime(self):
        clock = FakeClock()
        responder = HealthResponder(CONFIG, clock=clock)
        clock.now += 42.7
        assert responder.uptime_seconds == 42
