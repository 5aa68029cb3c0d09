"""Tests for senselink.runtime -- wiring and the config checker."""

import asyncio
import json
import logging
from unittest.mock import patch

import yaml

from senselink.dispatcher import ProtocolDispatcher
from senselink.runtime import LOG_FORMAT, attach, main, setup_logging
from senselink.transport import InboundEvent, MemoryTransport


def run(coro):
    return asyncio.run(coro)


def write_config(tmp_path, **overrides):
    config = {
        "gateway_id": "gw-1",
        "storage_path": str(tmp_path / "state"),
        "agent": {"id": "@kathy:example.org", "display_name": "Kathy"},
    }
    config.update(overrides)
    path = tmp_path / "senselink.yaml"
    path.write_text(yaml.safe_dump(config))
    return path, config


class TestSetupLogging:
    def test_basic_config(self):
        with patch("senselink.runtime.logging.basicConfig") as mock_basic:
            setup_logging(logging.DEBUG)
        kwargs = mock_basic.call_args.kwargs
        assert kwargs["level"] == logging.DEBUG
        assert kwargs["format"] == LOG_FORMAT


class TestAttach:
    def test_subscribes_and_routes(self, tmp_path):
        _, config = write_config(tmp_path)
        transport = MemoryTransport()

        async def scenario():
            dispatcher = attach(config, transport)
            ping = json.dumps({"type": "ai.krill.health.ping", "content": {"request_id": "h1"}})
            await transport.deliver(InboundEvent(room_id="!r:x", sender="@anna:x", body=ping))
            return dispatcher

        dispatcher = run(scenario())
        assert isinstance(dispatcher, ProtocolDispatcher)
        types = [json.loads(text)["type"] for _, text in transport.sent]
        assert types == ["ai.krill.health.ack", "ai.krill.health.pong"]

    def test_probe_fn_wired(self, tmp_path):
        _, config = write_config(tmp_path)
        transport = MemoryTransport()

        async def probe():
            return False

        async def scenario():
            attach(config, transport, probe_fn=probe)
            ping = json.dumps({"type": "ai.krill.health.ping", "content": {}})
            await transport.deliver(InboundEvent(room_id="!r:x", sender="@anna:x", body=ping))

        run(scenario())
        pong = json.loads(transport.sent[-1][1])
        assert pong["content"]["status"] == "unresponsive"


class TestMain:
    def test_valid_config(self, tmp_path):
        path, _ = write_config(tmp_path)
        with patch("senselink.runtime.setup_logging"):
            assert main(["--config", str(path)]) == 0

    def test_invalid_config(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("agent: kathy\n")
        with patch("senselink.runtime.setup_logging"):
            assert main(["--config", str(path)]) == 1
