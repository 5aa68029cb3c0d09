"""
SenseLink runtime wiring.

The host process owns the transport; SenseLink plugs into it::

    from senselink.config import load_config
    from senselink.runtime import attach, setup_logging

    setup_logging()
    config = load_config("senselink.yaml")
    dispatcher = attach(config, my_transport, probe_fn=agent.ping)

``python -m senselink.runtime --config senselink.yaml`` validates a config
file and reports what it would start with.
"""

import argparse
import logging
import sys
from typing import Optional

from senselink import config as cfg
from senselink.config_patch import ConfigPatchEngine, HealthFn, RestartFn
from senselink.dispatcher import ProtocolDispatcher
from senselink.health import HealthResponder, ProbeFn
from senselink.pairing import PairingStore, default_store_path
from senselink.transport import Transport

logger = logging.getLogger("SenseLink")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level=logging.INFO):
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=[logging.StreamHandler()])


def attach(
    config: dict,
    transport: Transport,
    probe_fn: Optional[ProbeFn] = None,
    restart_fn: Optional[RestartFn] = None,
    health_fn: Optional[HealthFn] = None,
) -> ProtocolDispatcher:
    """Build a dispatcher for *config* and subscribe it to *transport*."""
    cfg.log_validation_result(config)
    dispatcher = ProtocolDispatcher(
        config,
        transport,
        patch_engine=ConfigPatchEngine(config.get("config_patch", {}), restart_fn, health_fn),
        health=HealthResponder(config, probe_fn=probe_fn),
    )
    transport.subscribe(dispatcher.handle_event)
    logger.info(
        f"SenseLink attached to {transport.name} transport for agent "
        f"{dispatcher.agent['agent_id'] or '?'} (gateway {dispatcher.gateway_id or '?'})"
    )
    return dispatcher


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="SenseLink config check")
    parser.add_argument("--config", type=str, default="senselink.yaml", help="Path to SenseLink config file")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    config = cfg.load_config(args.config)
    if not cfg.log_validation_result(config, label=args.config):
        return 1

    base_dir = cfg.storage_path(config)
    store = PairingStore(default_store_path(base_dir))
    agent = cfg.agent_info(config)
    logger.info(f"Agent: {agent['agent_id']} ({agent['display_name']})")
    logger.info(f"Namespace: {cfg.namespace(config)}")
    logger.info(f"Storage: {base_dir} ({len(store)} pairing(s))")
    return 0


if __name__ == "__main__":
    sys.exit(main())
