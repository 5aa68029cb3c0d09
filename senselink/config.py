"""SenseLink runtime configuration.

The gateway is configured from a single YAML file::

    gateway_id: gw-home-01
    storage_path: ~/.senselink
    agent:
      id: "@kathy:example.org"
      display_name: Kathy
      capabilities: [chat, location]
    senses:
      location:
        movement_threshold_m: 50
    config_patch:
      config_path: ~/.openclaw/openclaw.json
      allowed_senders: ["@admin-bot:example.org"]
      restart_command: systemctl restart openclaw-gateway
      health_url: http://localhost:18789/api/status

The loaded config stays a plain dict; each component reads its own section
with ``.get()`` defaults. Secrets resolve from the environment first and the
file second, so a config file can be shared without credentials in it.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional, Tuple

import yaml

from senselink.envelope import DEFAULT_NAMESPACE

logger = logging.getLogger("SenseLink.Config")

DEFAULT_STORAGE_PATH = "~/.senselink"

# Map of config key -> environment variable that overrides it
SECRET_ENV_MAP: Dict[str, str] = {
    "gateway_secret": "SENSELINK_GATEWAY_SECRET",
    "access_token": "SENSELINK_ACCESS_TOKEN",
}

REQUIRED_TOP_LEVEL: List[str] = ["gateway_id", "agent"]
REQUIRED_AGENT_KEYS: List[str] = ["id", "display_name"]


def load_config(path: str) -> dict:
    """Load a YAML config file. A missing or empty file yields ``{}``."""
    path = os.path.expanduser(path)
    if not os.path.exists(path):
        logger.warning(f"Config file not found: {path} -- using defaults")
        return {}
    with open(path) as f:
        config = yaml.safe_load(f) or {}
    if not isinstance(config, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    logger.info(f"Loaded configuration for gateway {config.get('gateway_id', '?')}")
    return config


def resolve_secret(key: str, section: Optional[dict] = None) -> Optional[str]:
    """Resolve a secret from its environment variable, then *section*."""
    env_var = SECRET_ENV_MAP.get(key)
    if env_var:
        value = os.getenv(env_var)
        if value:
            logger.debug(f"Resolved {key} from environment ({env_var})")
            return value
    if section and section.get(key):
        return section[key]
    return None


def storage_path(config: dict) -> str:
    """Absolute base directory for all persisted state."""
    return os.path.abspath(os.path.expanduser(config.get("storage_path") or DEFAULT_STORAGE_PATH))


def namespace(config: dict) -> str:
    ns = config.get("namespace") or DEFAULT_NAMESPACE
    return ns if ns.endswith(".") else ns + "."


def agent_info(config: dict) -> Dict[str, Any]:
    """Public agent metadata included in pairing/verify responses."""
    agent = config.get("agent") or {}
    return {
        "agent_id": agent.get("id", ""),
        "display_name": agent.get("display_name", agent.get("id", "")),
        "capabilities": list(agent.get("capabilities") or ["chat"]),
    }


def validate_config(config: dict) -> Tuple[bool, List[str]]:
    """Validate a loaded config dict.

    Returns:
        A ``(is_valid, errors)`` tuple. ``is_valid`` is ``True`` only when
        ``errors`` is empty.
    """
    if not isinstance(config, dict):
        return False, ["Config must be a dict (check YAML syntax)"]

    errors: List[str] = []

    for key in REQUIRED_TOP_LEVEL:
        if key not in config:
            errors.append(f"Missing required top-level key: '{key}'")

    agent = config.get("agent")
    if isinstance(agent, dict):
        for key in REQUIRED_AGENT_KEYS:
            if not agent.get(key):
                errors.append(f"Missing or empty required key: 'agent.{key}'")
    elif "agent" in config:
        errors.append("'agent' must be a mapping (dict), not a scalar")

    patch_cfg = config.get("config_patch")
    if patch_cfg is not None:
        if not isinstance(patch_cfg, dict):
            errors.append("'config_patch' must be a mapping (dict)")
        else:
            senders = patch_cfg.get("allowed_senders", [])
            if not isinstance(senders, list):
                errors.append("'config_patch.allowed_senders' must be a list")
            for key in ("health_timeout_s", "poll_interval_s", "restart_timeout_s"):
                value = patch_cfg.get(key)
                if value is not None and (not isinstance(value, (int, float)) or value <= 0):
                    errors.append(f"'config_patch.{key}' must be a positive number")

    location = ((config.get("senses") or {}).get("location")) or {}
    threshold = location.get("movement_threshold_m")
    if threshold is not None and (not isinstance(threshold, (int, float)) or threshold < 0):
        errors.append("'senses.location.movement_threshold_m' must be a non-negative number")

    return len(errors) == 0, errors


def log_validation_result(config: dict, label: str = "SenseLink config") -> bool:
    """Validate *config* and log each error. Returns True if valid."""
    ok, errors = validate_config(config)
    if ok:
        logger.debug("%s validation passed", label)
    else:
        for msg in errors:
            logger.error("%s validation error: %s", label, msg)
    return ok
