"""
SenseLink Config Patch Engine -- hot-patch a gateway config with rollback.

One ``config.update`` request runs the cycle::

    IDLE -> PATCHING -> RESTARTING -> HEALTH_CHECKING -> COMMITTED
                                          |
                                          v
                                     ROLLING_BACK -> ROLLED_BACK | FAILED

``DENIED`` and ``INVALID`` end a request before anything is touched. A
``FAILED`` outcome after a rollback is the one case that leaves the gateway
possibly down, and it is always reported with ``critical: true``.

Config::

    config_patch:
      config_path: ~/.openclaw/openclaw.json
      allowed_senders: ["@admin-bot:example.org"]
      restart_command: systemctl restart openclaw-gateway
      restart_timeout_s: 30
      health_url: http://localhost:18789/api/status
      health_timeout_s: 30
      poll_interval_s: 2

Cycles are serialized by an ``asyncio.Lock`` shared with the allowlist
handler, since both rewrite the same file.
"""

import asyncio
import copy
import logging
import os
import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import yaml

from senselink.errors import CriticalRecoveryFailure
from senselink.storage import atomic_write_bytes, dump_document, load_document

logger = logging.getLogger("SenseLink.ConfigPatch")

DEFAULT_CONFIG_PATH = "~/.openclaw/openclaw.json"
DEFAULT_RESTART_COMMAND = "systemctl restart openclaw-gateway"
DEFAULT_HEALTH_URL = "http://localhost:18789/api/status"
DEFAULT_RESTART_TIMEOUT_S = 30.0
DEFAULT_HEALTH_TIMEOUT_S = 30.0
DEFAULT_POLL_INTERVAL_S = 2.0
HEALTH_REQUEST_TIMEOUT_S = 5.0


class PatchState(str, Enum):
    IDLE = "idle"
    PATCHING = "patching"
    RESTARTING = "restarting"
    HEALTH_CHECKING = "health_checking"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    DENIED = "denied"
    INVALID = "invalid"


@dataclass
class PatchResult:
    request_id: str
    state: PatchState
    message: str
    error: Optional[str] = None
    critical: bool = False

    @property
    def success(self) -> bool:
        return self.state is PatchState.COMMITTED

    def to_content(self) -> Dict[str, Any]:
        content = {
            "request_id": self.request_id,
            "success": self.success,
            "state": self.state.value,
            "message": self.message,
            "timestamp": int(time.time()),
        }
        if self.error:
            content["error"] = self.error
        if self.critical:
            content["critical"] = True
        return content


def deep_merge(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Merge *patch* over *base* without mutating either.

    Nested dicts merge recursively; everything else in *patch*, lists
    included, replaces the value in *base* wholesale.
    """
    result = copy.deepcopy(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


class ConfigBackup:
    """Byte-exact snapshot of a file, or a record that it did not exist."""

    def __init__(self, config_path: str, backup_path: Optional[str]):
        self.config_path = config_path
        self.backup_path = backup_path

    @property
    def existed(self) -> bool:
        return self.backup_path is not None

    @classmethod
    def take(cls, config_path: str) -> "ConfigBackup":
        if not os.path.exists(config_path):
            return cls(config_path, None)
        backup_path = f"{config_path}.bak.{int(time.time() * 1000)}"
        with open(config_path, "rb") as f:
            atomic_write_bytes(backup_path, f.read())
        logger.info(f"Backed up {config_path} -> {backup_path}")
        return cls(config_path, backup_path)

    def restore(self):
        """Put the original bytes back (or remove a file that did not exist)."""
        if self.backup_path is None:
            if os.path.exists(self.config_path):
                os.remove(self.config_path)
            return
        with open(self.backup_path, "rb") as f:
            atomic_write_bytes(self.config_path, f.read())
        os.remove(self.backup_path)
        logger.info(f"Restored {self.config_path} from backup")

    def discard(self):
        if self.backup_path and os.path.exists(self.backup_path):
            os.remove(self.backup_path)


RestartFn = Callable[[], Awaitable[bool]]
HealthFn = Callable[[], Awaitable[bool]]


class ConfigPatchEngine:
    """Applies ``config.update`` patches with backup, restart and health-gated rollback.

    ``restart_fn`` and ``health_fn`` replace the restart command and the HTTP
    health probe; both are async callables returning True on success.
    """

    def __init__(
        self,
        config: Optional[dict] = None,
        restart_fn: Optional[RestartFn] = None,
        health_fn: Optional[HealthFn] = None,
        lock: Optional[asyncio.Lock] = None,
    ):
        config = config or {}
        self.config_path = os.path.expanduser(config.get("config_path") or DEFAULT_CONFIG_PATH)
        self.allowed_senders = list(config.get("allowed_senders") or [])
        self.restart_command = config.get("restart_command") or DEFAULT_RESTART_COMMAND
        self.restart_timeout = float(config.get("restart_timeout_s", DEFAULT_RESTART_TIMEOUT_S))
        self.health_url = config.get("health_url") or DEFAULT_HEALTH_URL
        self.health_timeout = float(config.get("health_timeout_s", DEFAULT_HEALTH_TIMEOUT_S))
        self.poll_interval = float(config.get("poll_interval_s", DEFAULT_POLL_INTERVAL_S))
        self._restart_fn = restart_fn
        self._health_fn = health_fn
        self.lock = lock or asyncio.Lock()
        self.state = PatchState.IDLE

    def authorize(self, sender_id: str) -> bool:
        """Only explicitly listed senders may patch. An empty list denies everyone."""
        return sender_id in self.allowed_senders

    # ------------------------------------------------------------------
    # Restart / health
    # ------------------------------------------------------------------
    def _run_restart_command(self) -> bool:
        try:
            subprocess.run(
                self.restart_command,
                shell=True,
                check=True,
                capture_output=True,
                timeout=self.restart_timeout,
            )
            return True
        except subprocess.TimeoutExpired:
            logger.warning(f"Restart command timed out after {self.restart_timeout}s")
        except subprocess.CalledProcessError as exc:
            logger.warning(f"Restart command failed (exit {exc.returncode}): {exc.stderr!r}")
        except OSError as exc:
            logger.warning(f"Restart command could not run: {exc}")
        return False

    async def restart(self) -> bool:
        if self._restart_fn is not None:
            return await self._restart_fn()
        return await asyncio.to_thread(self._run_restart_command)

    async def probe_health(self) -> bool:
        if self._health_fn is not None:
            return await self._health_fn()
        try:
            async with httpx.AsyncClient(timeout=HEALTH_REQUEST_TIMEOUT_S) as client:
                resp = await client.get(self.health_url)
            return resp.status_code == 200
        except httpx.HTTPError:
            return False

    async def wait_healthy(self) -> bool:
        """Poll until healthy or ``health_timeout`` elapses."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.health_timeout
        while True:
            if await self.probe_health():
                return True
            if loop.time() + self.poll_interval > deadline:
                return False
            await asyncio.sleep(self.poll_interval)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------
    def _finish(self, result: PatchResult) -> PatchResult:
        self.state = result.state
        log = logger.critical if result.critical else (logger.info if result.success else logger.warning)
        log(f"Config update {result.request_id}: {result.state.value} -- {result.message}")
        return result

    async def apply(self, content: Dict[str, Any], sender_id: str, request_id: str) -> PatchResult:
        """Run one full patch cycle. Never raises; the outcome is in the result."""
        async with self.lock:
            return await self._apply(content, sender_id, request_id)

    async def _apply(self, content: Dict[str, Any], sender_id: str, request_id: str) -> PatchResult:
        logger.info(f"Config update {request_id} requested by {sender_id}")
        if not self.authorize(sender_id):
            return self._finish(PatchResult(
                request_id, PatchState.DENIED, "Sender not authorized", error="UNAUTHORIZED_SENDER"
            ))

        patch = content.get("config_patch")
        if not isinstance(patch, dict) or not patch:
            return self._finish(PatchResult(
                request_id, PatchState.INVALID, "Invalid config_patch", error="INVALID_CONFIG_PATCH"
            ))

        self.state = PatchState.PATCHING
        try:
            current = load_document(self.config_path)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            return self._finish(PatchResult(
                request_id, PatchState.FAILED, f"Could not read config: {exc}", error="CONFIG_READ_ERROR"
            ))

        try:
            backup = ConfigBackup.take(self.config_path)
        except OSError as exc:
            return self._finish(PatchResult(
                request_id, PatchState.FAILED, f"Could not back up config: {exc}", error="BACKUP_FAILED"
            ))

        try:
            dump_document(self.config_path, deep_merge(current, patch))
        except (OSError, ValueError, yaml.YAMLError) as exc:
            return self._restore_only(backup, request_id, f"Failed to apply config patch: {exc}",
                                      "CONFIG_WRITE_ERROR")

        if content.get("restart") is False:
            backup.discard()
            return self._finish(PatchResult(request_id, PatchState.COMMITTED, "Config updated successfully"))

        self.state = PatchState.RESTARTING
        if not await self.restart():
            return self._restore_only(backup, request_id, "Restart command failed, config restored",
                                      "RESTART_FAILED")

        self.state = PatchState.HEALTH_CHECKING
        if await self.wait_healthy():
            backup.discard()
            return self._finish(PatchResult(request_id, PatchState.COMMITTED, "Config updated successfully"))

        logger.warning("Gateway unhealthy after config update, rolling back")
        return await self._roll_back(backup, request_id)

    def _restore_only(self, backup: ConfigBackup, request_id: str, message: str, error: str) -> PatchResult:
        self.state = PatchState.ROLLING_BACK
        try:
            backup.restore()
        except OSError as exc:
            return self._critical(request_id, f"could not restore backup: {exc}")
        return self._finish(PatchResult(request_id, PatchState.ROLLED_BACK, message, error=error))

    async def _roll_back(self, backup: ConfigBackup, request_id: str) -> PatchResult:
        self.state = PatchState.ROLLING_BACK
        try:
            backup.restore()
        except OSError as exc:
            return self._critical(request_id, f"could not restore backup: {exc}")

        if await self.restart() and await self.wait_healthy():
            return self._finish(PatchResult(
                request_id,
                PatchState.ROLLED_BACK,
                "Gateway failed to start with new config. Rolled back successfully.",
                error="HEALTH_CHECK_FAILED",
            ))
        return self._critical(request_id, "gateway did not recover after rollback")

    def _critical(self, request_id: str, detail: str) -> PatchResult:
        return self._finish(PatchResult(
            request_id,
            PatchState.FAILED,
            f"CRITICAL: Gateway failed and rollback may have failed ({detail}). Manual intervention required!",
            error=CriticalRecoveryFailure.default_code,
            critical=True,
        ))
