"""
SenseLink Camera Sense -- motion capture storage.

A motion event carries an ``mxc://server/media_id`` reference under
``content["ai.krill.sense"]``. The image is fetched from the homeserver's
authenticated media endpoint and stored; it is never shown to the agent.

Config::

    senses:
      camera:
        homeserver_url: https://matrix.example.org
        access_token: ...            # or SENSELINK_ACCESS_TOKEN
        max_captures: 500
        max_log_entries: 1000

Files::

    camera/latest.jpg
    camera/motion_log.json
    camera/captures/2026-10-19_081500.jpg
"""

import logging
import os
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx

from senselink.config import resolve_secret
from senselink.errors import Lookup, ValidationError
from senselink.storage import atomic_write_bytes, ensure_dir, parse_timestamp, read_json, write_json

logger = logging.getLogger("SenseLink.Senses.Camera")

MAX_LOG_ENTRIES = 1000
MAX_CAPTURES = 500
MIN_IMAGE_BYTES = 1000
DOWNLOAD_TIMEOUT_S = 30.0


def media_download_url(homeserver_url: str, mxc_url: str) -> str:
    """Authenticated media URL for an ``mxc://`` reference."""
    parsed = urlparse(mxc_url or "")
    media_id = parsed.path.lstrip("/")
    if parsed.scheme != "mxc" or not parsed.netloc or not media_id:
        raise ValidationError("INVALID_MEDIA_URL", f"Not an mxc:// URL: {mxc_url!r}")
    return f"{homeserver_url.rstrip('/')}/_matrix/client/v1/media/download/{parsed.netloc}/{media_id}"


class CameraSense:
    def __init__(self, base_dir: str, config: Optional[dict] = None, sense_key: str = "ai.krill.sense"):
        config = config or {}
        self.camera_dir = os.path.join(base_dir, "camera")
        self.captures_dir = os.path.join(self.camera_dir, "captures")
        self.homeserver_url = config.get("homeserver_url")
        self.access_token = resolve_secret("access_token", config)
        self.max_captures = int(config.get("max_captures", MAX_CAPTURES))
        self.max_log_entries = int(config.get("max_log_entries", MAX_LOG_ENTRIES))
        self.timeout = float(config.get("download_timeout_s", DOWNLOAD_TIMEOUT_S))
        self.sense_key = sense_key

    @property
    def latest_path(self) -> str:
        return os.path.join(self.camera_dir, "latest.jpg")

    @property
    def log_path(self) -> str:
        return os.path.join(self.camera_dir, "motion_log.json")

    async def download(self, mxc_url: str) -> Lookup:
        """Fetch the media blob. Payloads under MIN_IMAGE_BYTES count as not found."""
        url = media_download_url(self.homeserver_url, mxc_url)
        headers = {"Authorization": f"Bearer {self.access_token}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(url, headers=headers, follow_redirects=True)
        except httpx.HTTPError as exc:
            return Lookup.transient(f"{type(exc).__name__}: {exc}")
        if resp.status_code == 404:
            return Lookup.not_found(f"{mxc_url} not found")
        if resp.status_code != 200:
            return Lookup.transient(f"HTTP {resp.status_code}")
        data = resp.content
        if len(data) < MIN_IMAGE_BYTES:
            return Lookup.not_found(f"payload too small ({len(data)} bytes)")
        return Lookup.found(data)

    def prune_captures(self) -> int:
        """Delete the oldest captures beyond ``max_captures``. Returns how many went."""
        if not os.path.isdir(self.captures_dir):
            return 0
        files = sorted(f for f in os.listdir(self.captures_dir) if f.endswith(".jpg"))
        excess = files[: max(0, len(files) - self.max_captures)]
        for name in excess:
            try:
                os.remove(os.path.join(self.captures_dir, name))
            except OSError as exc:
                logger.warning(f"Could not prune {name}: {exc}")
        if excess:
            logger.info(f"Pruned {len(excess)} old capture(s)")
        return len(excess)

    def record_motion(self, entry: Dict[str, Any]) -> int:
        log = read_json(self.log_path, fallback=[])
        if not isinstance(log, list):
            log = []
        log.append(entry)
        if len(log) > self.max_log_entries:
            del log[: len(log) - self.max_log_entries]
        write_json(self.log_path, log)
        return len(log)

    async def handle(self, content: Dict[str, Any]) -> Optional[str]:
        """Store one motion capture. Returns the capture file name, or None on failure."""
        sense = content.get(self.sense_key)
        if not isinstance(sense, dict) or not sense.get("mxc_url"):
            raise ValidationError("INVALID_CAMERA_EVENT", "missing mxc_url")
        if not self.homeserver_url or not self.access_token:
            logger.error("No homeserver URL or access token configured for media download")
            return None

        when = parse_timestamp(sense.get("timestamp"))
        motion_score = sense.get("motion_score", 0)
        facing = sense.get("facing") or "back"

        lookup = await self.download(sense["mxc_url"])
        if not lookup.ok:
            logger.warning(f"Motion capture download failed ({lookup.status.value}): {lookup.detail}")
            return None

        image = lookup.value
        file_name = when.strftime("%Y-%m-%d_%H%M%S.jpg")
        ensure_dir(self.captures_dir)
        atomic_write_bytes(os.path.join(self.captures_dir, file_name), image)
        atomic_write_bytes(self.latest_path, image)
        logger.info(f"Saved capture {file_name} ({len(image) / 1024:.1f} KB, facing {facing})")

        total = self.record_motion({
            "timestamp": when.isoformat(),
            "motion_score": motion_score,
            "facing": facing,
            "sensitivity": sense.get("sensitivity") or "medium",
            "subtype": sense.get("subtype") or "motion",
            "file": file_name,
        })
        self.prune_captures()
        logger.debug(f"Motion log has {total} entries")
        return file_name
