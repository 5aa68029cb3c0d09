"""Small JSON/YAML file helpers shared by the stores and sense handlers.

Reads are fail-safe (a missing or corrupt file yields the fallback); writes
go through a temp file and ``os.replace`` so a crash never leaves a
half-written file behind.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone

import yaml

logger = logging.getLogger("SenseLink.Storage")


def ensure_dir(path: str):
    os.makedirs(path, exist_ok=True)


def read_json(path: str, fallback=None):
    """Load JSON from *path*, returning *fallback* if missing or corrupt."""
    try:
        with open(path) as f:
            return json.load(f)
    except FileNotFoundError:
        return fallback
    except (ValueError, OSError) as exc:
        logger.warning(f"Unreadable JSON at {path}: {exc}")
        return fallback


def atomic_write_bytes(path: str, data: bytes):
    """Replace *path* with *data* atomically."""
    directory = os.path.dirname(path) or "."
    ensure_dir(directory)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=os.path.basename(path))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise


def atomic_write_text(path: str, text: str):
    atomic_write_bytes(path, text.encode("utf-8"))


def write_json(path: str, data):
    atomic_write_text(path, json.dumps(data, indent=2, default=str) + "\n")


def is_yaml_path(path: str) -> bool:
    return path.endswith((".yaml", ".yml"))


def load_document(path: str) -> dict:
    """Load a JSON or YAML document (by extension). Missing file yields ``{}``.

    Unlike :func:`read_json`, parse errors propagate: callers that are about
    to rewrite the file must not mistake a corrupt file for an empty one.
    """
    if not os.path.exists(path):
        return {}
    with open(path) as f:
        if is_yaml_path(path):
            data = yaml.safe_load(f)
        else:
            text = f.read()
            data = json.loads(text) if text.strip() else {}
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be an object")
    return data


def dump_document(path: str, data: dict):
    """Write a JSON or YAML document (by extension) atomically."""
    if is_yaml_path(path):
        atomic_write_text(path, yaml.safe_dump(data, default_flow_style=False, sort_keys=False))
    else:
        atomic_write_text(path, json.dumps(data, indent=2) + "\n")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def today_str() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def parse_timestamp(value) -> datetime:
    """Coerce an epoch (seconds or milliseconds) or ISO 8601 string to an aware UTC datetime.

    Anything unparseable (including None) yields the current time.
    """
    if isinstance(value, bool):
        value = None
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return datetime.now(timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return datetime.now(timezone.utc)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return datetime.now(timezone.utc)
