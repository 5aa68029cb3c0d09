"""
SenseLink Audio Sense -- ambient transcript buffering and wake-word promotion.

Message kinds (``content["kind"]``):

    transcript_chunk   buffered + appended to the daily transcript, silent
    wake_word          recent context + query forwarded to the agent
    config             merged into audio/config.json
    session_start      microphone on
    session_end        microphone off; clears the in-memory buffer

Files::

    audio/config.json
    audio/current-session.json
    audio/transcript-YYYY-MM-DD.md
"""

import logging
import os
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Optional

from senselink.errors import ValidationError
from senselink.storage import ensure_dir, parse_timestamp, read_json, today_str, utc_now_iso, write_json

logger = logging.getLogger("SenseLink.Senses.Audio")

MAX_BUFFER_ENTRIES = 200
DEFAULT_CONTEXT_WINDOW_S = 60
MAX_DAILY_LINES = 5000
BYTES_PER_LINE = 80

AUDIO_KINDS = ("transcript_chunk", "wake_word", "config", "session_start", "session_end")

# Client field names arrive in either style
_ALIASES = {
    "endTime": "end_time",
    "wakeWord": "wake_word",
    "wakeWords": "wake_words",
    "recentTranscript": "recent_transcript",
    "contextWindowSeconds": "context_window_seconds",
    "maxDailyLines": "max_daily_lines",
}


def normalize_keys(content: Dict[str, Any]) -> Dict[str, Any]:
    return {_ALIASES.get(k, k): v for k, v in content.items()}


def _positive_number(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return None
    return float(value)


@dataclass
class TranscriptEntry:
    text: str
    timestamp: float  # epoch seconds


class AudioSense:
    """Per-agent audio state: the ring buffer plus its on-disk mirror."""

    def __init__(self, base_dir: str, config: Optional[dict] = None):
        config = config or {}
        self.audio_dir = os.path.join(base_dir, "audio")
        self.max_daily_lines = int(config.get("max_daily_lines", MAX_DAILY_LINES))
        self.default_window_s = float(config.get("context_window_seconds", DEFAULT_CONTEXT_WINDOW_S))
        self.buffer: Deque[TranscriptEntry] = deque(
            maxlen=int(config.get("max_buffer_entries", MAX_BUFFER_ENTRIES))
        )

    @property
    def config_path(self) -> str:
        return os.path.join(self.audio_dir, "config.json")

    @property
    def session_path(self) -> str:
        return os.path.join(self.audio_dir, "current-session.json")

    def transcript_path(self, day: Optional[str] = None) -> str:
        return os.path.join(self.audio_dir, f"transcript-{day or today_str()}.md")

    # ------------------------------------------------------------------
    # Buffer
    # ------------------------------------------------------------------
    def buffer_text(self, text: str, when: datetime):
        self.buffer.append(TranscriptEntry(text=text, timestamp=when.timestamp()))

    def recent_context(self, window_s: float, now: Optional[float] = None) -> str:
        now = now if now is not None else datetime.now(timezone.utc).timestamp()
        cutoff = now - window_s
        return " ".join(e.text for e in self.buffer if e.timestamp >= cutoff)

    def clear(self):
        self.buffer.clear()

    # ------------------------------------------------------------------
    # Daily transcript
    # ------------------------------------------------------------------
    def append_transcript(self, text: str, when: Optional[datetime] = None) -> bool:
        """Append one line to today's transcript. Returns False if over the daily cap."""
        when = when or datetime.now(timezone.utc)
        path = self.transcript_path()
        ensure_dir(self.audio_dir)
        if not os.path.exists(path):
            with open(path, "w", encoding="utf-8") as f:
                f.write(f"# Audio Transcript — {today_str()}\n\n")
        if os.path.getsize(path) > self.max_daily_lines * BYTES_PER_LINE:
            logger.warning(f"Daily transcript {path} is over its size cap, dropping line")
            return False
        with open(path, "a", encoding="utf-8") as f:
            f.write(f"[{when.strftime('%H:%M:%S')}] {text}\n")
        return True

    def effective_window(self, content: Dict[str, Any]) -> float:
        """Context window for a wake word: the event's, then the saved config's, then the default."""
        window = _positive_number(content.get("context_window_seconds"))
        if window is not None:
            return window
        saved = read_json(self.config_path, fallback={})
        if isinstance(saved, dict):
            window = _positive_number(saved.get("context_window_seconds"))
            if window is not None:
                return window
        return self.default_window_s

    # ------------------------------------------------------------------
    # Kinds
    # ------------------------------------------------------------------
    def _on_chunk(self, content: Dict[str, Any]):
        text = (content.get("text") or "").strip()
        if not text:
            return
        when = parse_timestamp(content.get("end_time") or content.get("timestamp"))
        self.buffer_text(text, when)
        self.append_transcript(text, when)

        session = read_json(self.session_path, fallback=None) or {"active": True}
        session["last_chunk_at"] = when.isoformat()
        if content.get("language"):
            session["language"] = content["language"]
        write_json(self.session_path, session)
        logger.debug(f"Chunk: {text[:60]!r}")

    def _on_wake_word(self, content: Dict[str, Any]) -> Optional[str]:
        wake_word = content.get("wake_word") or "wake word"
        query = (content.get("query") or "").strip()
        logger.info(f"Wake word {wake_word!r} detected")
        if not query:
            logger.warning("Wake word detected but no query provided")
            return None

        context = content.get("recent_transcript") or self.recent_context(self.effective_window(content))
        when = parse_timestamp(content.get("timestamp"))
        self.append_transcript(f"⚡ WAKE: \"{wake_word}\" → \"{query}\"", when)

        message = f"🎤 **Voice Query** (via \"{wake_word}\"):\n\n"
        if context:
            message += f"> _Recent conversation context:_\n> \"{context}\"\n\n"
        message += f"**Question:** {query}"
        logger.info(f"Forwarding voice query to agent: {query[:80]!r}")
        return message

    def _on_config(self, content: Dict[str, Any]):
        updates = {k: v for k, v in content.items() if k != "kind"}
        wake_words = updates.get("wake_words")
        if wake_words is not None and (
            not isinstance(wake_words, list) or not all(isinstance(w, str) for w in wake_words)
        ):
            raise ValidationError("INVALID_AUDIO_CONFIG", "wake_words must be a list of strings")
        if updates.get("language") is not None and not isinstance(updates["language"], str):
            raise ValidationError("INVALID_AUDIO_CONFIG", "language must be a string")
        if "context_window_seconds" in updates and _positive_number(updates["context_window_seconds"]) is None:
            raise ValidationError("INVALID_AUDIO_CONFIG", "context_window_seconds must be a positive number")

        saved = read_json(self.config_path, fallback={})
        if not isinstance(saved, dict):
            saved = {}
        saved.update(updates)
        saved["updated_at"] = utc_now_iso()
        write_json(self.config_path, saved)
        logger.info(f"Audio config updated: {sorted(updates)}")

    def _on_session(self, kind: str, content: Dict[str, Any]):
        if kind == "session_start":
            write_json(self.session_path, {
                "active": True,
                "since": utc_now_iso(),
                "wake_words": content.get("wake_words") or [],
                "language": content.get("language"),
            })
            self.append_transcript("--- 🎤 Microphone ON ---")
            logger.info("Audio session started")
        else:
            write_json(self.session_path, {"active": False, "ended_at": utc_now_iso()})
            self.append_transcript("--- 🔇 Microphone OFF ---")
            self.clear()
            logger.info("Audio session ended, buffer cleared")

    async def handle(self, content: Dict[str, Any]) -> Optional[str]:
        """Process one audio message. Returns text for the agent, if any."""
        content = normalize_keys(content)
        kind = content.get("kind")
        if kind not in AUDIO_KINDS:
            raise ValidationError("INVALID_AUDIO_KIND", f"Unknown audio kind: {kind!r}")
        if kind == "transcript_chunk":
            self._on_chunk(content)
        elif kind == "wake_word":
            return self._on_wake_word(content)
        elif kind == "config":
            self._on_config(content)
        else:
            self._on_session(kind, content)
        return None
