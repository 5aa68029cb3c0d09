"""SenseLink: authenticated companion-app protocol engine for chat-hosted agents."""

try:
    from importlib.metadata import version as _pkg_version

    __version__ = _pkg_version("senselink")
except Exception:
    __version__ = "0.3.0"  # fallback

__all__ = ["__version__"]
