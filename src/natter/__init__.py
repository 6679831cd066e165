"""Terminal chat client for OpenAI and Gemini compatible APIs."""

from importlib.metadata import version as _v

try:
    __version__ = _v("natter")
except Exception:
    __version__ = "0.0.0"
