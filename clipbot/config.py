"""
Configuration - environment variables with .env support
"""
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def _float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None


class Config:
    """Bot settings read once from the environment."""

    def __init__(self):
        self.DISCORD_TOKEN: str = os.getenv("DISCORD_TOKEN", "")
        self.COMMAND_PREFIX: str = os.getenv("COMMAND_PREFIX", "!")

        # Storage
        self.SOUNDS_DIR = Path(os.getenv("SOUNDS_DIR", "sounds"))
        self.MAX_UPLOAD_MB: int = _int("MAX_UPLOAD_MB", 25)
        self.SOUNDS_PER_PAGE: int = _int("SOUNDS_PER_PAGE", 10)

        # Logging
        self.LOG_PATH = Path(os.getenv("LOG_PATH", "data/bot.log"))
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

        # yt-dlp
        self.YTDL_COOKIES_PATH: str | None = os.getenv("YTDL_COOKIES_PATH") or None

        # Voice sessions (seconds)
        self.CONNECT_TIMEOUT: float = _float("CONNECT_TIMEOUT", 30.0)
        self.TEMP_CONNECT_TIMEOUT: float = _float("TEMP_CONNECT_TIMEOUT", 10.0)
        self.PLAYBACK_TIMEOUT: float = _float("PLAYBACK_TIMEOUT", 30.0)
        self.RECONNECT_TIMEOUT: float = _float("RECONNECT_TIMEOUT", 5.0)
        self.TEMP_CHANNEL_NAME: str = os.getenv("TEMP_CHANNEL_NAME", "Sound Cellar")

    @property
    def max_upload_bytes(self) -> int:
        return self.MAX_UPLOAD_MB * 1024 * 1024


config = Config()
