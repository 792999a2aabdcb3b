"""Runtime settings with JSON file and environment overrides."""

import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigError
from .logger import logger as LOGGER


CONFIG_PATH = Path("data") / "scriptorium.json"
ENV_PREFIX = "SCRIPTORIUM_"


@dataclass
class Settings:
    """Configuration shared by every orchestrator component.

    Built once at process start by ``load_settings`` and passed explicitly
    to each component.
    """

    db_path: Path = Path("data") / "library.db"

    # Batch provider
    gemini_api_key: str = ""
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_upload_url: str = "https://generativelanguage.googleapis.com/upload/v1beta/files"
    gemini_download_url: str = "https://generativelanguage.googleapis.com/download/v1beta"
    batch_model: str = "gemini-2.5-flash"
    request_timeout: float = 300.0
    provider_max_retries: int = 3
    provider_backoff_base: float = 1.5

    # Planning and queueing
    batch_size: int = 25
    max_in_flight: int = 10
    max_new_jobs: int = 5
    queue_summaries: bool = False
    default_language: str = "Latin"
    target_language: str = "English"

    # Payload shaping
    image_max_width: int = 800
    jpeg_quality: int = 85
    image_fetch_timeout: float = 60.0
    max_output_tokens: int = 8192

    # Interactive path
    inference_base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai"
    interactive_model: str = "gemini-2.5-flash"
    concurrency: int = 5
    max_attempts: int = 3
    retry_base_delay: float = 1.0
    attempt_timeout: float = 120.0
    wave_pause: float = 0.3
    progress_interval: float = 2.0

    log_level: str = "INFO"
    extra: dict = field(default_factory=dict, repr=False)

    def require_api_key(self) -> str:
        if not self.gemini_api_key:
            raise ConfigError("GEMINI_API_KEY not configured")
        return self.gemini_api_key

    def to_dict(self) -> dict:
        data = asdict(self)
        data["db_path"] = str(self.db_path)
        data.pop("extra", None)
        data.pop("gemini_api_key", None)
        return data


def _coerce(value, current):
    """Convert a raw JSON or environment value to the type of the default."""
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, Path):
        return Path(value)
    return str(value)


def _read_config_file(config_path: Path) -> dict:
    if not config_path.exists():
        return {}

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        raise ConfigError(f"Failed to load config {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config {config_path} must contain a JSON object")
    return data


def load_settings(config_path: Optional[Path] = None, env: Optional[dict] = None) -> Settings:
    """Build Settings from defaults, an optional JSON file and the environment.

    Args:
        config_path: JSON file with setting overrides. Defaults to CONFIG_PATH.
        env: Mapping to read overrides from. Defaults to os.environ after
             loading a .env file.

    Returns:
        Populated Settings instance
    """
    if env is None:
        load_dotenv()
        env = dict(os.environ)

    settings = Settings()
    known = {f.name: f for f in fields(Settings) if f.name != "extra"}

    file_values = _read_config_file(Path(config_path) if config_path else CONFIG_PATH)
    for key, value in file_values.items():
        if key not in known:
            LOGGER.warning(f"Ignoring unknown config key: {key}")
            settings.extra[key] = value
            continue
        try:
            setattr(settings, key, _coerce(value, getattr(settings, key)))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for {key}: {value!r} ({e})") from e

    for name in known:
        env_key = ENV_PREFIX + name.upper()
        if env_key in env:
            try:
                setattr(settings, name, _coerce(env[env_key], getattr(settings, name)))
            except (TypeError, ValueError) as e:
                raise ConfigError(f"Invalid value for {env_key}: {env[env_key]!r} ({e})") from e

    if not settings.gemini_api_key and env.get("GEMINI_API_KEY"):
        settings.gemini_api_key = env["GEMINI_API_KEY"]

    return settings


def save_settings(settings: Settings, config_path: Optional[Path] = None) -> None:
    """Write non-secret settings to a JSON file."""
    path = Path(config_path) if config_path else CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(settings.to_dict(), f, indent=2, ensure_ascii=False)
