import os
from dataclasses import dataclass

from dotenv import load_dotenv

from errors import ConfigError

OUTPUT_MODES = ("inline", "persist")
PROMPT_POSITIONS = ("first", "last")


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


# -----------------------------
# ENV / CONFIG
# -----------------------------
@dataclass(frozen=True)
class Settings:
    gemini_api_key: str | None = None
    gemini_model: str = "gemini-2.5-flash-image"
    port: int = 3000
    public_host: str | None = None
    output_mode: str = "inline"
    upload_dir: str = "uploads"
    retention_hours: float = 24.0
    sweep_interval_minutes: float = 60.0
    generation_timeout: float = 60.0
    fetch_timeout: float = 30.0
    default_quality: int = 85
    default_max_width: int = 2000
    key_white_background: bool = False
    key_threshold: int = 240
    prompt_position: str = "first"
    max_content_length_mb: int = 50
    log_level: str = "INFO"
    debug: bool = False

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        """Build settings from the process environment (and ``.env`` if present)."""
        if dotenv:
            load_dotenv()
        try:
            return cls(
                gemini_api_key=os.environ.get("GEMINI_API_KEY") or None,
                gemini_model=os.environ.get("GEMINI_MODEL", cls.gemini_model),
                port=int(os.environ.get("PORT", cls.port)),
                public_host=os.environ.get("PUBLIC_HOST") or None,
                output_mode=os.environ.get("OUTPUT_MODE", cls.output_mode).strip().lower(),
                upload_dir=os.environ.get("UPLOAD_DIR", cls.upload_dir),
                retention_hours=float(os.environ.get("RETENTION_HOURS", cls.retention_hours)),
                sweep_interval_minutes=float(os.environ.get("SWEEP_INTERVAL_MINUTES", cls.sweep_interval_minutes)),
                generation_timeout=float(os.environ.get("GENERATION_TIMEOUT", cls.generation_timeout)),
                fetch_timeout=float(os.environ.get("FETCH_TIMEOUT", cls.fetch_timeout)),
                default_quality=int(os.environ.get("DEFAULT_QUALITY", cls.default_quality)),
                default_max_width=int(os.environ.get("DEFAULT_MAX_WIDTH", cls.default_max_width)),
                key_white_background=_env_bool("KEY_WHITE_BACKGROUND"),
                key_threshold=int(os.environ.get("KEY_THRESHOLD", cls.key_threshold)),
                prompt_position=os.environ.get("PROMPT_POSITION", cls.prompt_position).strip().lower(),
                max_content_length_mb=int(os.environ.get("MAX_CONTENT_LENGTH_MB", cls.max_content_length_mb)),
                log_level=os.environ.get("LOG_LEVEL", cls.log_level).upper(),
                debug=_env_bool("FLASK_DEBUG"),
            )
        except ValueError as e:
            raise ConfigError(f"Invalid numeric setting: {e}") from e

    def validate(self, require_api_key: bool = True) -> "Settings":
        if require_api_key and not self.gemini_api_key:
            raise ConfigError("GEMINI_API_KEY is not set")
        if self.output_mode not in OUTPUT_MODES:
            raise ConfigError(f"OUTPUT_MODE must be one of {OUTPUT_MODES}, got {self.output_mode!r}")
        if self.prompt_position not in PROMPT_POSITIONS:
            raise ConfigError(f"PROMPT_POSITION must be one of {PROMPT_POSITIONS}, got {self.prompt_position!r}")
        if not 1 <= self.default_quality <= 100:
            raise ConfigError("DEFAULT_QUALITY must be between 1 and 100")
        if self.default_max_width <= 0:
            raise ConfigError("DEFAULT_MAX_WIDTH must be positive")
        if not 0 <= self.key_threshold <= 255:
            raise ConfigError("KEY_THRESHOLD must be between 0 and 255")
        if self.generation_timeout <= 0 or self.fetch_timeout <= 0:
            raise ConfigError("Timeouts must be positive")
        if self.retention_hours <= 0:
            raise ConfigError("RETENTION_HOURS must be positive")
        if self.sweep_interval_minutes <= 0:
            raise ConfigError("SWEEP_INTERVAL_MINUTES must be positive")
        return self

    @property
    def persist(self) -> bool:
        return self.output_mode == "persist"

    @property
    def public_base_url(self) -> str:
        if not self.public_host:
            return f"http://localhost:{self.port}"
        host = self.public_host.rstrip("/")
        if "://" not in host:
            host = f"https://{host}"
        return host
