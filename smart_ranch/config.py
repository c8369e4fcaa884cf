from dataclasses import dataclass, field
from pathlib import Path
import os
from dotenv import load_dotenv
import logging
import sys
from typing import List, Optional
import structlog

from smart_ranch.exceptions import ConfigurationError

# Load environment variables early
load_dotenv()

# Step 1: Configure stdlib logging to use stderr
logging.basicConfig(
    format='%(asctime)s [%(levelname)-8s] %(message)s',
    stream=sys.stderr,
    level=logging.INFO,
    force=True
)

# Step 2: Configure structlog
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.KeyValueRenderer(key_order=['timestamp', 'level', 'event']),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = logging.getLogger(__name__)

VALID_PROVIDERS = ("auto", "http", "gemini", "stub")


def _get_env_var(var: str, required: bool = True, default: Optional[str] = None) -> str:
    """Get environment variable with validation."""
    value = os.environ.get(var, default)
    if required and not value:
        logger.error(f"Missing required environment variable: {var}")
        return ""
    return value or ""


def _get_int_env(var: str, default: int) -> int:
    """Parse an integer environment variable, falling back on garbage."""
    raw = os.environ.get(var)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning(f"Invalid integer for {var}={raw!r}, using {default}")
        return default


def _parse_list(value: str) -> List[str]:
    """Split a comma-separated env value, dropping blanks."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def validate_environment_variables() -> None:
    """Validate provider settings before the server starts."""
    provider = os.environ.get("AI_PROVIDER", "auto").strip().lower()
    if provider not in VALID_PROVIDERS:
        raise ConfigurationError(
            f"Unknown AI provider: {provider}",
            config_key="AI_PROVIDER",
            expected=", ".join(VALID_PROVIDERS),
        )

    if provider == "http":
        _get_env_var("AI_VISION_URL", required=True)
    elif provider == "gemini":
        _get_env_var("GOOGLE_API_KEY", required=True)
    elif provider == "auto":
        if not (_get_env_var("AI_VISION_URL", required=False) or _get_env_var("GOOGLE_API_KEY", required=False)):
            logger.warning("No AI_VISION_URL or GOOGLE_API_KEY set - analyses will use the simulated provider.")

    if not _get_env_var("API_ACCESS_KEY", required=False):
        logger.warning("API_ACCESS_KEY missing - API routes are open to any caller.")

    logger.info("Environment variables validated")


@dataclass
class Config:
    """Configuration for the Smart Ranch monitor backend."""

    host: str = os.environ.get("HOST", "0.0.0.0")
    port: int = _get_int_env("PORT", 5174)

    api_access_key: str = os.environ.get("API_ACCESS_KEY", "")
    cors_origins: List[str] = field(default_factory=lambda: _parse_list(os.environ.get("CORS_ORIGINS", "")))

    ai_provider: str = os.environ.get("AI_PROVIDER", "auto").strip().lower()
    ai_api_key: str = os.environ.get("AI_API_KEY", "")
    ai_vision_url: str = os.environ.get("AI_VISION_URL", "")
    google_api_key: str = os.environ.get("GOOGLE_API_KEY", "")
    vision_model: str = os.environ.get("VISION_MODEL", "gemini-2.5-flash")
    gemini_rpm_limit: int = _get_int_env("GEMINI_RPM_LIMIT", 15)

    # Provider calls own their timeout/retry policy; the store has none
    api_timeout: int = _get_int_env("API_TIMEOUT", 60)
    api_retry_attempts: int = _get_int_env("API_RETRY_ATTEMPTS", 3)

    data_dir: Path = Path(os.environ.get("DATA_DIR", "./data"))
    history_max: int = _get_int_env("HISTORY_MAX", 500)
    request_limit_mb: int = _get_int_env("REQUEST_LIMIT_MB", 20)

    rate_limit_window_seconds: int = _get_int_env("RATE_LIMIT_WINDOW_SECONDS", 60)
    rate_limit_max: int = _get_int_env("RATE_LIMIT_MAX", 120)

    log_level: str = os.environ.get("LOG_LEVEL", "INFO")

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

        if self.history_max < 1:
            logger.warning(f"HISTORY_MAX must be positive, got {self.history_max}; using 1")
            self.history_max = 1

        # Set logging level
        log_level = getattr(logging, self.log_level.upper(), logging.INFO)
        logging.getLogger().setLevel(log_level)
        for name in logging.root.manager.loggerDict:
            logging.getLogger(name).setLevel(log_level)

    @property
    def history_file(self) -> Path:
        return self.data_dir / "history.json"

    @property
    def request_limit_bytes(self) -> int:
        return self.request_limit_mb * 1024 * 1024


config = Config()
