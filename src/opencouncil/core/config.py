"""Environment-driven settings, validated once at process startup."""

import os
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .errors import ConfigError

REQUIRED_VARS = (
    "DATABASE_URL",
    "S3_BUCKET",
    "AWS_REGION",
    "GEMINI_API_KEY",
)


class Settings(BaseModel):
    """Runtime configuration for discovery, workers and supervision."""
    database_url: str
    s3_bucket: str
    aws_region: str
    gemini_api_key: str

    batch_size: int = 1
    max_retries_per_file: int = 3
    supervisor_cooldown_seconds: float = 2.0

    ocr_enabled: bool = True
    ocr_min_char_threshold: int = 1200
    ocr_dpi: int = 200
    ocr_language: str = "eng"

    blob_bucket: Optional[str] = None
    blob_local_dir: Path = Path("./object_store")
    store_cache_ttl_seconds: float = 3600.0

    watchdog_state_file: Path = Path("ingestion-state.json")
    eligible_extensions: Tuple[str, ...] = (".pdf",)
    discovery_towns: List[str] = Field(default_factory=list)

    log_level: str = "INFO"
    json_logs: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from an environment mapping, failing on any missing required variable."""
        env = os.environ if environ is None else environ

        missing = [name for name in REQUIRED_VARS if not (env.get(name) or "").strip()]
        if missing:
            raise ConfigError(
                "Missing required environment variables: " + ", ".join(missing)
            )

        values: Dict[str, object] = {
            "database_url": env["DATABASE_URL"].strip(),
            "s3_bucket": env["S3_BUCKET"].strip(),
            "aws_region": env["AWS_REGION"].strip(),
            "gemini_api_key": env["GEMINI_API_KEY"].strip(),
            "batch_size": _int(env, "BATCH_SIZE", 1, minimum=1),
            "max_retries_per_file": _int(env, "MAX_RETRIES_PER_FILE", 3, minimum=1),
            "supervisor_cooldown_seconds": _float(env, "SUPERVISOR_COOLDOWN_SECONDS", 2.0),
            "ocr_enabled": _bool(env, "OCR_ENABLED", True),
            "ocr_min_char_threshold": _int(env, "OCR_MIN_CHAR_THRESHOLD", 1200, minimum=0),
            "ocr_dpi": _int(env, "OCR_DPI", 200, minimum=50),
            "ocr_language": env.get("OCR_LANGUAGE") or "eng",
            "blob_bucket": env.get("BLOB_BUCKET") or None,
            "blob_local_dir": Path(env.get("BLOB_LOCAL_DIR") or "./object_store"),
            "store_cache_ttl_seconds": _float(env, "STORE_CACHE_TTL_SECONDS", 3600.0),
            "watchdog_state_file": Path(env.get("WATCHDOG_STATE_FILE") or "ingestion-state.json"),
            "eligible_extensions": _extensions(env.get("ELIGIBLE_EXTENSIONS") or ".pdf"),
            "discovery_towns": _csv(env.get("DISCOVERY_TOWNS") or ""),
            "log_level": env.get("LOG_LEVEL") or "INFO",
            "json_logs": _bool(env, "JSON_LOGS", False),
        }
        return cls(**values)


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Load `.env` (if present) and validate the process environment."""
    load_dotenv(env_file)
    return Settings.from_env()


def _int(env: Mapping[str, str], name: str, default: int, minimum: Optional[int] = None) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e
    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() not in ("false", "0", "no", "off")


def _csv(raw: str) -> List[str]:
    return [part.strip().lower() for part in raw.split(",") if part.strip()]


def _extensions(raw: str) -> Tuple[str, ...]:
    exts = []
    for part in _csv(raw):
        exts.append(part if part.startswith(".") else f".{part}")
    return tuple(exts)
