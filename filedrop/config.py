import logging
import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Optional

BASE_DIR = Path(__file__).resolve().parent

# Constants for file operations
CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
BYTES_PER_MB = 1024 * 1024
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUP_COUNT = 3

TENANT_SCHEMES = ("derived", "random")

config_logger = logging.getLogger("filedrop.config")


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    raw_value = os.environ.get(key)
    if raw_value is None or raw_value.strip() == "":
        return default
    try:
        return max(min_value, int(raw_value))
    except (TypeError, ValueError):
        config_logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, raw_value, default
        )
        return default


def _get_optional_bool_env(env_key: str) -> Optional[bool]:
    raw_value = os.environ.get(env_key)
    if raw_value is None:
        return None
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None


def _blocked_extensions_env() -> FrozenSet[str]:
    raw_value = os.environ.get("FILEDROP_BLOCKED_EXTENSIONS", "")
    return frozenset(
        entry.strip().lower().lstrip(".")
        for entry in raw_value.split(",")
        if entry.strip()
    )


def _tenant_scheme_env() -> str:
    scheme = os.environ.get("FILEDROP_TENANT_SCHEME", "derived").strip().lower()
    if scheme not in TENANT_SCHEMES:
        config_logger.warning(
            "Invalid value for FILEDROP_TENANT_SCHEME: %s. Using default: derived",
            scheme,
        )
        return "derived"
    return scheme


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, read once from the environment."""

    storage_root: Path
    uploads_dir: Path
    logs_dir: Path
    data_dir: Path
    max_upload_size_mb: int = 500
    max_files_per_batch: int = 100
    max_concurrent_uploads: int = 10
    max_filename_length: int = 255
    blocked_extensions: FrozenSet[str] = field(default_factory=frozenset)
    tenant_scheme: str = "derived"
    session_max_age_hours: int = 168
    tenant_idle_days: int = 0
    cleanup_enabled: bool = True
    upload_rate_limit_per_hour: int = 100
    login_rate_limit_per_minute: int = 10
    download_rate_limit_per_minute: int = 120
    rate_limit_storage: str = "memory://"
    session_cookie_secure: bool = False
    log_level: str = "INFO"

    @property
    def staging_dir(self) -> Path:
        return self.uploads_dir / ".partial"

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_size_mb * BYTES_PER_MB

    @property
    def max_request_bytes(self) -> int:
        return self.max_upload_bytes * self.max_files_per_batch


def load_settings() -> Settings:
    storage_root = _resolve_env_path("FILEDROP_STORAGE_ROOT", BASE_DIR)
    cleanup_enabled = _get_optional_bool_env("FILEDROP_CLEANUP_ENABLED")
    cookie_secure = _get_optional_bool_env("SESSION_COOKIE_SECURE")
    return Settings(
        storage_root=storage_root,
        uploads_dir=_resolve_env_path("FILEDROP_UPLOADS_DIR", storage_root / "uploads"),
        logs_dir=_resolve_env_path("FILEDROP_LOGS_DIR", storage_root / "logs"),
        data_dir=_resolve_env_path("FILEDROP_DATA_DIR", storage_root / "data"),
        max_upload_size_mb=_safe_int_env("FILEDROP_MAX_UPLOAD_SIZE_MB", 500),
        max_files_per_batch=_safe_int_env("FILEDROP_MAX_FILES_PER_BATCH", 100),
        max_concurrent_uploads=_safe_int_env("FILEDROP_MAX_CONCURRENT_UPLOADS", 10),
        max_filename_length=_safe_int_env("FILEDROP_MAX_FILENAME_LENGTH", 255),
        blocked_extensions=_blocked_extensions_env(),
        tenant_scheme=_tenant_scheme_env(),
        session_max_age_hours=_safe_int_env("FILEDROP_SESSION_MAX_AGE_HOURS", 168),
        tenant_idle_days=_safe_int_env("FILEDROP_TENANT_IDLE_DAYS", 0, min_value=0),
        cleanup_enabled=True if cleanup_enabled is None else cleanup_enabled,
        upload_rate_limit_per_hour=_safe_int_env(
            "FILEDROP_RATE_LIMIT_UPLOADS_PER_HOUR", 100
        ),
        login_rate_limit_per_minute=_safe_int_env(
            "FILEDROP_RATE_LIMIT_LOGINS_PER_MINUTE", 10
        ),
        download_rate_limit_per_minute=_safe_int_env(
            "FILEDROP_RATE_LIMIT_DOWNLOADS_PER_MINUTE", 120
        ),
        rate_limit_storage=os.environ.get("FILEDROP_RATE_LIMIT_STORAGE", "memory://"),
        session_cookie_secure=bool(cookie_secure),
        log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    )


SETTINGS = load_settings()


def load_secret_key(settings: Settings = SETTINGS) -> str:
    env_secret = os.environ.get("SECRET_KEY")
    if env_secret:
        return env_secret

    secret_path = settings.data_dir / ".secret_key"
    try:
        settings.data_dir.mkdir(parents=True, exist_ok=True)
        try:
            # Exclusive create so concurrent workers agree on one key.
            fd = os.open(secret_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            existing = secret_path.read_text(encoding="utf-8").strip()
            if existing:
                return existing
            config_logger.warning("Secret key file exists but is empty, regenerating")
            fd = os.open(secret_path, os.O_WRONLY | os.O_TRUNC, 0o600)

        generated = secrets.token_hex(32)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(generated)
            handle.flush()
            os.fsync(handle.fileno())
        config_logger.warning("Generated new secret key - stored in %s", secret_path)
        return generated
    except OSError as error:
        config_logger.critical(
            "SECURITY WARNING: Using in-memory secret key. Sessions will not persist across restarts. "
            "Set SECRET_KEY environment variable for production use. Error: %s",
            error,
        )
        return secrets.token_hex(32)
