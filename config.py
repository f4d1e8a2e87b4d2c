"""
Runtime configuration and logging setup.

Settings resolve in this order (later wins): built-in defaults, optional YAML file,
environment variables, CLI overrides. Environment variable names:
- GITLAB_INSTANCE_URL, GITLAB_CLIENT_ID, GITLAB_CLIENT_SECRET
- MIRROR_DB_PATH, MIRROR_POLLING_CRON, MIRROR_REQUEST_TIMEOUT, MIRROR_PER_PAGE, MIRROR_MAX_PAGES
- MIRROR_DB_TIMEOUT, MIRROR_JOB_RETRIES, MIRROR_MAX_CONCURRENCY
- MIRROR_PEOPLE_BATCH_SIZE, MIRROR_STORE_BATCH_SIZE, MIRROR_MANUAL_RETRY_DELAYS (comma separated seconds)
- MIRROR_TOKEN_REFRESH_SKEW, MIRROR_JOURNAL_TTL, MIRROR_LOG_LEVEL, MIRROR_LOG_FILE
"""

import logging
import logging.handlers
import os
import re
from typing import Any, Dict, List, Mapping, Optional

import yaml
from croniter import croniter

from errors import ConfigError

DEFAULTS: Dict[str, Any] = {
    "gitlab_url": "https://gitlab.com",
    "client_id": "",
    "client_secret": "",
    "db_path": "mirror.db",
    "cron": "*/10 * * * *",
    "request_timeout": 5.0,
    "per_page": 100,
    "max_pages": None,
    "db_timeout": 15.0,
    "job_retries": 3,
    "max_concurrency": 5,
    "people_batch_size": 100,
    "store_batch_size": 500,
    "manual_retry_delays": [1.0, 2.0, 4.0],
    "token_refresh_skew": 60.0,
    "journal_ttl": 86400.0,
    "log_level": "INFO",
    "log_file": None,
}

ENV_VARS = {
    "gitlab_url": "GITLAB_INSTANCE_URL",
    "client_id": "GITLAB_CLIENT_ID",
    "client_secret": "GITLAB_CLIENT_SECRET",
    "db_path": "MIRROR_DB_PATH",
    "cron": "MIRROR_POLLING_CRON",
    "request_timeout": "MIRROR_REQUEST_TIMEOUT",
    "per_page": "MIRROR_PER_PAGE",
    "max_pages": "MIRROR_MAX_PAGES",
    "db_timeout": "MIRROR_DB_TIMEOUT",
    "job_retries": "MIRROR_JOB_RETRIES",
    "max_concurrency": "MIRROR_MAX_CONCURRENCY",
    "people_batch_size": "MIRROR_PEOPLE_BATCH_SIZE",
    "store_batch_size": "MIRROR_STORE_BATCH_SIZE",
    "manual_retry_delays": "MIRROR_MANUAL_RETRY_DELAYS",
    "token_refresh_skew": "MIRROR_TOKEN_REFRESH_SKEW",
    "journal_ttl": "MIRROR_JOURNAL_TTL",
    "log_level": "MIRROR_LOG_LEVEL",
    "log_file": "MIRROR_LOG_FILE",
}

_FLOATS = ("request_timeout", "db_timeout", "token_refresh_skew", "journal_ttl")
_INTS = ("per_page", "job_retries", "max_concurrency", "people_batch_size", "store_batch_size")
_POSITIVE = ("per_page", "max_concurrency", "people_batch_size", "store_batch_size", "request_timeout", "db_timeout")


def _parse_delays(raw) -> List[float]:
    if isinstance(raw, str):
        raw = [p for p in raw.split(",") if p.strip()]
    try:
        delays = [float(d) for d in raw]
    except (TypeError, ValueError):
        raise ConfigError(f"manual_retry_delays must be a list of seconds, got {raw!r}")
    if any(d < 0 for d in delays):
        raise ConfigError("manual_retry_delays must not be negative")
    return delays


def _coerce(key: str, value: Any) -> Any:
    if value is None or value == "":
        if key in ("max_pages", "log_file"):
            return None
        default = DEFAULTS.get(key)
        return list(default) if isinstance(default, list) else default
    try:
        if key in _FLOATS:
            value = float(value)
        elif key in _INTS:
            value = int(value)
        elif key == "max_pages":
            value = int(value)
        elif key == "manual_retry_delays":
            return _parse_delays(value)
    except (TypeError, ValueError):
        raise ConfigError(f"invalid value for {key}: {value!r}")
    if key in _POSITIVE and value <= 0:
        raise ConfigError(f"{key} must be positive, got {value!r}")
    return value


class Settings:
    """
    Resolved configuration. Attribute names match the keys in DEFAULTS.
    """

    def __init__(self, values: Optional[Mapping[str, Any]] = None):
        merged = dict(DEFAULTS)
        merged["manual_retry_delays"] = list(DEFAULTS["manual_retry_delays"])
        for k, v in (values or {}).items():
            if k in DEFAULTS:
                merged[k] = _coerce(k, v)
        self.__dict__.update(merged)
        self._validate()

    def _validate(self):
        if not croniter.is_valid(self.cron):
            raise ConfigError(f"invalid cron expression: {self.cron!r}")
        self.gitlab_url = (self.gitlab_url or DEFAULTS["gitlab_url"]).rstrip("/")
        self.log_level = str(self.log_level or "INFO").upper()

    def override(self, **overrides) -> "Settings":
        """Return a copy with non-None overrides applied (CLI flags)."""
        values = self.as_dict()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return Settings(values)

    def as_dict(self) -> Dict[str, Any]:
        return {k: getattr(self, k) for k in DEFAULTS}

    def __repr__(self):
        shown = self.as_dict()
        if shown.get("client_secret"):
            shown["client_secret"] = "[REDACTED]"
        return f"Settings({shown})"


def _load_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as ex:
        raise ConfigError(f"failed to read config file {path}: {ex}")
    if not isinstance(doc, dict):
        raise ConfigError(f"config file {path} must contain a mapping")
    return {k: v for k, v in doc.items() if k in DEFAULTS}


def _from_env(environ: Mapping[str, str]) -> Dict[str, Any]:
    values = {}
    for key, env_name in ENV_VARS.items():
        raw = environ.get(env_name)
        if raw is not None and raw != "":
            values[key] = raw
    return values


def load_settings(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None, **overrides) -> Settings:
    """Build Settings from YAML file (optional), environment and explicit overrides."""
    environ = os.environ if environ is None else environ
    path = path or environ.get("MIRROR_CONFIG")
    values: Dict[str, Any] = {}
    if path:
        values.update(_load_yaml(path))
    values.update(_from_env(environ))
    values.update({k: v for k, v in overrides.items() if v is not None})
    return Settings(values)


# --- logging ---

_REDACTIONS = (
    (re.compile(r"\bBearer\s+[A-Za-z0-9_.\-=]+", re.IGNORECASE), "Bearer [REDACTED]"),
    (re.compile(r"\b(glp[a-z]{1,2}-[A-Za-z0-9_-]{10,})\b"), "[GITLAB_TOKEN]"),
    (re.compile(r"((?:access_token|refresh_token|client_secret|token)['\"]?\s*[=:]\s*['\"]?)[^\s&;,'\"]+", re.IGNORECASE), r"\1[REDACTED]"),
)


def redact(text: str) -> str:
    for pattern, replacement in _REDACTIONS:
        text = pattern.sub(replacement, text)
    return text


class RedactingFilter(logging.Filter):
    """Masks credentials in the formatted message before any handler writes it."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str = "INFO", log_file: Optional[str] = None, max_size_mb: int = 10, backup_count: int = 5) -> logging.Logger:
    """Install console (and optionally rotating file) handlers on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    for handler in list(root.handlers):
        if getattr(handler, "_mirror_handler", False):
            root.removeHandler(handler)

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(log_file, maxBytes=max_size_mb * 1024 * 1024, backupCount=backup_count, encoding="utf-8")
        )
    formatter = logging.Formatter(LOG_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(RedactingFilter())
        handler._mirror_handler = True
        root.addHandler(handler)
    # requests/urllib3 log full URLs at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return root


__all__ = ["Settings", "load_settings", "configure_logging", "RedactingFilter", "redact", "DEFAULTS"]
