"""
Configuration loader for the WhatsApp bridge worker.
Reads settings from a YAML file with environment variable substitution,
then applies the flat environment overrides used by deployments.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml
from dotenv import load_dotenv

logger = structlog.get_logger()


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 4000
    environment: str = "development"     # development | production


@dataclass
class WebserviceConfig:
    api_url: str = "http://localhost:3000"
    api_token: str = ""
    timeout: float = 30.0                # seconds
    max_retries: int = 3                 # transport-level retries per request
    retry_backoff: float = 1.0           # seconds, base for exponential transport retries


@dataclass
class RedisConfig:
    url: str = ""
    host: str = "localhost"
    port: int = 6379
    password: str = ""
    db: int = 0
    key_prefix: str = "wq"
    socket_timeout: float = 5.0

    @property
    def connection_url(self) -> str:
        if self.url:
            return self.url
        auth = f":{self.password}@" if self.password else ""
        return f"redis://{auth}{self.host}:{self.port}/{self.db}"


@dataclass
class WhatsAppConfig:
    session_name: str = "whatsapp-session"
    phone_number_id: str = ""
    access_token: str = ""
    verify_token: str = ""
    app_secret: str = ""
    api_base_url: str = "https://graph.facebook.com/v18.0"
    max_reconnect_attempts: int = 5
    reconnect_delay: float = 10.0        # seconds


@dataclass
class WorkerConfig:
    concurrency: int = 5
    max_retries: int = 3
    retry_delay: int = 5000              # ms, base for exponential backoff


@dataclass
class QueueConfig:
    name: str = "whatsapp-jobs"
    backend: str = "redis"               # "redis" for production, "memory" for dev/tests
    remove_on_complete: int = 10         # keep last N completed jobs
    remove_on_fail: int = 5              # keep last N failed jobs
    lock_duration: int = 30000           # ms an active job stays locked without renewal
    stalled_interval: int = 30000        # ms between stalled-job scans
    max_stalled_count: int = 1
    poll_interval: int = 1000            # ms idle workers wait before re-checking
    operation_timeout: float = 5.0       # seconds before an enqueue is abandoned


@dataclass
class MonitoringConfig:
    heartbeat_interval: float = 30.0           # seconds
    cleanup_interval: float = 3600.0           # seconds
    memory_check_interval: float = 300.0       # seconds
    memory_threshold_mb: int = 500
    clean_older_than: int = 24 * 60 * 60 * 1000  # ms
    emergency_timeout: float = 5.0             # seconds


@dataclass
class SecurityConfig:
    allowed_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])


@dataclass
class LoggingConfig:
    level: str = "info"
    file: str = "logs/worker.log"
    json: bool = False


@dataclass
class BotConfig:
    prefix: str = "!"
    auto_reply_enabled: bool = False
    welcome_message: str = "Hi! I'm a WhatsApp bot. Send !help to see the available commands."


@dataclass
class Settings:
    app_name: str = "WhatsApp Bot Worker"
    version: str = "1.0.0"
    server: ServerConfig = field(default_factory=ServerConfig)
    webservice: WebserviceConfig = field(default_factory=WebserviceConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    bot: BotConfig = field(default_factory=BotConfig)


_settings: Optional[Settings] = None

# env var → (section, attribute, caster)
_ENV_OVERRIDES: dict[str, tuple[str, str, Any]] = {
    "PORT": ("server", "port", int),
    "NODE_ENV": ("server", "environment", str),
    "APP_ENV": ("server", "environment", str),
    "WEBSERVICE_API_URL": ("webservice", "api_url", str),
    "WEBSERVICE_API_TOKEN": ("webservice", "api_token", str),
    "REDIS_URL": ("redis", "url", str),
    "REDIS_HOST": ("redis", "host", str),
    "REDIS_PORT": ("redis", "port", int),
    "REDIS_PASSWORD": ("redis", "password", str),
    "WHATSAPP_SESSION_NAME": ("whatsapp", "session_name", str),
    "WHATSAPP_PHONE_NUMBER_ID": ("whatsapp", "phone_number_id", str),
    "WHATSAPP_ACCESS_TOKEN": ("whatsapp", "access_token", str),
    "WHATSAPP_VERIFY_TOKEN": ("whatsapp", "verify_token", str),
    "WHATSAPP_APP_SECRET": ("whatsapp", "app_secret", str),
    "WORKER_CONCURRENCY": ("worker", "concurrency", int),
    "WORKER_MAX_RETRIES": ("worker", "max_retries", int),
    "WORKER_RETRY_DELAY": ("worker", "retry_delay", int),
    "QUEUE_NAME": ("queue", "name", str),
    "QUEUE_BACKEND": ("queue", "backend", str),
    "QUEUE_REMOVE_ON_COMPLETE": ("queue", "remove_on_complete", int),
    "QUEUE_REMOVE_ON_FAIL": ("queue", "remove_on_fail", int),
    "ALLOWED_ORIGINS": ("security", "allowed_origins", lambda v: [o.strip() for o in v.split(",") if o.strip()]),
    "LOG_LEVEL": ("logging", "level", str),
    "LOG_FILE": ("logging", "file", str),
    "BOT_PREFIX": ("bot", "prefix", str),
    "BOT_AUTO_REPLY_ENABLED": ("bot", "auto_reply_enabled", lambda v: v.lower() == "true"),
    "BOT_WELCOME_MESSAGE": ("bot", "welcome_message", str),
}

_REQUIRED_ENV_VARS = ["WEBSERVICE_API_URL"]


def _substitute_env_vars(value: str, environ: dict[str, str]) -> str:
    """Replace ${VAR_NAME} patterns with values from ``environ``."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any, environ: dict[str, str]) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj, environ)
    elif isinstance(obj, dict):
        return {k: _process_values(v, environ) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v, environ) for v in obj]
    return obj


def _apply_section(section: Any, values: dict[str, Any]) -> None:
    for key, value in values.items():
        if hasattr(section, key):
            setattr(section, key, value)


def _apply_env_overrides(settings: Settings, environ: dict[str, str]) -> None:
    for var, (section_name, attr, caster) in _ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        section = getattr(settings, section_name)
        try:
            setattr(section, attr, caster(raw))
        except ValueError:
            logger.warning("invalid_env_override", var=var, value=raw)


def load_settings(config_path: str = None, environ: dict[str, str] = None) -> Settings:
    """Load settings from YAML, then apply environment overrides."""
    global _settings

    if environ is None:
        load_dotenv()
        environ = dict(os.environ)

    if config_path is None:
        config_path = environ.get(
            "WORKER_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw, environ)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.version = raw.get("version", settings.version)

        for section_name in (
            "server", "webservice", "redis", "whatsapp", "worker", "queue",
            "monitoring", "security", "logging", "bot",
        ):
            if isinstance(raw.get(section_name), dict):
                _apply_section(getattr(settings, section_name), raw[section_name])

    _apply_env_overrides(settings, environ)

    missing = [var for var in _REQUIRED_ENV_VARS if not environ.get(var)]
    if missing:
        logger.warning("missing_environment_variables", missing=missing)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
