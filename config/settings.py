"""
Configuration loader for the booking job orchestration core.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class QueueDefinition:
    attempts: int = 3
    backoff_type: str = "exponential"   # "fixed" | "exponential"
    backoff_delay_ms: int = 2000
    concurrency: int = 5


def _default_queue_definitions() -> dict[str, QueueDefinition]:
    return {
        "social": QueueDefinition(attempts=3, concurrency=5),
        "event-sync": QueueDefinition(attempts=3, concurrency=3),
        "webhook": QueueDefinition(attempts=5, concurrency=10),
        "space-hold-expire": QueueDefinition(attempts=1, concurrency=2),
    }


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "jobs"
    poll_timeout: float = 2.0           # seconds a worker blocks waiting for a job
    delayed_promote_interval: float = 1.0
    shutdown_timeout: float = 30.0      # seconds in-flight jobs get to finish on stop
    remove_on_complete: int = 100       # archived completed jobs kept per queue
    remove_on_fail: int = 50            # archived failed jobs kept per queue
    queues: dict[str, QueueDefinition] = field(default_factory=_default_queue_definitions)


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./booking_jobs.db"          # postgresql:// | sqlite://
    store_backend: str = "memory"                     # "sql" | "memory"
    echo: bool = False


@dataclass
class WebhookConfig:
    timeout_seconds: float = 10.0
    user_agent: str = "Tripfluence-Webhooks/1.0"
    max_response_chars: int = 1000


@dataclass
class ProviderCredentials:
    client_id: str = ""
    client_secret: str = ""
    api_base: str = ""


@dataclass
class ProvidersConfig:
    use_real_providers: bool = False
    request_timeout: float = 30.0
    transport_retries: int = 3
    facebook: ProviderCredentials = field(default_factory=ProviderCredentials)
    google: ProviderCredentials = field(default_factory=ProviderCredentials)
    eventbrite: ProviderCredentials = field(default_factory=ProviderCredentials)
    meetup: ProviderCredentials = field(default_factory=ProviderCredentials)


@dataclass
class SecurityConfig:
    token_encryption_key: str = ""


@dataclass
class HoldConfig:
    duration_hours: int = 24


@dataclass
class MaintenanceConfig:
    token_refresh_enabled: bool = True
    token_refresh_interval_minutes: int = 30
    audit_retention_days: int = 90
    audit_cleanup_interval_hours: int = 24


@dataclass
class Settings:
    app_name: str = "BookingJobs"
    debug: bool = False
    json_logs: bool = False
    run_workers_in_api: bool = False
    queue: QueueConfig = field(default_factory=QueueConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    hold: HoldConfig = field(default_factory=HoldConfig)
    maintenance: MaintenanceConfig = field(default_factory=MaintenanceConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} and ${VAR_NAME:-default} patterns with environment values."""
    pattern = re.compile(r'\$\{(\w+)(?::-([^}]*))?\}')
    def replacer(match):
        var_name, default = match.group(1), match.group(2)
        if default is not None:
            return os.environ.get(var_name, default)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _as_bool(value: Any, default: bool = False) -> bool:
    """YAML booleans pass through; env-substituted strings like "true"/"0" are parsed."""
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _credentials(raw: dict[str, Any]) -> ProviderCredentials:
    return ProviderCredentials(
        client_id=str(raw.get("client_id", "")),
        client_secret=str(raw.get("client_secret", "")),
        api_base=str(raw.get("api_base", "")),
    )


def parse_settings(raw: dict[str, Any]) -> Settings:
    """Build a Settings object from an already-loaded mapping."""
    raw = _process_values(raw or {})
    settings = Settings()

    settings.app_name = raw.get("app_name", settings.app_name)
    settings.debug = _as_bool(raw.get("debug"), settings.debug)
    settings.json_logs = _as_bool(raw.get("json_logs"), settings.json_logs)
    settings.run_workers_in_api = _as_bool(raw.get("run_workers_in_api"), settings.run_workers_in_api)

    if "queue" in raw:
        q = raw["queue"]
        queues = _default_queue_definitions()
        for name, qdef in (q.get("queues") or {}).items():
            base = queues.get(name, QueueDefinition())
            queues[name] = QueueDefinition(
                attempts=int(qdef.get("attempts", base.attempts)),
                backoff_type=qdef.get("backoff_type", base.backoff_type),
                backoff_delay_ms=int(qdef.get("backoff_delay_ms", base.backoff_delay_ms)),
                concurrency=int(qdef.get("concurrency", base.concurrency)),
            )
        settings.queue = QueueConfig(
            backend=q.get("backend", "memory"),
            redis_url=q.get("redis_url", "redis://localhost:6379"),
            key_prefix=q.get("key_prefix", "jobs"),
            poll_timeout=float(q.get("poll_timeout", 2.0)),
            delayed_promote_interval=float(q.get("delayed_promote_interval", 1.0)),
            shutdown_timeout=float(q.get("shutdown_timeout", 30.0)),
            remove_on_complete=int(q.get("remove_on_complete", 100)),
            remove_on_fail=int(q.get("remove_on_fail", 50)),
            queues=queues,
        )

    if "database" in raw:
        db = raw["database"]
        settings.database = DatabaseConfig(
            url=db.get("url", settings.database.url),
            store_backend=db.get("store_backend", settings.database.store_backend),
            echo=_as_bool(db.get("echo")),
        )

    if "webhook" in raw:
        wh = raw["webhook"]
        settings.webhook = WebhookConfig(
            timeout_seconds=float(wh.get("timeout_seconds", 10.0)),
            user_agent=wh.get("user_agent", settings.webhook.user_agent),
            max_response_chars=int(wh.get("max_response_chars", 1000)),
        )

    if "providers" in raw:
        p = raw["providers"]
        settings.providers = ProvidersConfig(
            use_real_providers=_as_bool(p.get("use_real_providers")),
            request_timeout=float(p.get("request_timeout", 30.0)),
            transport_retries=int(p.get("transport_retries", 3)),
            facebook=_credentials(p.get("facebook", {})),
            google=_credentials(p.get("google", {})),
            eventbrite=_credentials(p.get("eventbrite", {})),
            meetup=_credentials(p.get("meetup", {})),
        )

    if "security" in raw:
        settings.security = SecurityConfig(
            token_encryption_key=raw["security"].get("token_encryption_key", ""),
        )

    if "hold" in raw:
        settings.hold = HoldConfig(duration_hours=int(raw["hold"].get("duration_hours", 24)))

    if "maintenance" in raw:
        m = raw["maintenance"]
        settings.maintenance = MaintenanceConfig(
            token_refresh_enabled=_as_bool(m.get("token_refresh_enabled"), True),
            token_refresh_interval_minutes=int(m.get("token_refresh_interval_minutes", 30)),
            audit_retention_days=int(m.get("audit_retention_days", 90)),
            audit_cleanup_interval_hours=int(m.get("audit_cleanup_interval_hours", 24)),
        )

    return settings


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "BOOKING_JOBS_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    raw: dict[str, Any] = {}
    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    _settings = parse_settings(raw)
    return _settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
