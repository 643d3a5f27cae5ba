"""
Configuration for the incident response orchestrator.

Every component reads a frozen dataclass section of ``OrchestratorConfig``.
Each value comes from the first source that defines it: an environment
variable, then the JSON config file, then the dataclass default.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from incident_orchestrator.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# =============================================================================
# Defaults
# =============================================================================

# Estimated duration per recovery action, in seconds
DEFAULT_STEP_DURATIONS: dict[str, float] = {
    "health_check": 60.0,
    "service_restart": 300.0,
    "scale_out": 300.0,
    "failover_traffic": 120.0,
    "isolate_traffic": 60.0,
    "restore_traffic": 60.0,
    "restore_from_backup": 1800.0,
    "manual_intervention": 3600.0,
}

DEFAULT_APPROVAL_ROLES: dict[str, list[str]] = {
    "high": ["on_call_engineer"],
    "critical": ["on_call_engineer", "incident_commander"],
}

# Severities whose plans always wait for approval
GATED_SEVERITIES = ("high", "critical")

DEFAULT_SEVERITY_CHANNELS: dict[str, list[str]] = {
    "low": ["chat"],
    "medium": ["chat", "email"],
    "high": ["chat", "email"],
    "critical": ["chat", "email", "topic"],
}

MIN_TICK_INTERVAL_SECONDS = 60
MAX_TICK_INTERVAL_SECONDS = 300

# Searched in order when ORCHESTRATOR_CONFIG is unset
CONFIG_FILE_PATHS = [
    Path("config.json"),
    Path("./config/config.json"),
    Path.home() / ".incident_orchestrator" / "config.json",
    Path("/etc/incident_orchestrator/config.json"),
]


def _locate_config_file() -> Path | None:
    """First existing config file, preferring ORCHESTRATOR_CONFIG."""
    explicit = os.getenv("ORCHESTRATOR_CONFIG")
    if explicit:
        if Path(explicit).exists():
            return Path(explicit)
        logger.warning(f"ORCHESTRATOR_CONFIG points at a missing file: {explicit}")
    return next((path for path in CONFIG_FILE_PATHS if path.exists()), None)


def _load_config_file() -> dict[str, Any]:
    """Parsed JSON of the located config file, or ``{}`` when there is none."""
    path = _locate_config_file()
    if path is None:
        return {}
    with path.open() as f:
        return json.load(f)


def _get_env_or_config(
    env_key: str,
    config_dict: dict[str, Any],
    config_key: str,
    default: Any,
    type_cast: Any = None,
) -> Any:
    """Resolve one setting: environment first, then the config section, then ``default``.

    ``type_cast`` converts the raw environment string. ``bool`` accepts
    ``true``, ``1`` and ``yes`` in any case.
    """
    raw = os.getenv(env_key)
    if raw is None:
        return config_dict.get(config_key, default)
    if type_cast is bool:
        return raw.lower() in ("true", "1", "yes")
    return type_cast(raw) if type_cast else raw


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class MetricsConfig:
    """Configuration for the metrics gateway and its HTTP providers."""

    endpoints: tuple[str, ...] = ("http://localhost:9090",)
    timeout_seconds: int = 10
    max_retries: int = 3
    pool_connections: int = 20
    pool_maxsize: int = 20
    circuit_breaker_threshold: int = 5
    circuit_breaker_timeout_seconds: int = 300
    retry_backoff_factor: float = 0.3
    retry_status_forcelist: tuple[int, ...] = (500, 502, 503, 504)
    query_step_seconds: int = 60

    # Gateway-level retry of a whole provider call
    retry_attempts: int = 3
    retry_base_delay: float = 0.5
    retry_max_delay: float = 8.0

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> MetricsConfig:
        """Section from ``config`` with environment overrides applied."""
        m_config = config.get("metrics", {})
        return cls(
            endpoints=tuple(_get_env_or_config("METRICS_ENDPOINTS", m_config, "endpoints", cls.endpoints, _split_csv)),
            timeout_seconds=_get_env_or_config("METRICS_TIMEOUT", m_config, "timeout_seconds", cls.timeout_seconds, int),
            max_retries=_get_env_or_config("METRICS_MAX_RETRIES", m_config, "max_retries", cls.max_retries, int),
            pool_connections=m_config.get("pool_connections", cls.pool_connections),
            pool_maxsize=m_config.get("pool_maxsize", cls.pool_maxsize),
            circuit_breaker_threshold=m_config.get("circuit_breaker_threshold", cls.circuit_breaker_threshold),
            circuit_breaker_timeout_seconds=m_config.get("circuit_breaker_timeout_seconds", cls.circuit_breaker_timeout_seconds),
            retry_backoff_factor=m_config.get("retry_backoff_factor", cls.retry_backoff_factor),
            retry_status_forcelist=tuple(m_config.get("retry_status_forcelist", cls.retry_status_forcelist)),
            query_step_seconds=m_config.get("query_step_seconds", cls.query_step_seconds),
            retry_attempts=m_config.get("retry_attempts", cls.retry_attempts),
            retry_base_delay=m_config.get("retry_base_delay", cls.retry_base_delay),
            retry_max_delay=m_config.get("retry_max_delay", cls.retry_max_delay),
        )

    @classmethod
    def from_env(cls) -> MetricsConfig:
        """Section from the located config file and the environment."""
        return cls.from_config(_load_config_file())


@dataclass(frozen=True)
class DetectionConfig:
    """Configuration for the anomaly detector.

    ``rules`` holds raw rule dictionaries; they are parsed into monitoring
    rules when the rule registry is built.
    """

    coalesce_window_minutes: float = 5.0
    baseline_window_days: int = 14
    baseline_sigma: float = 3.0
    min_baseline_samples: int = 30
    baseline_severity: str = "medium"
    rules: tuple[dict[str, Any], ...] = ()

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> DetectionConfig:
        d_config = config.get("detection", {})
        return cls(
            coalesce_window_minutes=d_config.get("coalesce_window_minutes", cls.coalesce_window_minutes),
            baseline_window_days=d_config.get("baseline_window_days", cls.baseline_window_days),
            baseline_sigma=d_config.get("baseline_sigma", cls.baseline_sigma),
            min_baseline_samples=d_config.get("min_baseline_samples", cls.min_baseline_samples),
            baseline_severity=d_config.get("baseline_severity", cls.baseline_severity),
            rules=tuple(d_config.get("rules", ())),
        )

    @classmethod
    def from_env(cls) -> DetectionConfig:
        return cls.from_config(_load_config_file())


@dataclass(frozen=True)
class ClassificationConfig:
    """Configuration for the incident classifier."""

    history_limit: int = 10
    root_cause_overlap_ratio: float = 0.6
    impact_escalation_resources: int = 2

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> ClassificationConfig:
        c_config = config.get("classification", {})
        return cls(
            history_limit=c_config.get("history_limit", cls.history_limit),
            root_cause_overlap_ratio=c_config.get("root_cause_overlap_ratio", cls.root_cause_overlap_ratio),
            impact_escalation_resources=c_config.get("impact_escalation_resources", cls.impact_escalation_resources),
        )

    @classmethod
    def from_env(cls) -> ClassificationConfig:
        return cls.from_config(_load_config_file())


@dataclass(frozen=True)
class PlanningConfig:
    """Configuration for recovery planning.

    Step durations are in seconds and keyed by action name. Scaling and
    routing parameters feed the catalog steps.
    """

    step_durations: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_STEP_DURATIONS))
    approval_roles: dict[str, list[str]] = field(default_factory=lambda: {
        k: list(v) for k, v in DEFAULT_APPROVAL_ROLES.items()
    })
    scale_out_replicas: int = 4
    baseline_replicas: int = 2
    primary_target: str = "primary"
    failover_target: str = "secondary"
    isolation_target: str = "maintenance"
    backup_ref_template: str = "{service}-latest"

    def __post_init__(self) -> None:
        for severity in GATED_SEVERITIES:
            if not self.approval_roles.get(severity):
                raise ConfigurationError(
                    f"planning.approval_roles.{severity}",
                    reason="high and critical plans need at least one approving role",
                    value=self.approval_roles.get(severity),
                )

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> PlanningConfig:
        p_config = config.get("planning", {})
        durations = dict(DEFAULT_STEP_DURATIONS)
        durations.update(p_config.get("step_durations", {}))
        roles = {k: list(v) for k, v in DEFAULT_APPROVAL_ROLES.items()}
        roles.update(p_config.get("approval_roles", {}))
        return cls(
            step_durations=durations,
            approval_roles=roles,
            scale_out_replicas=p_config.get("scale_out_replicas", cls.scale_out_replicas),
            baseline_replicas=p_config.get("baseline_replicas", cls.baseline_replicas),
            primary_target=p_config.get("primary_target", cls.primary_target),
            failover_target=p_config.get("failover_target", cls.failover_target),
            isolation_target=p_config.get("isolation_target", cls.isolation_target),
            backup_ref_template=p_config.get("backup_ref_template", cls.backup_ref_template),
        )

    @classmethod
    def from_env(cls) -> PlanningConfig:
        return cls.from_config(_load_config_file())


@dataclass(frozen=True)
class ExecutionConfig:
    """Configuration for the recovery executor."""

    timeout_multiplier: float = 2.0
    poll_interval_seconds: float = 5.0
    platform_retry_attempts: int = 3
    platform_retry_base_delay: float = 0.5
    platform_retry_max_delay: float = 8.0
    postcheck_window_minutes: float = 5.0

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> ExecutionConfig:
        e_config = config.get("execution", {})
        return cls(
            timeout_multiplier=e_config.get("timeout_multiplier", cls.timeout_multiplier),
            poll_interval_seconds=_get_env_or_config(
                "EXECUTION_POLL_INTERVAL", e_config, "poll_interval_seconds", cls.poll_interval_seconds, float
            ),
            platform_retry_attempts=e_config.get("platform_retry_attempts", cls.platform_retry_attempts),
            platform_retry_base_delay=e_config.get("platform_retry_base_delay", cls.platform_retry_base_delay),
            platform_retry_max_delay=e_config.get("platform_retry_max_delay", cls.platform_retry_max_delay),
            postcheck_window_minutes=e_config.get("postcheck_window_minutes", cls.postcheck_window_minutes),
        )

    @classmethod
    def from_env(cls) -> ExecutionConfig:
        return cls.from_config(_load_config_file())


@dataclass(frozen=True)
class EmailConfig:
    """SMTP settings for the email channel."""

    smtp_host: str | None = None
    smtp_port: int = 587
    use_tls: bool = True
    username: str | None = None
    password: str | None = None
    from_address: str = "incident-orchestrator@localhost"
    to_addresses: tuple[str, ...] = ()

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> EmailConfig:
        email_config = config.get("alerting", {}).get("email", {})
        return cls(
            smtp_host=_get_env_or_config("SMTP_HOST", email_config, "smtp_host", cls.smtp_host),
            smtp_port=_get_env_or_config("SMTP_PORT", email_config, "smtp_port", cls.smtp_port, int),
            use_tls=email_config.get("use_tls", cls.use_tls),
            username=_get_env_or_config("SMTP_USERNAME", email_config, "username", cls.username),
            password=_get_env_or_config("SMTP_PASSWORD", email_config, "password", cls.password),
            from_address=email_config.get("from_address", cls.from_address),
            to_addresses=tuple(
                _get_env_or_config("ALERT_EMAIL_TO", email_config, "to_addresses", cls.to_addresses, _split_csv)
            ),
        )


@dataclass(frozen=True)
class AlertingConfig:
    """Configuration for alert aggregation and routing."""

    aggregation_window_minutes: float = 15.0
    severity_channels: dict[str, list[str]] = field(default_factory=lambda: {
        k: list(v) for k, v in DEFAULT_SEVERITY_CHANNELS.items()
    })
    slack_webhook_url: str | None = None
    slack_channel: str = "#incidents"
    topic_url: str | None = None
    timeout_seconds: int = 10
    email: EmailConfig = field(default_factory=EmailConfig)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> AlertingConfig:
        """Section from ``config`` with environment overrides applied."""
        a_config = config.get("alerting", {})
        channels = {k: list(v) for k, v in DEFAULT_SEVERITY_CHANNELS.items()}
        channels.update(a_config.get("severity_channels", {}))
        return cls(
            aggregation_window_minutes=a_config.get("aggregation_window_minutes", cls.aggregation_window_minutes),
            severity_channels=channels,
            slack_webhook_url=_get_env_or_config("SLACK_WEBHOOK_URL", a_config, "slack_webhook_url", cls.slack_webhook_url),
            slack_channel=a_config.get("slack_channel", cls.slack_channel),
            topic_url=_get_env_or_config("ALERT_TOPIC_URL", a_config, "topic_url", cls.topic_url),
            timeout_seconds=a_config.get("timeout_seconds", cls.timeout_seconds),
            email=EmailConfig.from_config(config),
        )

    @classmethod
    def from_env(cls) -> AlertingConfig:
        return cls.from_config(_load_config_file())


@dataclass(frozen=True)
class StorageConfig:
    """Configuration for the SQLite state store."""

    db_path: str = "./incident_orchestrator.db"

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> StorageConfig:
        s_config = config.get("storage", {})
        return cls(
            db_path=_get_env_or_config("ORCHESTRATOR_DB_PATH", s_config, "db_path", cls.db_path),
        )

    @classmethod
    def from_env(cls) -> StorageConfig:
        return cls.from_config(_load_config_file())


@dataclass(frozen=True)
class ControlLoopConfig:
    """Configuration for the control loop and its scheduler."""

    interval_seconds: int = 120
    max_workers: int = 4
    detection_window_minutes: float = 5.0

    def __post_init__(self) -> None:
        if not MIN_TICK_INTERVAL_SECONDS <= self.interval_seconds <= MAX_TICK_INTERVAL_SECONDS:
            raise ConfigurationError(
                "control_loop.interval_seconds",
                reason=f"must be between {MIN_TICK_INTERVAL_SECONDS} and {MAX_TICK_INTERVAL_SECONDS}",
                value=self.interval_seconds,
            )
        if self.max_workers < 1:
            raise ConfigurationError(
                "control_loop.max_workers", reason="must be at least 1", value=self.max_workers
            )

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> ControlLoopConfig:
        """Section from ``config`` with environment overrides applied."""
        c_config = config.get("control_loop", {})
        return cls(
            interval_seconds=_get_env_or_config(
                "ORCHESTRATOR_INTERVAL", c_config, "interval_seconds", cls.interval_seconds, int
            ),
            max_workers=_get_env_or_config("ORCHESTRATOR_MAX_WORKERS", c_config, "max_workers", cls.max_workers, int),
            detection_window_minutes=c_config.get("detection_window_minutes", cls.detection_window_minutes),
        )

    @classmethod
    def from_env(cls) -> ControlLoopConfig:
        return cls.from_config(_load_config_file())


@dataclass(frozen=True)
class PlatformConfig:
    """Where to find the runtime platform implementation.

    ``factory`` is a ``"package.module:callable"`` path; the callable receives
    ``options`` as keyword arguments and returns a RuntimePlatform.
    """

    factory: str | None = None
    options: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> PlatformConfig:
        p_config = config.get("platform", {})
        return cls(
            factory=_get_env_or_config("ORCHESTRATOR_PLATFORM", p_config, "factory", cls.factory),
            options=dict(p_config.get("options", {})),
        )


@dataclass(frozen=True)
class LoggingConfig:
    """Configuration for log output."""

    level: str = "INFO"
    json_format: bool = False

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> LoggingConfig:
        l_config = config.get("logging", {})
        return cls(
            level=_get_env_or_config("LOG_LEVEL", l_config, "level", cls.level),
            json_format=_get_env_or_config("LOG_JSON", l_config, "json_format", cls.json_format, bool),
        )


@dataclass
class OrchestratorConfig:
    """All configuration sections, plus the file they were read from."""

    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    classification: ClassificationConfig = field(default_factory=ClassificationConfig)
    planning: PlanningConfig = field(default_factory=PlanningConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    alerting: AlertingConfig = field(default_factory=AlertingConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    control_loop: ControlLoopConfig = field(default_factory=ControlLoopConfig)
    platform: PlatformConfig = field(default_factory=PlatformConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    config_file_path: str | None = None

    @classmethod
    def from_file(cls, file_path: str | Path) -> OrchestratorConfig:
        """Read ``file_path`` and apply environment overrides on top.

        Raises:
            FileNotFoundError: The file does not exist.
            json.JSONDecodeError: The file is not valid JSON.
            ConfigurationError: A value is out of range.
        """
        path = Path(file_path)
        with path.open() as f:
            return cls.from_config(json.load(f), config_file_path=str(path))

    @classmethod
    def from_config(cls, config: dict[str, Any], config_file_path: str | None = None) -> OrchestratorConfig:
        sections = (
            MetricsConfig, DetectionConfig, ClassificationConfig, PlanningConfig, ExecutionConfig,
            AlertingConfig, StorageConfig, ControlLoopConfig, PlatformConfig, LoggingConfig,
        )
        metrics, detection, classification, planning, execution, alerting, storage, control_loop, platform, log = (
            section.from_config(config) for section in sections
        )
        return cls(
            metrics=metrics,
            detection=detection,
            classification=classification,
            planning=planning,
            execution=execution,
            alerting=alerting,
            storage=storage,
            control_loop=control_loop,
            platform=platform,
            logging=log,
            config_file_path=config_file_path,
        )

    @classmethod
    def from_env(cls) -> OrchestratorConfig:
        """Configuration from the located config file (if any) and the environment."""
        path = _locate_config_file()
        return cls.from_config(_load_config_file(), config_file_path=str(path) if path else None)

    @classmethod
    def default(cls) -> OrchestratorConfig:
        """Dataclass defaults only, ignoring files and environment."""
        return cls()


_config: OrchestratorConfig | None = None


def get_config() -> OrchestratorConfig:
    """Process-wide configuration, loaded on first access."""
    global _config
    if _config is None:
        _config = OrchestratorConfig.from_env()
    return _config


def set_config(config: OrchestratorConfig) -> None:
    global _config
    _config = config


def reset_config() -> None:
    """Drop the cached configuration so the next ``get_config`` reloads it."""
    global _config
    _config = None
