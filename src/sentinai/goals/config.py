"""Goal autonomy configuration with validation, YAML persistence and env loading.

Each subsystem has its own pydantic section with bounded fields. Values read
from a YAML file are validated strictly; values read from the environment are
parsed leniently (unparsable -> default, out of range -> clamped) so a typo in
a deployment variable never takes the control loop down.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .exceptions import ConfigurationError
from .retry_policy import GoalRetryPolicy

logger = logging.getLogger(__name__)


class LeaseConfig(BaseModel):
    """Lease and idempotency TTLs for dispatch exclusivity.

    Attributes:
        lease_ttl_seconds: Lifetime of a goal lease (30-3600)
        idempotency_ttl_seconds: Lifetime of an idempotency record (30-604800)
        heartbeat_interval_seconds: Lease renewal period while the planner runs,
            capped at half the lease TTL
    """

    lease_ttl_seconds: int = Field(
        default=120,
        ge=30,
        le=3600,
        description="Goal lease lifetime in seconds",
    )
    idempotency_ttl_seconds: int = Field(
        default=3600,
        ge=30,
        le=7 * 24 * 3600,
        description="Idempotency record lifetime in seconds",
    )
    heartbeat_interval_seconds: float = Field(
        default=20.0,
        gt=0.0,
        le=1800.0,
        description="Lease renewal period in seconds",
    )


class PriorityPolicy(BaseModel):
    """Admission thresholds used by the priority engine.

    Attributes:
        min_confidence: Candidates below this confidence are suppressed
        dedup_window_minutes: Window for recent-candidate duplicate checks
        stale_signal_minutes: Maximum snapshot age before candidates are stale
        default_ttl_minutes: Lifetime of an admitted queue item
    """

    min_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    dedup_window_minutes: int = Field(default=30, ge=1, le=1440)
    stale_signal_minutes: int = Field(default=90, ge=1, le=1440)
    default_ttl_minutes: int = Field(default=60, ge=5, le=1440)


class CandidateConfig(BaseModel):
    max_candidates: int = Field(default=6, ge=1, le=20)
    llm_enhancer_enabled: bool = False


class EnhancerConfig(BaseModel):
    """Chat completion endpoint used to rephrase candidate text.

    Attributes:
        base_url: OpenAI-compatible API root
        model: Model identifier sent with each request
        api_key_env: Environment variable holding the provider credential
        timeout_seconds: HTTP timeout per completion
        temperature: Sampling temperature
        max_tokens: Completion token cap
    """

    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    api_key_env: str = "GOAL_CANDIDATE_LLM_API_KEY"
    fallback_api_key_envs: List[str] = Field(default_factory=lambda: ["OPENAI_API_KEY"])
    timeout_seconds: int = Field(default=30, ge=1, le=300)
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    max_tokens: int = Field(default=900, ge=16, le=8192)

    def resolve_api_key(self, environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
        """Return the first configured provider credential, if any."""
        env = os.environ if environ is None else environ
        for name in [self.api_key_env, *self.fallback_api_key_envs]:
            value = env.get(name)
            if value:
                return value
        return None


class ManagerConfig(BaseModel):
    """Goal manager runtime switches.

    Attributes:
        enabled: Master switch for tick and dispatch
        dispatch_enabled: Allow queue items to be handed to the planner
        dispatch_dry_run: Default dry-run flag for dispatch
        dispatch_allow_writes: Default write permission for dispatch
        read_only_mode: Cluster-wide read-only flag passed to policy checks
        queue_limit: Maximum queue items read per tick (10-500)
    """

    enabled: bool = False
    dispatch_enabled: bool = False
    dispatch_dry_run: bool = True
    dispatch_allow_writes: bool = False
    read_only_mode: bool = False
    queue_limit: int = Field(default=100, ge=10, le=500)
    tick_interval_seconds: int = Field(default=60, ge=5, le=3600)
    dispatch_interval_seconds: int = Field(default=60, ge=5, le=3600)


class GoalAutonomyConfig(BaseModel):
    """Top-level goal autonomy configuration."""

    version: int = Field(default=1, description="Configuration schema version")
    retry: GoalRetryPolicy = Field(default_factory=GoalRetryPolicy)
    lease: LeaseConfig = Field(default_factory=LeaseConfig)
    priority: PriorityPolicy = Field(default_factory=PriorityPolicy)
    candidates: CandidateConfig = Field(default_factory=CandidateConfig)
    enhancer: EnhancerConfig = Field(default_factory=EnhancerConfig)
    manager: ManagerConfig = Field(default_factory=ManagerConfig)

    class Config:
        """Pydantic configuration."""
        validate_assignment = True
        extra = "forbid"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "GoalAutonomyConfig":
        """Build configuration from environment-style variables."""
        env = os.environ if environ is None else environ
        return cls(**_overrides_from_env(env))


# (section, field, env var, kind, default, min, max)
_ENV_FIELDS = [
    ("retry", "max_retries", "GOAL_ORCHESTRATOR_MAX_RETRIES", "int", 2, 0, 10),
    ("retry", "base_backoff_ms", "GOAL_ORCHESTRATOR_BACKOFF_BASE_MS", "int", 15_000, 1000, 900_000),
    ("retry", "max_backoff_ms", "GOAL_ORCHESTRATOR_BACKOFF_MAX_MS", "int", 300_000, 1000, 3_600_000),
    ("lease", "lease_ttl_seconds", "GOAL_ORCHESTRATOR_LEASE_TTL_SECONDS", "int", 120, 30, 3600),
    ("lease", "idempotency_ttl_seconds", "GOAL_ORCHESTRATOR_IDEMPOTENCY_TTL_SECONDS", "int", 3600, 30, 7 * 24 * 3600),
    ("lease", "heartbeat_interval_seconds", "GOAL_ORCHESTRATOR_LEASE_HEARTBEAT_SECONDS", "float", 20.0, 1.0, 1800.0),
    ("priority", "min_confidence", "GOAL_PRIORITY_MIN_CONFIDENCE", "float", 0.5, 0.0, 1.0),
    ("priority", "dedup_window_minutes", "GOAL_PRIORITY_DEDUP_WINDOW_MINUTES", "int", 30, 1, 1440),
    ("priority", "stale_signal_minutes", "GOAL_PRIORITY_STALE_SIGNAL_MINUTES", "int", 90, 1, 1440),
    ("priority", "default_ttl_minutes", "GOAL_PRIORITY_DEFAULT_TTL_MINUTES", "int", 60, 5, 1440),
    ("candidates", "max_candidates", "GOAL_CANDIDATE_MAX", "int", 6, 1, 20),
    ("candidates", "llm_enhancer_enabled", "GOAL_CANDIDATE_LLM_ENABLED", "bool", False, None, None),
    ("enhancer", "base_url", "GOAL_CANDIDATE_LLM_BASE_URL", "str", None, None, None),
    ("enhancer", "model", "GOAL_CANDIDATE_LLM_MODEL", "str", None, None, None),
    ("manager", "enabled", "GOAL_MANAGER_ENABLED", "bool", False, None, None),
    ("manager", "dispatch_enabled", "GOAL_MANAGER_DISPATCH_ENABLED", "bool", False, None, None),
    ("manager", "dispatch_dry_run", "GOAL_MANAGER_DISPATCH_DRY_RUN", "bool", True, None, None),
    ("manager", "dispatch_allow_writes", "GOAL_MANAGER_DISPATCH_ALLOW_WRITES", "bool", False, None, None),
    ("manager", "read_only_mode", "SENTINAI_READ_ONLY_MODE", "bool", False, None, None),
    ("manager", "queue_limit", "GOAL_MANAGER_QUEUE_LIMIT", "int", 100, 10, 500),
    ("manager", "tick_interval_seconds", "GOAL_MANAGER_TICK_INTERVAL_SECONDS", "int", 60, 5, 3600),
    ("manager", "dispatch_interval_seconds", "GOAL_MANAGER_DISPATCH_INTERVAL_SECONDS", "int", 60, 5, 3600),
]


def parse_int_env(value: Optional[str], fallback: int, minimum: int, maximum: int) -> int:
    """Parse an integer variable, clamping into bounds."""
    if not value:
        return fallback
    try:
        parsed = int(value.strip())
    except ValueError:
        return fallback
    return min(maximum, max(minimum, parsed))


def parse_float_env(value: Optional[str], fallback: float, minimum: float, maximum: float) -> float:
    if not value:
        return fallback
    try:
        parsed = float(value.strip())
    except ValueError:
        return fallback
    return min(maximum, max(minimum, parsed))


def parse_bool_env(value: Optional[str], fallback: bool) -> bool:
    if value is None:
        return fallback
    return value.strip() == "true"


def _overrides_from_env(env: Mapping[str, str]) -> Dict[str, Dict[str, Any]]:
    sections: Dict[str, Dict[str, Any]] = {}
    for section, name, var, kind, default, minimum, maximum in _ENV_FIELDS:
        raw = env.get(var)
        if raw is None:
            continue
        if kind == "int":
            value: Any = parse_int_env(raw, default, minimum, maximum)
        elif kind == "float":
            value = parse_float_env(raw, default, minimum, maximum)
        elif kind == "bool":
            value = parse_bool_env(raw, default)
        else:
            if not raw.strip():
                continue
            value = raw.strip()
        sections.setdefault(section, {})[name] = value
    return sections


class GoalConfigManager:
    """Loads and saves goal autonomy configuration as YAML.

    Attributes:
        config_path: Path to configuration file
    """

    def __init__(self, config_path: Optional[Path] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_path: Path to config file (default: ~/.sentinai/config/goals.yaml)
        """
        self._config_path = config_path or (
            Path.home() / ".sentinai" / "config" / "goals.yaml"
        )
        self._config: Optional[GoalAutonomyConfig] = None

    @property
    def config_path(self) -> Path:
        return self._config_path

    def load(self, environ: Optional[Mapping[str, str]] = None) -> GoalAutonomyConfig:
        """Load and validate configuration.

        File values are applied first, then environment overrides.

        Args:
            environ: Optional environment mapping (defaults to ``os.environ``)

        Returns:
            Validated goal autonomy configuration

        Raises:
            ConfigurationError: If the file is malformed or fails validation
        """
        data: Dict[str, Any] = {}
        if self._config_path.exists():
            try:
                with open(self._config_path, encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"Invalid YAML configuration: {exc}") from exc
            if not isinstance(data, dict):
                raise ConfigurationError("Configuration root must be a mapping")

        env = os.environ if environ is None else environ
        for section, overrides in _overrides_from_env(env).items():
            merged = dict(data.get(section) or {})
            merged.update(overrides)
            data[section] = merged

        try:
            self._config = GoalAutonomyConfig(**data)
        except ValidationError as exc:
            error_details = [
                f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
                for err in exc.errors()
            ]
            raise ConfigurationError(
                f"Invalid configuration: {'; '.join(error_details)}"
            ) from exc

        logger.debug(
            "Loaded goal autonomy configuration",
            extra={
                "config_path": str(self._config_path),
                "using_defaults": not self._config_path.exists(),
            },
        )
        return self._config

    def save(self, config: GoalAutonomyConfig) -> None:
        """Save configuration to file."""
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        data = config.model_dump(mode="json")
        with open(self._config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

    def validate(self, config_path: Optional[Path] = None) -> List[str]:
        """Validate a configuration file without loading it.

        Returns:
            List of validation errors (empty if valid)
        """
        path = config_path or self._config_path
        errors: List[str] = []

        if not path.exists():
            errors.append(f"Configuration file not found: {path}")
            return errors

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            GoalAutonomyConfig(**data)
        except ValidationError as exc:
            for error in exc.errors():
                loc = ".".join(str(part) for part in error["loc"])
                errors.append(f"{loc}: {error['msg']}")
        except (yaml.YAMLError, TypeError) as exc:
            errors.append(f"Failed to load configuration: {exc}")

        return errors
