"""Configuration loading and validation."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..errors import ConfigError

logger = logging.getLogger(__name__)


class GoalDefaults(BaseModel):
    """Defaults applied to new goals and limits for the goal service."""
    max_concurrent: int = 3
    default_max_iterations: int = 50
    default_max_tokens: int = 1_000_000
    default_max_time_seconds: float = 4 * 60 * 60
    default_eval_every: int = 5
    default_stall_threshold: int = 3
    default_min_progress_delta: float = 5.0
    default_consecutive_error_limit: int = 5
    default_provider_usage_threshold: float = 80.0

    # Quality gate approvals
    approval_timeout_seconds: float = 30 * 60
    approval_timeout_action: Literal["auto-reject", "auto-approve"] = "auto-reject"

    loop_delay_seconds: float = 1.0
    # How often a paused goal re-reads persisted state for out-of-process approvals
    approval_poll_seconds: float = 2.0

    @field_validator(
        'max_concurrent', 'default_max_iterations', 'default_max_tokens',
        'default_eval_every', 'default_stall_threshold', 'default_consecutive_error_limit',
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v

    @field_validator('default_provider_usage_threshold')
    @classmethod
    def validate_percentage(cls, v: float) -> float:
        if not 0 < v <= 100:
            raise ValueError(f"provider usage threshold must be in (0, 100], got {v}")
        return v


class PlanDefaults(BaseModel):
    """Defaults applied to new plans and limits for the plan service."""
    max_concurrent: int = 2
    max_agent_turns: int = 50
    max_tokens: int = 500_000
    max_time_seconds: float = 60 * 60
    max_concurrency: int = 3
    max_retries: int = 2
    replan_threshold: float = 0.4
    max_decomposition_attempts: int = 2
    batch_delay_seconds: float = 0.5

    planner_agent_id: str = "planner"
    evaluator_agent_id: str = "qa"
    worker_agent_id: Optional[str] = None

    @field_validator('replan_threshold')
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError(f"replan_threshold must be in (0, 1], got {v}")
        return v

    @field_validator('max_concurrent', 'max_agent_turns', 'max_concurrency', 'max_decomposition_attempts')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v


class ExecutorConfig(BaseModel):
    """Subprocess executor that hands one prompt to a model CLI per turn."""
    # Prompt is written to stdin; stdout is parsed as the CLI's JSON result
    command: List[str] = Field(default_factory=lambda: ["claude", "-p", "--output-format", "json"])
    timeout_seconds: float = 3600
    working_dir: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)

    @field_validator('command')
    @classmethod
    def validate_command(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("executor command must not be empty")
        return v


class NotificationConfig(BaseModel):
    """Where human-facing messages are delivered."""
    enabled: bool = False
    channel: str = "log"
    recipient: Optional[str] = None


class LearningConfig(BaseModel):
    """Cross-goal learning store."""
    enabled: bool = True
    max_entries: int = 100


class OrchestratorConfig(BaseSettings):
    """Main orchestrator configuration."""
    model_config = SettingsConfigDict(
        env_prefix="AUTOPILOT_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="allow",
    )

    state_dir: Path = Field(default=Path(".autopilot"))
    log_level: str = "INFO"
    # How long stop() waits for loops to notice cancellation before cancelling their tasks
    shutdown_grace_seconds: float = 60.0
    # How often the service looks for executions created or resumed by other processes
    scan_interval_seconds: float = 5.0

    goals: GoalDefaults = Field(default_factory=GoalDefaults)
    plans: PlanDefaults = Field(default_factory=PlanDefaults)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        if v.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level '{v}'")
        return v.upper()


# Module-level mtime-based config cache: path -> (parsed_config, file_mtime)
_config_cache: Dict[str, tuple] = {}


def _load_config_from_file(config_path: Path) -> OrchestratorConfig:
    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping, got {type(data).__name__}")

    data = _expand_env_vars(data)
    try:
        return OrchestratorConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e


def load_config(config_path: Path = Path("autopilot.yaml")) -> OrchestratorConfig:
    """Load orchestrator configuration from a YAML file.

    Uses mtime-based caching: returns the cached config if the file hasn't changed.
    """
    if not config_path.exists():
        logger.warning(f"Config file not found: {config_path}. Using default configuration.")
        return OrchestratorConfig()

    resolved = config_path.resolve()
    key = str(resolved)
    current_mtime = resolved.stat().st_mtime

    cached = _config_cache.get(key)
    if cached is not None and cached[1] == current_mtime:
        return cached[0]

    config = _load_config_from_file(resolved)
    _config_cache[key] = (config, current_mtime)
    return config


def clear_config_cache() -> None:
    """Clear the module-level config cache. Useful for tests."""
    _config_cache.clear()


def _expand_env_vars(data: Any, _path: str = "") -> Any:
    """Recursively expand ``${VAR}`` string values from the environment."""
    if isinstance(data, dict):
        return {k: _expand_env_vars(v, f"{_path}.{k}" if _path else k) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item, f"{_path}[{i}]") for i, item in enumerate(data)]
    elif isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        env_var = data[2:-1]
        value = os.environ.get(env_var)
        if value is None:
            logger.warning(
                f"Environment variable '{env_var}' not set (referenced at config path: {_path or 'root'}). "
                f"The literal string '{data}' will be used."
            )
            return data
        return value
    return data
