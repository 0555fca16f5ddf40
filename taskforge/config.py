"""
Configuration loading and validation for Taskforge.

This module handles:
- Loading config.yaml from the working directory
- Environment variable resolution (${VAR} syntax)
- Default values for every threshold (retry, budget, supervisor, pacing)
- Caching of the loaded configuration
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


@dataclass
class ClaudeConfig:
    """Claude Code CLI configuration for agent executions."""
    binary: str = "claude"                     # Path to claude binary
    default_model: str = "claude-sonnet-4-5"   # Model used when a role has no override
    max_turns: int = 200                       # Maximum conversation turns per execution
    timeout_seconds: int = 1800                # Hard subprocess timeout
    role_models: dict[str, str] = field(default_factory=dict)  # role -> model id

    def model_for(self, role: str) -> str:
        """Get the model id configured for an agent role."""
        return self.role_models.get(role, self.default_model)


@dataclass
class RetryConfig:
    """Retry strategy for transient phase failures."""
    max_retries: int = 3                       # Total attempts, first try included
    initial_delay_seconds: float = 1.0         # Delay before the second attempt
    max_delay_seconds: float = 30.0            # Cap for a single delay
    backoff_multiplier: float = 2.0            # Growth factor per attempt
    jitter: float = 0.25                       # +/- fraction of random jitter
    retryable_patterns: list[str] = field(default_factory=list)  # Extra transient patterns


@dataclass
class BudgetConfig:
    """Cost budget ceilings."""
    max_task_cost_usd: float = 1000.0
    max_phase_cost_usd: float = 200.0
    warning_threshold: float = 0.8             # Fraction of the ceiling that triggers a warning
    default_estimate_usd: float = 0.25
    # Prices tokens of runs killed before they reported a cost
    estimated_cost_per_1k_tokens: float = 0.01
    phase_estimates: dict[str, float] = field(default_factory=lambda: {
        "requirements_analysis": 0.15,
        "task_breakdown": 0.20,
        "team_execution": 50.0,
        "integration_test": 0.35,
        "fixer": 0.20,
        "auto_merge": 0.05,
    })

    def estimate_for(self, phase_name: str) -> float:
        """Get the cost estimate for a phase."""
        return self.phase_estimates.get(phase_name, self.default_estimate_usd)


@dataclass
class SupervisorConfig:
    """Stagnation thresholds for supervised developer executions."""
    check_interval_turns: int = 10             # Ratio/idle checks run every N turns
    min_reads_without_write: int = 15          # Reads with zero writes that count as a stall
    read_stall_turn: int = 20                  # ...once this many turns have elapsed
    ratio_fatal: int = 20                      # reads per write that is fatal
    ratio_fatal_after_turn: int = 30
    ratio_warning: int = 10                    # reads per write that warns
    idle_warning_turns: int = 40               # Turns since last write that warns
    idle_fatal_turns: int = 80                 # Turns since last write that is fatal
    diff_check_interval_turns: int = 20
    diff_check_start_turn: int = 40
    diff_fatal_after_turn: int = 60
    wall_clock_seconds: int = 1800             # 30 minutes


@dataclass
class OrchestrationConfig:
    """Coordinator loop settings."""
    phase_delay_seconds: float = 2.0           # Pacing between phases (rate limits)
    max_fixer_attempts: int = 1
    max_parallel_teams: int = 3
    max_schema_repair_attempts: int = 2
    max_review_rounds: int = 1
    compaction_history_threshold: int = 40     # Conversation entries before compaction
    compaction_keep_recent: int = 10
    auto_approval_enabled: bool = False
    auto_approval_phases: list[str] = field(default_factory=list)


@dataclass
class CredentialsConfig:
    """API credential fallback chain settings."""
    fallback_env_var: str = "ANTHROPIC_API_KEY"


@dataclass
class GitConfig:
    """Git configuration for branching and merging."""
    base_branch: str = "main"
    remote: str = "origin"
    epic_branch_pattern: str = "epic/{epic_slug}"
    story_branch_pattern: str = "story/{story_slug}"
    test_command: str = ""                     # Shell command run before merge (optional)
    test_timeout_seconds: int = 900


@dataclass
class ForgeConfig:
    """
    Main configuration for Taskforge.

    This is the top-level config loaded from config.yaml.
    """
    # Paths
    repo_root: str = "."
    state_dir: str = ".taskforge"
    workspace_root: str = "/tmp/taskforge-workspaces"

    # Nested configurations
    claude: ClaudeConfig = field(default_factory=ClaudeConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    orchestration: OrchestrationConfig = field(default_factory=OrchestrationConfig)
    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)
    git: GitConfig = field(default_factory=GitConfig)

    def __post_init__(self) -> None:
        """Convert paths to absolute paths based on repo_root."""
        self.repo_root = str(Path(self.repo_root).absolute())

    @property
    def state_path(self) -> Path:
        """Absolute path to the state directory."""
        state = Path(self.state_dir)
        if state.is_absolute():
            return state
        return Path(self.repo_root) / state

    @property
    def tasks_path(self) -> Path:
        """Absolute path to persisted task documents."""
        return self.state_path / "tasks"

    @property
    def events_path(self) -> Path:
        """Absolute path to per-task event logs."""
        return self.state_path / "events"

    @property
    def logs_path(self) -> Path:
        """Absolute path to JSONL logs."""
        return self.state_path / "logs"

    @property
    def workspaces_path(self) -> Path:
        """Absolute path to the workspace root."""
        return Path(self.workspace_root)


# Module-level cache for the loaded configuration
_config_cache: Optional[ForgeConfig] = None


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve environment variables in a value.

    Supports ${VAR} syntax for environment variable substitution.
    Returns the original value if it's not a string.
    """
    if isinstance(value, str):
        pattern = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return pattern.sub(replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _parse_claude_config(data: dict[str, Any]) -> ClaudeConfig:
    """Parse Claude configuration from dict."""
    return ClaudeConfig(
        binary=data.get("binary", "claude"),
        default_model=data.get("default_model", "claude-sonnet-4-5"),
        max_turns=data.get("max_turns", 200),
        timeout_seconds=data.get("timeout_seconds", 1800),
        role_models=dict(data.get("role_models", {})),
    )


def _parse_retry_config(data: dict[str, Any]) -> RetryConfig:
    """Parse retry configuration from dict."""
    max_retries = data.get("max_retries", 3)
    if max_retries < 1:
        raise ConfigError("retry.max_retries must be at least 1")
    return RetryConfig(
        max_retries=max_retries,
        initial_delay_seconds=data.get("initial_delay_seconds", 1.0),
        max_delay_seconds=data.get("max_delay_seconds", 30.0),
        backoff_multiplier=data.get("backoff_multiplier", 2.0),
        jitter=data.get("jitter", 0.25),
        retryable_patterns=list(data.get("retryable_patterns", [])),
    )


def _parse_budget_config(data: dict[str, Any]) -> BudgetConfig:
    """Parse budget configuration from dict."""
    defaults = BudgetConfig()
    threshold = data.get("warning_threshold", defaults.warning_threshold)
    if not 0.0 < threshold <= 1.0:
        raise ConfigError("budget.warning_threshold must be in (0, 1]")
    return BudgetConfig(
        max_task_cost_usd=data.get("max_task_cost_usd", defaults.max_task_cost_usd),
        max_phase_cost_usd=data.get("max_phase_cost_usd", defaults.max_phase_cost_usd),
        warning_threshold=threshold,
        default_estimate_usd=data.get("default_estimate_usd", defaults.default_estimate_usd),
        estimated_cost_per_1k_tokens=data.get(
            "estimated_cost_per_1k_tokens", defaults.estimated_cost_per_1k_tokens
        ),
        phase_estimates={**defaults.phase_estimates, **data.get("phase_estimates", {})},
    )


def _parse_supervisor_config(data: dict[str, Any]) -> SupervisorConfig:
    """Parse supervisor thresholds from dict."""
    defaults = SupervisorConfig()
    values = {
        name: data.get(name, getattr(defaults, name))
        for name in defaults.__dataclass_fields__
    }
    return SupervisorConfig(**values)


def _parse_orchestration_config(data: dict[str, Any]) -> OrchestrationConfig:
    """Parse coordinator settings from dict."""
    return OrchestrationConfig(
        phase_delay_seconds=data.get("phase_delay_seconds", 2.0),
        max_fixer_attempts=data.get("max_fixer_attempts", 1),
        max_parallel_teams=data.get("max_parallel_teams", 3),
        max_schema_repair_attempts=data.get("max_schema_repair_attempts", 2),
        max_review_rounds=data.get("max_review_rounds", 1),
        compaction_history_threshold=data.get("compaction_history_threshold", 40),
        compaction_keep_recent=data.get("compaction_keep_recent", 10),
        auto_approval_enabled=data.get("auto_approval_enabled", False),
        auto_approval_phases=list(data.get("auto_approval_phases", [])),
    )


def _parse_git_config(data: dict[str, Any]) -> GitConfig:
    """Parse git configuration from dict."""
    return GitConfig(
        base_branch=data.get("base_branch", "main"),
        remote=data.get("remote", "origin"),
        epic_branch_pattern=data.get("epic_branch_pattern", "epic/{epic_slug}"),
        story_branch_pattern=data.get("story_branch_pattern", "story/{story_slug}"),
        test_command=data.get("test_command", ""),
        test_timeout_seconds=data.get("test_timeout_seconds", 900),
    )


def load_config(config_path: Optional[str] = None) -> ForgeConfig:
    """
    Load configuration from config.yaml.

    A missing file yields the defaults; a present but invalid file is an error.

    Args:
        config_path: Optional path to config file. If not provided,
                     looks for config.yaml in current directory.

    Returns:
        ForgeConfig: Loaded and validated configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    explicit = config_path is not None
    path = Path(config_path or "config.yaml")
    if not path.exists():
        if explicit:
            raise ConfigError(f"Configuration file not found: {config_path}")
        return ForgeConfig()

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")

    if raw_data is None:
        return ForgeConfig()
    if not isinstance(raw_data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    data = _resolve_env_vars(raw_data)

    return ForgeConfig(
        repo_root=data.get("repo_root", "."),
        state_dir=data.get("state_dir", ".taskforge"),
        workspace_root=data.get("workspace_root", "/tmp/taskforge-workspaces"),
        claude=_parse_claude_config(data.get("claude", {})),
        retry=_parse_retry_config(data.get("retry", {})),
        budget=_parse_budget_config(data.get("budget", {})),
        supervisor=_parse_supervisor_config(data.get("supervisor", {})),
        orchestration=_parse_orchestration_config(data.get("orchestration", {})),
        credentials=CredentialsConfig(
            fallback_env_var=data.get("credentials", {}).get(
                "fallback_env_var", "ANTHROPIC_API_KEY"
            ),
        ),
        git=_parse_git_config(data.get("git", {})),
    )


def get_config(config_path: Optional[str] = None, force_reload: bool = False) -> ForgeConfig:
    """
    Get the cached configuration, loading it if necessary.

    Args:
        config_path: Optional path to config file.
        force_reload: If True, reload configuration even if cached.

    Returns:
        ForgeConfig: The loaded configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    global _config_cache

    if _config_cache is None or force_reload:
        _config_cache = load_config(config_path)

    return _config_cache


def clear_config_cache() -> None:
    """Clear the configuration cache. Useful for testing."""
    global _config_cache
    _config_cache = None
