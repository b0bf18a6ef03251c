from __future__ import annotations

import os
from dataclasses import dataclass, replace
from datetime import timedelta
from pathlib import Path


DEFAULT_STATE_ROOT = "~/.openclaw"
# "abort": the first step that exhausts its attempts fails the task.
# "continue": exhausted steps are skipped until the circuit breaker trips.
STEP_FAILURE_POLICIES = frozenset({"abort", "continue"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    api_timeout_seconds: int = 30
    max_retries: int = 3
    state_root: str = DEFAULT_STATE_ROOT
    workspace_root: str = ""
    model_name: str = "kimi-k2.5"
    api_base_url: str = "https://api.moonshot.cn/v1"
    api_call_limit: int = 80
    token_limit: int = 200_000
    wall_clock_limit_minutes: int = 90
    max_step_attempts: int = 3
    circuit_breaker_threshold: int = 3
    max_file_bytes: int = 50 * 1024
    max_output_tokens: int = 8_000
    recursion_limit: int = 1_000
    step_failure_policy: str = "abort"
    debug: bool = False

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            api_timeout_seconds=_get_env_int("SWARM_API_TIMEOUT", default=30, minimum=1, maximum=3_600),
            max_retries=_get_env_int("SWARM_MAX_RETRIES", default=3, minimum=0, maximum=20),
            state_root=os.getenv("SWARM_STATE_ROOT", DEFAULT_STATE_ROOT),
            workspace_root=os.getenv("SWARM_WORKSPACE_ROOT", ""),
            model_name=os.getenv("SWARM_MODEL", "kimi-k2.5"),
            api_base_url=os.getenv("SWARM_API_BASE_URL", "https://api.moonshot.cn/v1"),
            api_call_limit=_get_env_int("SWARM_API_CALL_LIMIT", default=80, minimum=1),
            token_limit=_get_env_int("SWARM_TOKEN_LIMIT", default=200_000, minimum=1),
            wall_clock_limit_minutes=_get_env_int("SWARM_WALL_CLOCK_MINUTES", default=90, minimum=1, maximum=24 * 60),
            max_step_attempts=_get_env_int("SWARM_MAX_STEP_ATTEMPTS", default=3, minimum=1, maximum=20),
            circuit_breaker_threshold=_get_env_int("SWARM_CIRCUIT_BREAKER_THRESHOLD", default=3, minimum=1, maximum=100),
            max_file_bytes=_get_env_int("SWARM_MAX_FILE_BYTES", default=50 * 1024, minimum=1_024),
            max_output_tokens=_get_env_int("SWARM_MAX_OUTPUT_TOKENS", default=8_000, minimum=256),
            recursion_limit=_get_env_int("SWARM_RECURSION_LIMIT", default=1_000, minimum=100, maximum=100_000),
            step_failure_policy=os.getenv("SWARM_STEP_FAILURE_POLICY", "abort"),
            debug=os.getenv("SWARM_DEBUG", "").strip() == "1",
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        model_name = self.model_name.strip()
        if not model_name:
            raise ValueError("SWARM_MODEL must be non-empty")
        api_base_url = self.api_base_url.strip().rstrip("/")
        if not api_base_url.startswith(("http://", "https://")):
            raise ValueError(f"SWARM_API_BASE_URL must be an http(s) URL, got: {self.api_base_url!r}")
        state_root = self.state_root.strip()
        if not state_root:
            raise ValueError("SWARM_STATE_ROOT must be non-empty")

        # -- Budget validation --
        if self.api_call_limit < 1:
            raise ValueError(f"SWARM_API_CALL_LIMIT must be >= 1, got: {self.api_call_limit}")
        if self.token_limit < 1:
            raise ValueError(f"SWARM_TOKEN_LIMIT must be >= 1, got: {self.token_limit}")
        if self.wall_clock_limit_minutes < 1:
            raise ValueError(f"SWARM_WALL_CLOCK_MINUTES must be >= 1, got: {self.wall_clock_limit_minutes}")
        if self.max_step_attempts < 1:
            raise ValueError(f"SWARM_MAX_STEP_ATTEMPTS must be >= 1, got: {self.max_step_attempts}")
        if self.circuit_breaker_threshold < 1:
            raise ValueError(
                f"SWARM_CIRCUIT_BREAKER_THRESHOLD must be >= 1, got: {self.circuit_breaker_threshold}"
            )
        if self.max_retries < 0:
            raise ValueError(f"SWARM_MAX_RETRIES must be >= 0, got: {self.max_retries}")
        step_failure_policy = self.step_failure_policy.strip().lower()
        if step_failure_policy not in STEP_FAILURE_POLICIES:
            raise ValueError(
                f"SWARM_STEP_FAILURE_POLICY must be one of {sorted(STEP_FAILURE_POLICIES)}, "
                f"got: {self.step_failure_policy!r}"
            )
        return replace(
            self,
            step_failure_policy=step_failure_policy,
            model_name=model_name,
            api_base_url=api_base_url,
            state_root=state_root,
            workspace_root=self.workspace_root.strip(),
        )

    @property
    def state_root_path(self) -> Path:
        return Path(self.state_root).expanduser()

    @property
    def workspace_root_path(self) -> Path:
        """Return the workspace root, defaulting to ``<state_root>/workspace/android-swarm``."""
        if self.workspace_root:
            return Path(self.workspace_root).expanduser()
        return self.state_root_path / "workspace" / "android-swarm"

    @property
    def database_path(self) -> Path:
        return self.state_root_path / "swarm.db"

    @property
    def log_dir(self) -> Path:
        return self.state_root_path / "logs"

    @property
    def pid_file(self) -> Path:
        return self.state_root_path / "swarm.pid"

    @property
    def wall_clock_limit(self) -> timedelta:
        return timedelta(minutes=self.wall_clock_limit_minutes)


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
