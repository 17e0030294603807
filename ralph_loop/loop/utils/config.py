"""Loop settings loaded from defaults, project config and environment.

Configuration hierarchy (highest priority first):
1. ``RALPH_*`` environment variables (e.g. ``RALPH_DEFAULT_MAX_TURNS=8``)
2. The ``[loop]`` table of ``.ralph/config.toml`` in the project directory
3. Defaults
"""

import dataclasses
import logging
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from ralph_loop.loop.constants import get_config_path

logger = logging.getLogger(__name__)

ENV_PREFIX = "RALPH_"


@dataclass(frozen=True)
class LoopSettings:
    """Tunables shared by every loop a registry creates.

    Validated on construction; invalid values raise ValueError naming the key.
    """

    default_max_turns: int = 5
    max_turns_limit: int = 100
    default_worker_model: str = "opus"
    default_reviewer_model: str = "sonnet"
    history_limit: int = 5
    max_concurrent_sessions: int = 3
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    agent_timeout_seconds: float = 1800.0
    claude_command: str = "claude"
    event_buffer_size: int = 1000

    def __post_init__(self) -> None:
        _check_range("max_turns_limit", self.max_turns_limit, 1, 10_000)
        _check_range("default_max_turns", self.default_max_turns, 1, self.max_turns_limit)
        _check_range("history_limit", self.history_limit, 0, 10_000)
        _check_range("max_concurrent_sessions", self.max_concurrent_sessions, 1, 1_000)
        _check_range("retry_attempts", self.retry_attempts, 1, 100)
        _check_range("retry_base_delay_seconds", self.retry_base_delay_seconds, 0.0, 3_600.0)
        _check_range(
            "retry_max_delay_seconds",
            self.retry_max_delay_seconds,
            self.retry_base_delay_seconds,
            3_600.0,
        )
        _check_range("agent_timeout_seconds", self.agent_timeout_seconds, 1.0, 86_400.0)
        _check_range("event_buffer_size", self.event_buffer_size, 1, 1_000_000)
        for name in ("default_worker_model", "default_reviewer_model", "claude_command"):
            if not getattr(self, name).strip():
                raise ValueError(f"{name} must be non-empty")

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "LoopSettings":
        """Build settings from loosely typed values (TOML tables, env strings).

        Raises:
            ValueError: On unknown keys or values that cannot be coerced.
        """
        known = {f.name: f for f in dataclasses.fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, raw in values.items():
            if key not in known:
                raise ValueError(f"Unknown loop setting: {key}")
            kwargs[key] = _coerce(key, raw, type(known[key].default))
        return cls(**kwargs)


def _check_range(name: str, value: float, minimum: float, maximum: float) -> None:
    if value < minimum or value > maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}, got {value}")


def _coerce(name: str, raw: Any, kind: type) -> Any:
    if kind is str:
        return str(raw)
    if isinstance(raw, bool):
        raise ValueError(f"{name} must be a number, got {raw!r}")
    try:
        if kind is int:
            if isinstance(raw, float) and not raw.is_integer():
                raise ValueError
            return int(raw)
        return float(raw)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{name} must be {kind.__name__}, got {raw!r}") from e


def _read_project_config(project_dir: Path) -> Dict[str, Any]:
    path = get_config_path(project_dir)
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid config file {path}: {e}") from e
    table = data.get("loop", {})
    if not isinstance(table, dict):
        raise ValueError(f"[loop] in {path} must be a table")
    logger.debug(f"Loaded loop settings from {path}: {sorted(table)}")
    return dict(table)


def load_settings(
    project_dir: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> LoopSettings:
    """Resolve settings for a project.

    Args:
        project_dir: Project whose ``.ralph/config.toml`` is consulted, if any
        environ: Environment mapping (default: os.environ)

    Returns:
        Validated LoopSettings
    """
    values: Dict[str, Any] = {}
    if project_dir is not None:
        values.update(_read_project_config(Path(project_dir)))

    env = os.environ if environ is None else environ
    for field in dataclasses.fields(LoopSettings):
        env_key = f"{ENV_PREFIX}{field.name.upper()}"
        if env_key in env:
            values[field.name] = env[env_key]

    return LoopSettings.from_mapping(values)
