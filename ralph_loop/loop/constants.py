"""Constants for .ralph directory structure."""

from pathlib import Path

RALPH_DIR = ".ralph"
LOOPS_DIR = "loops"
LOGS_DIR = "logs"
CONFIG_FILE = "config.toml"

STOPPED_BY_USER_ERROR = "Loop stopped by user"
UNPARSEABLE_REVIEW_FEEDBACK = "<could not parse reviewer response>"


def get_ralph_dir(project_dir: Path) -> Path:
    """Get the .ralph directory path."""
    return project_dir / RALPH_DIR


def get_loops_dir(project_dir: Path) -> Path:
    """Get the loop state store directory path."""
    return get_ralph_dir(project_dir) / LOOPS_DIR


def get_logs_dir(project_dir: Path) -> Path:
    """Get the logs directory path."""
    return get_ralph_dir(project_dir) / LOGS_DIR


def get_config_path(project_dir: Path) -> Path:
    """Get the project-local config file path."""
    return get_ralph_dir(project_dir) / CONFIG_FILE
