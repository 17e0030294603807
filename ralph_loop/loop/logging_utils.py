"""Logging setup for the ralph-loop CLI with package filtering."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler


class PackageFilter(logging.Filter):
    """Pass only records from the given top-level packages and their submodules."""

    def __init__(self, packages: List[str]) -> None:
        super().__init__()
        self.packages = packages

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name
        return any(name == pkg or name.startswith(f"{pkg}.") for pkg in self.packages)


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> None:
    """Configure logging for the CLI.

    Console output goes through a RichHandler on stderr, limited to
    ralph_loop loggers unless verbose. When ``log_file`` is given, every
    record at the configured level is also written there in plain text.

    Args:
        verbose: Enable debug level logging
        log_file: Optional path for a plain-text log file
    """
    log_level = logging.DEBUG if verbose else logging.INFO
    log_format = "%(asctime)s [%(levelname)-8s] %(name)s: %(message)s"
    date_format = "%H:%M:%S"

    console_handler = RichHandler(
        console=Console(stderr=True),
        show_path=verbose,
        rich_tracebacks=True,
        markup=False,
        log_time_format=f"[{date_format}]",
    )
    console_handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    if not verbose:
        console_handler.addFilter(PackageFilter(["ralph_loop"]))
    handlers: List[logging.Handler] = [console_handler]

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(log_format, datefmt=date_format))
        handlers.append(file_handler)

    logging.basicConfig(
        level=log_level, format=log_format, datefmt=date_format, handlers=handlers, force=True
    )
