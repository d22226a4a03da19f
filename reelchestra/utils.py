"""
Utility functions for reelchestra.

Includes logging setup and console output helpers.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table


# Global console for pretty output
console = Console()

STATUS_STYLES = {
    "pending": "dim",
    "eligible": "cyan",
    "in_progress": "blue",
    "retrying": "yellow",
    "completed": "green",
    "failed": "bold red",
    "blocked": "red",
    "planning": "dim",
}


def setup_logging(
    log_file: Optional[Path] = None,
    log_level: str = "INFO",
    log_format: str = "structured",
    console_output: bool = True,
) -> logging.Logger:
    """
    Set up logging for reelchestra.

    Args:
        log_file: Path to log file (no file handler when None)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (human-readable)
        console_output: Also log to console

    Returns:
        Configured logger
    """
    logger = logging.getLogger("reelchestra")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers = []  # Clear existing handlers

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        if log_format == "structured":
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(
                logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            )
        logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            console_handler = RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_time=False)
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(
                logging.Formatter("%(levelname)s: %(message)s")
            )
        logger.addHandler(console_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add extra fields if present
        for key in ("manifest_id", "job_id", "worker_id"):
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "1m 23s", "45s")
    """
    if seconds < 60:
        return f"{int(seconds)}s"

    minutes = int(seconds // 60)
    remaining_seconds = int(seconds % 60)

    if minutes < 60:
        return f"{minutes}m {remaining_seconds}s"

    hours = minutes // 60
    remaining_minutes = minutes % 60
    return f"{hours}h {remaining_minutes}m {remaining_seconds}s"


def styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "")
    return f"[{style}]{status}[/{style}]" if style else status


def jobs_table(title: str, jobs: list[dict[str, Any]]) -> Table:
    """
    Build a rich table of jobs.

    Args:
        title: Table title
        jobs: Job dicts as produced by Job.to_dict()
    """
    table = Table(title=title)
    table.add_column("Job", style="bold")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Priority", justify="right")
    table.add_column("Attempts", justify="right")
    table.add_column("Detail")

    for job in jobs:
        detail = ""
        if job.get("blocked_by"):
            detail = f"blocked by {job['blocked_by']}"
        elif job.get("error"):
            detail = job["error"].get("message", "")
        elif job.get("result"):
            detail = job["result"].get("output_ref", "")
        if job.get("warnings"):
            detail = "; ".join([detail, *job["warnings"]]).strip("; ")

        table.add_row(
            job["job_id"],
            job["job_type"],
            styled_status(job["status"]),
            str(job["priority"]),
            str(job["attempts"]),
            detail,
        )
    return table


def print_warning(message: str) -> None:
    """Print warning message to console."""
    console.print(f"[bold yellow]⚠[/bold yellow] {message}")


def stats_table(stats: list[dict[str, Any]]) -> Table:
    """Rich table of job counts per type and status (JobStats.to_dict() rows)."""
    table = Table(title="Jobs by type and status")
    table.add_column("Type", style="bold")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    table.add_column("Max attempts", justify="right")
    for row in stats:
        table.add_row(
            row["job_type"],
            styled_status(row["status"]),
            str(row["count"]),
            str(row["max_attempts_used"]),
        )
    return table


def active_jobs_table(jobs: list[dict[str, Any]]) -> Table:
    """Rich table of in-progress jobs with their claim holders."""
    table = Table(title="Active jobs")
    table.add_column("Manifest")
    table.add_column("Job", style="bold")
    table.add_column("Worker")
    table.add_column("Attempt", justify="right")
    table.add_column("Heartbeat")
    for job in jobs:
        table.add_row(
            job["manifest_id"],
            job["job_id"],
            job.get("worker_id", ""),
            str(job["attempts"]),
            job.get("heartbeat_at", ""),
        )
    return table
