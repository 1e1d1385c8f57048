"""Backup trigger installation and in-process scheduling."""

from .job_scheduler import BackupScheduler, parse_cron_expression
from .trigger import CrontabInstaller, InstallResult, build_backup_command, render_cron_line

__all__ = [
    "BackupScheduler",
    "CrontabInstaller",
    "InstallResult",
    "build_backup_command",
    "parse_cron_expression",
    "render_cron_line",
]
