"""Install the recurring backup trigger into root's crontab.

The schedule expression is passed through untouched; cron owns its meaning.
"""

from __future__ import annotations

import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import structlog

from ..errors import PreconditionError, StackOpsError
from ..runtime.base import CommandRunner

logger = structlog.get_logger(__name__)


def build_backup_command(
    entry_point: str,
    directory: Path,
    retention: int,
    compress: bool = True,
) -> str:
    """Command line that runs one backup with the given store settings."""
    parts = shlex.split(entry_point) + ["backup", "--directory", str(directory), "--retention", str(retention)]
    if not compress:
        parts.append("--no-compress")
    return shlex.join(parts)


def render_cron_line(schedule: str, command: str, log_path: Path) -> str:
    schedule = schedule.strip()
    if not schedule or "\n" in schedule:
        raise ValueError(f"invalid schedule expression: {schedule!r}")
    return f"{schedule} {command} > {shlex.quote(str(log_path))} 2>&1"


@dataclass
class InstallResult:
    installed: bool
    line: str
    existing: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"installed": self.installed, "line": self.line, "existing": list(self.existing)}


class CrontabInstaller:
    """Reads and rewrites the invoking user's crontab via ``crontab -l`` / ``crontab -``."""

    def __init__(self, runner: Optional[CommandRunner] = None, binary: str = "crontab"):
        self.runner = runner or CommandRunner()
        self.binary = binary

    def _run(self, command: List[str], input: Optional[str] = None):
        try:
            return self.runner.run(command, input=input)
        except OSError as e:
            raise PreconditionError(f"{self.binary} unavailable: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise StackOpsError(f"{' '.join(command)} timed out") from e

    def read(self) -> List[str]:
        result = self._run([self.binary, "-l"])
        if not result.ok:
            if "no crontab" in result.output.lower():
                return []
            raise StackOpsError(f"crontab -l failed: {result.output}")
        return result.stdout.splitlines()

    def write(self, lines: List[str]) -> None:
        content = "\n".join(lines).strip("\n") + "\n"
        result = self._run([self.binary, "-"], input=content)
        if not result.ok:
            raise StackOpsError(f"crontab install failed: {result.output}")

    def show(self, marker: str) -> List[str]:
        """Lines that invoke ``marker``."""
        return [line for line in self.read() if marker in line]

    def install(self, line: str, marker: str, replace: bool = False) -> InstallResult:
        """Add ``line``; an existing line for ``marker`` is kept unless ``replace``."""
        current = self.read()
        existing = [entry for entry in current if marker in entry]
        if existing and not replace:
            logger.warning("Backup trigger already installed, leaving it", existing=existing)
            return InstallResult(installed=False, line=line, existing=existing)

        kept = [entry for entry in current if marker not in entry]
        self.write(kept + [line])
        logger.info("Installed backup trigger", line=line, replaced=len(existing))
        return InstallResult(installed=True, line=line, existing=existing)

    def remove(self, marker: str) -> List[str]:
        """Drop every line for ``marker``; returns what was removed."""
        current = self.read()
        removed = [entry for entry in current if marker in entry]
        if removed:
            self.write([entry for entry in current if marker not in entry])
            logger.info("Removed backup trigger", removed=removed)
        return removed


__all__ = ["CrontabInstaller", "InstallResult", "build_backup_command", "render_cron_line"]
