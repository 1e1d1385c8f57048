"""Aggregate per-item results of a workflow and persist them as JSON."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class ReportItem:
    """Outcome of one service, snapshot member or check."""

    name: str
    success: bool
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "success": self.success,
            "message": self.message,
            "details": self.details,
        }


class OperationReport:
    """Collects every item's outcome before the final exit status is decided.

    Successful items are kept next to failed ones so a partial success is
    still visible in the output.
    """

    def __init__(self, operation: str, started_at: Optional[datetime] = None):
        self.operation = operation
        self.started_at = started_at or datetime.now()
        self.finished_at: Optional[datetime] = None
        self.items: List[ReportItem] = []
        self.error: Optional[str] = None
        self.data: Dict[str, Any] = {}

    def add(self, name: str, success: bool, message: str = "", **details: Any) -> ReportItem:
        item = ReportItem(name=name, success=success, message=message, details=details)
        self.items.append(item)
        return item

    def fail(self, error: str) -> None:
        """Record a workflow-level failure, e.g. a precondition."""
        self.error = error

    def finish(self) -> "OperationReport":
        self.finished_at = datetime.now()
        return self

    @property
    def failures(self) -> List[ReportItem]:
        return [item for item in self.items if not item.success]

    @property
    def success(self) -> bool:
        return self.error is None and not self.failures

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "success": self.success,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "summary": {
                "total": len(self.items),
                "succeeded": len(self.items) - len(self.failures),
                "failed": len(self.failures),
            },
            "items": [item.to_dict() for item in self.items],
            "data": self.data,
        }

    def save(self, reports_dir: Path) -> Path:
        """Write the report as ``<operation>_<timestamp>.json``."""
        reports_dir.mkdir(parents=True, exist_ok=True)
        timestamp = self.started_at.strftime("%Y%m%d_%H%M%S")
        report_path = reports_dir / f"{self.operation}_{timestamp}.json"
        with open(report_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2, default=str)
        logger.info("Saved operation report", operation=self.operation, report=str(report_path))
        return report_path


__all__ = ["OperationReport", "ReportItem"]
