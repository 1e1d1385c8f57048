"""HTTP checks against the running stack's endpoints."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog

from .config import HealthCheckSpec

logger = structlog.get_logger(__name__)


@dataclass
class CheckResult:
    name: str
    url: str
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "url": self.url,
            "success": self.success,
            "status_code": self.status_code,
            "error": self.error,
        }


class HealthChecker:
    """Runs each configured check and reports, never raises, on failure."""

    def __init__(self, checks: Sequence[HealthCheckSpec], client: Optional[httpx.Client] = None):
        self.checks = list(checks)
        self.client = client

    def run(self) -> List[CheckResult]:
        if self.client is not None:
            return [self._check(self.client, spec) for spec in self.checks]
        with httpx.Client(follow_redirects=False) as client:
            return [self._check(client, spec) for spec in self.checks]

    def _check(self, client: httpx.Client, spec: HealthCheckSpec) -> CheckResult:
        try:
            response = client.get(spec.url, timeout=spec.timeout)
        except httpx.HTTPError as e:
            logger.warning("Health check unreachable", check=spec.name, url=spec.url, error=str(e))
            return CheckResult(name=spec.name, url=spec.url, success=False, error=f"{type(e).__name__}: {e}")

        success = response.status_code in spec.expect_status
        if success:
            logger.info("Health check passed", check=spec.name, status_code=response.status_code)
        else:
            logger.warning("Health check failed",
                           check=spec.name,
                           status_code=response.status_code,
                           expected=spec.expect_status)
        return CheckResult(
            name=spec.name,
            url=spec.url,
            success=success,
            status_code=response.status_code,
            error=None if success else f"expected {spec.expect_status}, got {response.status_code}",
        )


__all__ = ["CheckResult", "HealthChecker"]
