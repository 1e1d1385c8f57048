from __future__ import annotations

import httpx

from stackops.config import HealthCheckSpec, default_health_checks
from stackops.health import HealthChecker


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_default_checks_pass_against_healthy_stack() -> None:
    statuses = {9090: 200, 8080: 401, 3000: 401}

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(statuses[request.url.port])

    results = HealthChecker(default_health_checks(), client=_client(handler)).run()

    assert [r.name for r in results] == ["metrics-collector-api", "proxy-auth", "dashboard-health"]
    assert all(r.success for r in results)


def test_open_proxy_is_a_failure() -> None:
    spec = HealthCheckSpec(name="proxy-auth", url="http://localhost:8080/", expect_status=[401])

    results = HealthChecker([spec], client=_client(lambda request: httpx.Response(200))).run()

    assert results[0].success is False
    assert results[0].status_code == 200
    assert "expected [401]" in results[0].error


def test_unreachable_endpoint_is_reported_not_raised() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    spec = HealthCheckSpec(name="metrics-collector-api", url="http://localhost:9090/api/v1/status/config")
    result = HealthChecker([spec], client=_client(handler)).run()[0]

    assert result.success is False
    assert result.status_code is None
    assert result.error.startswith("ConnectError")
