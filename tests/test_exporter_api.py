import asyncio
import logging
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

from conftest import FakeApi, org_workspaces
from tfc_exporter import config as cfg
from tfc_exporter import exporter_api
from tfc_exporter.collector import ExporterCollector
from tfc_exporter.exporter_api import (
    TIMEOUT_HEADER,
    build_exporter_app,
    derive_context,
    watch_disconnect,
)
from tfc_exporter.registry import build_default_registry


def make_app(api: FakeApi, organizations=("acme", "globex")):
    app_config = cfg.AppConfig(organizations=list(organizations))
    return build_exporter_app(app_config, build_default_registry(), api.client())


def two_org_api() -> FakeApi:
    return FakeApi(
        {
            "acme": org_workspaces("acme", 5, per_page=2),
            "globex": org_workspaces("globex", 1, per_page=2),
        }
    )


def test_metrics_endpoint_exposes_workspaces():
    app = make_app(two_org_api())
    with TestClient(app) as client:
        resp = client.get("/metrics")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    body = resp.text
    assert "# HELP tf_workspaces_info Information about existing workspaces" in body
    assert body.count("tf_workspaces_info{") == 6
    assert 'id="ws-acme-4"' in body
    assert 'current_run="na"' in body
    duration = 'tf_exporter_scrape_collector_duration_seconds{collector="workspaces"}'
    assert duration in body
    # merged with the process-wide registry
    assert "client_api_requests_total" in body
    assert "promhttp_metric_handler_requests_in_flight" in body


def test_each_scrape_is_a_fresh_collection():
    api = two_org_api()
    app = make_app(api)
    with TestClient(app) as client:
        first = client.get("/metrics")
        second = client.get("/metrics")
    assert first.status_code == second.status_code == 200
    assert second.text.count("tf_workspaces_info{") == 6
    acme_pages = [page for org, page, _ in api.calls if org == "acme"]
    assert acme_pages == [1, 2, 3, 1, 2, 3]


def test_malformed_timeout_header_does_not_fail_request(caplog):
    caplog.set_level(logging.ERROR)
    app = make_app(two_org_api())
    with TestClient(app) as client:
        resp = client.get("/metrics", headers={TIMEOUT_HEADER: "soon"})
    assert resp.status_code == 200
    assert resp.text.count("tf_workspaces_info{") == 6
    assert any("Failed to parse timeout" in msg for msg in caplog.messages)


def test_valid_timeout_header_bounds_collection():
    api = two_org_api()
    api.delays["globex"] = 5
    app = make_app(api)
    with TestClient(app) as client:
        resp = client.get("/metrics", headers={TIMEOUT_HEADER: "0.1"})
    assert resp.status_code == 500
    assert "deadline exceeded" in resp.text
    assert "tf_workspaces_info{" not in resp.text


def test_one_failed_organization_fails_whole_scrape():
    api = FakeApi(
        {
            "acme": org_workspaces("acme", 6, per_page=2),
            "globex": org_workspaces("globex", 1, per_page=2),
        }
    )
    api.errors[("acme", 2)] = 500
    before = REGISTRY.get_sample_value(
        "promhttp_metric_handler_requests_total", {"code": "500"}
    ) or 0.0
    app = make_app(api)
    with TestClient(app) as client:
        resp = client.get("/metrics")
    assert resp.status_code == 500
    assert resp.text.startswith("An error has occurred while serving metrics:")
    assert "organization=acme, page=2" in resp.text
    assert "tf_workspaces_info{" not in resp.text
    assert "ws-globex-0" not in resp.text
    after = REGISTRY.get_sample_value(
        "promhttp_metric_handler_requests_total", {"code": "500"}
    )
    assert after == before + 1


def test_openmetrics_negotiation():
    app = make_app(two_org_api())
    with TestClient(app) as client:
        resp = client.get(
            "/metrics",
            headers={"Accept": "application/openmetrics-text; version=1.0.0"},
        )
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/openmetrics-text")
    assert resp.text.rstrip().endswith("# EOF")


def test_status_and_landing_page():
    app = make_app(two_org_api())
    with TestClient(app) as client:
        status = client.get("/status")
        landing = client.get("/")
    assert status.status_code == 200
    assert status.text == "ok"
    assert landing.status_code == 200
    assert '<a href="/metrics">Metrics</a>' in landing.text


@pytest.mark.asyncio
async def test_derive_context_sets_deadline_from_header():
    loop = asyncio.get_running_loop()
    request = MagicMock()
    request.headers = {TIMEOUT_HEADER: "10"}
    context = derive_context(request, loop)
    assert context.deadline is not None
    assert 9 < context.deadline - loop.time() <= 10

    request.headers = {}
    assert derive_context(request, loop).deadline is None

    request.headers = {TIMEOUT_HEADER: "-3"}
    assert derive_context(request, loop).deadline is None


@pytest.mark.asyncio
async def test_watch_disconnect_cancels_context(monkeypatch):
    monkeypatch.setattr(exporter_api, "DISCONNECT_POLL_SECONDS", 0)
    states = iter([False, False, True])

    class FakeRequest:
        async def is_disconnected(self):
            return next(states)

    context = derive_context(MagicMock(headers={}), asyncio.get_running_loop())
    await watch_disconnect(FakeRequest(), context)
    assert context.cancelled
    assert context.reason == "client disconnected"


def test_repeated_organization_is_scraped_once():
    api = FakeApi({"acme": org_workspaces("acme", 3, per_page=2)})
    app = make_app(api, organizations=("acme", "acme"))
    with TestClient(app) as client:
        resp = client.get("/metrics")
    assert resp.status_code == 200
    assert resp.text.count('id="ws-acme-0"') == 1
    assert [page for _, page, _ in api.calls] == [1, 2]


def test_unexpected_collection_failure_is_counted(monkeypatch):
    def broken_collect(self):
        raise RuntimeError("encoder exploded")
        yield

    monkeypatch.setattr(ExporterCollector, "collect", broken_collect)
    before = REGISTRY.get_sample_value(
        "promhttp_metric_handler_requests_total", {"code": "500"}
    ) or 0.0
    app = make_app(two_org_api())
    with TestClient(app) as client:
        resp = client.get("/metrics")
    assert resp.status_code == 500
    assert resp.text == (
        "An error has occurred while serving metrics:\n\nencoder exploded"
    )
    after = REGISTRY.get_sample_value(
        "promhttp_metric_handler_requests_total", {"code": "500"}
    )
    assert after == before + 1
