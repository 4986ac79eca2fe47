import asyncio
import os
from typing import Any, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio

from tfc_exporter.http_client import BearerTokenStrategy, TerraformClient

OPEN_CLIENTS: List[TerraformClient] = []


@pytest.fixture(autouse=True)
def clean_tf_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("TF_") or name == "TFC_EXPORTER_CONFIG":
            monkeypatch.delenv(name, raising=False)


@pytest_asyncio.fixture(autouse=True)
async def close_api_clients():
    """Close every client built by mock_client during the test."""
    yield
    while OPEN_CLIENTS:
        await OPEN_CLIENTS.pop().close()


def mock_client(handler, token: str = "secret-token") -> TerraformClient:
    client = TerraformClient(
        "https://tfe.example.com",
        BearerTokenStrategy(token),
        transport=httpx.MockTransport(handler),
    )
    OPEN_CLIENTS.append(client)
    return client


def workspace_resource(
    ws_id: str,
    name: str,
    org: str,
    run_id: Optional[str] = None,
    created_at: str = "2021-03-10T11:21:37.123Z",
    version: str = "1.5.7",
) -> Dict[str, Any]:
    return {
        "id": ws_id,
        "type": "workspaces",
        "attributes": {
            "name": name,
            "terraform-version": version,
            "created-at": created_at,
            "environment": "default",
        },
        "relationships": {
            "organization": {"data": {"id": org, "type": "organizations"}},
            "current-run": {
                "data": {"id": run_id, "type": "runs"} if run_id else None
            },
        },
    }


def run_resource(
    run_id: str, status: str = "applied", created_at: str = "2021-04-01T08:00:00Z"
) -> Dict[str, Any]:
    return {
        "id": run_id,
        "type": "runs",
        "attributes": {"status": status, "created-at": created_at},
    }


def listing(
    data: List[Dict[str, Any]],
    page: int = 1,
    next_page: Optional[int] = None,
    included: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    doc: Dict[str, Any] = {
        "data": data,
        "meta": {
            "pagination": {
                "current-page": page,
                "next-page": next_page,
                "prev-page": page - 1 or None,
            }
        },
    }
    if included is not None:
        doc["included"] = included
    return doc


def org_workspaces(org: str, count: int, per_page: int) -> List[Dict[str, Any]]:
    """Split `count` workspaces of an organization into listing pages."""
    resources = [
        workspace_resource(f"ws-{org}-{i}", f"{org}-ws-{i}", org) for i in range(count)
    ]
    chunks = [resources[i : i + per_page] for i in range(0, count, per_page)] or [[]]
    pages = []
    for idx, chunk in enumerate(chunks, start=1):
        next_page = idx + 1 if idx < len(chunks) else None
        pages.append(listing(chunk, page=idx, next_page=next_page))
    return pages


class FakeApi:
    """In-memory Terraform API behind an httpx.MockTransport."""

    def __init__(
        self,
        pages: Dict[str, List[Dict[str, Any]]],
        organizations: Optional[List[str]] = None,
    ):
        self.pages = pages
        self.organizations = organizations or list(pages)
        self.errors: Dict[tuple, int] = {}
        self.delays: Dict[str, float] = {}
        self.blockers: Dict[str, asyncio.Event] = {}
        self.started: Dict[str, asyncio.Event] = {}
        self.cancelled: List[str] = []
        self.calls: List[tuple] = []

    async def handler(self, request: httpx.Request) -> httpx.Response:
        parts = request.url.path.strip("/").split("/")
        page = int(request.url.params.get("page[number]", "1"))
        if parts[-1] == "organizations":
            data = [
                {"id": name, "type": "organizations", "attributes": {"name": name}}
                for name in self.organizations
            ]
            return httpx.Response(200, json=listing(data))
        org = parts[-2]
        self.calls.append((org, page, dict(request.url.params)))
        if org in self.started:
            self.started[org].set()
        try:
            if org in self.blockers:
                await self.blockers[org].wait()
            if org in self.delays:
                await asyncio.sleep(self.delays[org])
        except asyncio.CancelledError:
            self.cancelled.append(org)
            raise
        if (org, page) in self.errors:
            return httpx.Response(self.errors[(org, page)], json={"errors": []})
        org_pages = self.pages.get(org)
        if org_pages is None:
            return httpx.Response(404, json={"errors": [{"status": "404"}]})
        return httpx.Response(200, json=org_pages[page - 1])

    def client(self) -> TerraformClient:
        return mock_client(self.handler)
