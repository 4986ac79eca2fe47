"""Scraper exporting workspace information from the Workspaces API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from .http_client import TerraformApiError, TerraformClient
from .models import Run, Workspace, WorkspaceList
from .registry import ScrapeError, Scraper
from .samples import (
    NAMESPACE,
    MetricDescriptor,
    MetricSample,
    SampleChannel,
    build_fq_name,
)
from .utils import NOT_AVAILABLE, format_timestamp

logger = logging.getLogger(__name__)

WORKSPACES_SUBSYSTEM = "workspaces"

# Tunable: smaller pages mean more requests against the API rate limit
# (30 requests per second per token).
PAGE_SIZE = 40

WORKSPACE_INCLUDES = ("current_run",)

WORKSPACES_INFO = MetricDescriptor(
    name=build_fq_name(NAMESPACE, WORKSPACES_SUBSYSTEM, "info"),
    help="Information about existing workspaces",
    labels=(
        "id",
        "name",
        "organization",
        "terraform_version",
        "created_at",
        "environment",
        "current_run",
        "current_run_status",
        "current_run_created_at",
    ),
)


@dataclass
class PageState:
    """Pagination cursor for one organization."""

    organization: str
    page: int = 1
    next_page: Optional[int] = None

    def advance(self, workspaces: WorkspaceList) -> bool:
        """Move to the next page; return False once pagination is exhausted."""
        self.next_page = workspaces.pagination.next_page
        if workspaces.pagination.exhausted:
            return False
        if self.next_page <= self.page:
            raise ValueError(
                f"next page {self.next_page} does not advance past {self.page}"
            )
        self.page = self.next_page
        return True


def current_run_id(run: Run | None) -> str:
    return run.id if run else NOT_AVAILABLE


def current_run_status(run: Run | None) -> str:
    return run.status if run else NOT_AVAILABLE


def current_run_created_at(run: Run | None) -> str:
    return format_timestamp(run.created_at) if run else NOT_AVAILABLE


def workspace_sample(workspace: Workspace) -> MetricSample:
    """Build the info sample for a workspace."""
    run = workspace.current_run
    return MetricSample(
        WORKSPACES_INFO,
        1.0,
        (
            workspace.id,
            workspace.name,
            workspace.organization,
            workspace.terraform_version,
            format_timestamp(workspace.created_at),
            workspace.environment,
            current_run_id(run),
            current_run_status(run),
            current_run_created_at(run),
        ),
    )


class WorkspacesScraper(Scraper):
    """Scrapes metrics about the workspaces of an organization."""

    name = WORKSPACES_SUBSYSTEM
    help = (
        "Scrape information from the Workspaces API: "
        "https://developer.hashicorp.com/terraform/cloud-docs/api-docs/workspaces"
    )
    version = "v2"
    metrics = (WORKSPACES_INFO,)

    async def fetch_page(
        self,
        client: TerraformClient,
        state: PageState,
        channel: SampleChannel,
    ) -> WorkspaceList:
        """Fetch one page and send a sample for each workspace on it."""
        try:
            workspaces = await client.list_workspaces(
                state.organization,
                page_number=state.page,
                page_size=PAGE_SIZE,
                include=WORKSPACE_INCLUDES,
            )
            samples = [workspace_sample(ws) for ws in workspaces.items]
        except (TerraformApiError, httpx.HTTPError, ValueError) as exc:
            message = str(exc) or type(exc).__name__
            raise ScrapeError(
                message, self.name, state.organization, state.page
            ) from exc
        for sample in samples:
            await channel.send(sample)
        return workspaces

    async def scrape(
        self, client: TerraformClient, organization: str, channel: SampleChannel
    ) -> None:
        """Walk every page of the organization's workspace listing."""
        state = PageState(organization)
        count = 0
        while True:
            workspaces = await self.fetch_page(client, state, channel)
            count += len(workspaces.items)
            try:
                if not state.advance(workspaces):
                    break
            except ValueError as exc:
                raise ScrapeError(
                    str(exc), self.name, organization, state.page
                ) from exc
        logger.debug(
            "Scraped %s workspaces for organization %s over %s pages",
            count,
            organization,
            state.page,
        )
