"""Scraper interface and the registry of scrapers known to the exporter."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Tuple

from .samples import MetricDescriptor, SampleChannel

if TYPE_CHECKING:
    from .http_client import TerraformClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScraperDescriptor:
    """Identity of a scraper."""

    name: str
    help: str
    version: str


class ScrapeError(Exception):
    """Raised when a scraper fails to fetch a page for an organization."""

    def __init__(self, message: str, scraper: str, organization: str, page: int):
        super().__init__(
            f"{message} (scraper={scraper}, organization={organization}, page={page})"
        )
        self.scraper = scraper
        self.organization = organization
        self.page = page


class Scraper(ABC):
    """A unit of collection logic for one category of API resource.

    Scrapers hold no state between invocations; one instance serves every
    scrape request.
    """

    name: str = ""
    help: str = ""
    version: str = "v2"
    metrics: Tuple[MetricDescriptor, ...] = ()

    @property
    def descriptor(self) -> ScraperDescriptor:
        """Return the immutable identity of this scraper."""
        return ScraperDescriptor(self.name, self.help, self.version)

    @abstractmethod
    async def scrape(
        self, client: "TerraformClient", organization: str, channel: SampleChannel
    ) -> None:
        """Fetch all resources of one organization and send them as samples.

        Raises:
            ScrapeError: If the API request for any page fails.
        """


class ScraperRegistry:
    """Append-only list of scrapers, sealed before serving starts."""

    def __init__(self) -> None:
        self._scrapers: List[Scraper] = []
        self._sealed = False

    def register(self, scraper: Scraper) -> None:
        """Add a scraper.

        Raises:
            RuntimeError: If the registry was already sealed.
            ValueError: If a scraper with the same name is registered.
        """
        if self._sealed:
            raise RuntimeError(
                f"cannot register scraper '{scraper.name}' after the registry is sealed"
            )
        if not scraper.name:
            raise ValueError("scraper name must not be empty")
        if any(s.name == scraper.name for s in self._scrapers):
            raise ValueError(f"scraper '{scraper.name}' is already registered")
        self._scrapers.append(scraper)
        logger.debug("Registered scraper %s (%s)", scraper.name, scraper.version)

    def seal(self) -> None:
        """Freeze the registry; later registrations are rejected."""
        self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    def list(self) -> Tuple[Scraper, ...]:
        """Return the registered scrapers."""
        return tuple(self._scrapers)

    def descriptors(self) -> Tuple[ScraperDescriptor, ...]:
        """Return the identities of the registered scrapers."""
        return tuple(s.descriptor for s in self._scrapers)

    def __len__(self) -> int:
        return len(self._scrapers)


def build_default_registry() -> ScraperRegistry:
    """Create the sealed registry of built-in scrapers."""
    from .workspaces import WorkspacesScraper

    registry = ScraperRegistry()
    registry.register(WorkspacesScraper())
    registry.seal()
    return registry
