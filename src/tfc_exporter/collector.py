"""Per-request collection: scrape context, fan-out coordinator, and collector."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

import httpx
from prometheus_client.metrics_core import (
    CounterMetricFamily,
    GaugeMetricFamily,
    Metric,
)
from prometheus_client.registry import Collector

from . import config as cfg
from .http_client import TerraformApiError, TerraformClient
from .registry import Scraper, ScraperRegistry
from .samples import (
    NAMESPACE,
    MetricDescriptor,
    MetricSample,
    SampleChannel,
    build_fq_name,
)

logger = logging.getLogger(__name__)

CHANNEL_SIZE = 1000
ORGANIZATIONS_PAGE_SIZE = 100

SCRAPE_DURATION = MetricDescriptor(
    name=build_fq_name(NAMESPACE, "exporter", "scrape_collector_duration_seconds"),
    help="Duration of a collector scrape.",
    labels=("collector",),
)


class CollectionError(Exception):
    """Raised when a collection fails; no partial results are exposed."""


class CollectionCancelled(CollectionError):
    """Raised when a collection is aborted by its deadline or its client."""


class ScrapeContext:
    """Cancellation scope of a single scrape request.

    Carries the optional deadline (event loop clock) and cancels every task
    attached to it when the request is abandoned.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        timeout: Optional[float] = None,
    ):
        self.loop = loop
        self.deadline = None if timeout is None else loop.time() + timeout
        self.reason: Optional[str] = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    def attach(self, task: asyncio.Task) -> None:
        """Bind a task to this context, cancelling it if already cancelled."""
        if self.cancelled:
            task.cancel()
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def cancel(self, reason: str) -> None:
        """Cancel every attached task; the first reason sticks."""
        if self.reason is None:
            self.reason = reason
        for task in list(self._tasks):
            task.cancel()


def first_error(exc: BaseException) -> BaseException:
    """Return the first leaf exception of a (nested) exception group."""
    while isinstance(exc, BaseExceptionGroup) and exc.exceptions:
        exc = exc.exceptions[0]
    return exc


async def discover_organizations(client: TerraformClient) -> List[str]:
    """Page through every organization visible to the API token."""
    names: List[str] = []
    page = 1
    while True:
        orgs = await client.list_organizations(
            page_number=page, page_size=ORGANIZATIONS_PAGE_SIZE
        )
        names.extend(name for name in orgs.names if name not in names)
        if orgs.pagination.exhausted or orgs.pagination.next_page <= page:
            break
        page = orgs.pagination.next_page
    logger.debug("Discovered %s organizations", len(names))
    return names


async def _run_scraper(
    scraper: Scraper,
    client: TerraformClient,
    organizations: Sequence[str],
    channel: SampleChannel,
) -> None:
    """Run one scraper over every organization concurrently."""
    start = time.perf_counter()
    async with asyncio.TaskGroup() as tg:
        for organization in organizations:
            tg.create_task(
                scraper.scrape(client, organization, channel),
                name=f"{scraper.name}:{organization}",
            )
    duration = time.perf_counter() - start
    logger.debug("Scraper %s finished in %.3fs", scraper.name, duration)
    await channel.send(MetricSample(SCRAPE_DURATION, duration, (scraper.name,)))


async def run_scrapers(
    scrapers: Iterable[Scraper],
    client: TerraformClient,
    organizations: Sequence[str],
    channel: SampleChannel,
) -> None:
    """Fan out every scraper over every organization.

    The first failing task cancels all of its siblings; once every task has
    unwound that failure is raised as a CollectionError.

    Raises:
        CollectionError: If any scraper fails for any organization.
    """
    try:
        async with asyncio.TaskGroup() as tg:
            for scraper in scrapers:
                tg.create_task(
                    _run_scraper(scraper, client, organizations, channel),
                    name=scraper.name,
                )
    except BaseExceptionGroup as group:
        exc = first_error(group)
        raise CollectionError(str(exc)) from exc


def build_families(samples: Iterable[MetricSample]) -> List[Metric]:
    """Group samples into metric families, one per descriptor."""
    families: Dict[MetricDescriptor, Metric] = {}
    for sample in samples:
        desc = sample.descriptor
        family = families.get(desc)
        if family is None:
            family = empty_family(desc)
            families[desc] = family
        family.add_metric(list(sample.label_values), sample.value)
    return list(families.values())


def empty_family(desc: MetricDescriptor) -> Metric:
    """Create a metric family without samples for a descriptor."""
    if desc.value_type == "counter":
        return CounterMetricFamily(desc.name, desc.help, labels=list(desc.labels))
    return GaugeMetricFamily(desc.name, desc.help, labels=list(desc.labels))


class ExporterCollector(Collector):
    """Collector bound to a single scrape request.

    ``prometheus_client`` calls :meth:`collect` synchronously from a worker
    thread; the collection itself runs on the context's event loop.
    """

    def __init__(
        self,
        context: ScrapeContext,
        app_config: cfg.AppConfig,
        registry: ScraperRegistry,
        client: TerraformClient,
    ):
        self.context = context
        self.config = app_config
        self.registry = registry
        self.client = client

    def describe(self) -> List[Metric]:
        """Return empty families naming every metric this collector emits."""
        descs = [m for s in self.registry.list() for m in s.metrics]
        descs.append(SCRAPE_DURATION)
        return [empty_family(desc) for desc in descs]

    def collect(self) -> Iterator[Metric]:
        """Run a full collection and yield the resulting metric families.

        Raises:
            CollectionError: If collection fails or is cancelled.
        """
        future = asyncio.run_coroutine_threadsafe(self.gather(), self.context.loop)
        yield from future.result()

    async def gather(self) -> List[Metric]:
        """Collect all samples within the context's deadline."""
        if self.context.cancelled:
            logger.warning("Collection aborted: %s", self.context.reason)
            raise CollectionCancelled(self.context.reason)
        task = asyncio.current_task()
        if task is not None:
            self.context.attach(task)
        try:
            async with asyncio.timeout_at(self.context.deadline):
                return await self._gather()
        except TimeoutError as exc:
            logger.warning("Collection aborted: scrape deadline exceeded")
            raise CollectionCancelled("scrape deadline exceeded") from exc
        except asyncio.CancelledError:
            if not self.context.cancelled:
                raise
            logger.warning("Collection aborted: %s", self.context.reason)
            raise CollectionCancelled(self.context.reason) from None

    async def _gather(self) -> List[Metric]:
        organizations = self.config.organizations
        if not organizations:
            try:
                organizations = await discover_organizations(self.client)
            except (TerraformApiError, httpx.HTTPError) as exc:
                raise CollectionError(f"discovering organizations: {exc}") from exc
            # cancelled while discovering
            if self.context.cancelled:
                logger.warning("Collection aborted: %s", self.context.reason)
                raise CollectionCancelled(self.context.reason)
        channel = SampleChannel(CHANNEL_SIZE)
        samples: List[MetricSample] = []

        async def produce() -> None:
            try:
                await run_scrapers(
                    self.registry.list(), self.client, organizations, channel
                )
            finally:
                channel.close()

        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(produce(), name="run-scrapers")
                async for sample in channel:
                    samples.append(sample)
        except BaseExceptionGroup as group:
            exc = first_error(group)
            logger.error("Collection failed: %s", exc)
            if isinstance(exc, CollectionError):
                raise exc
            raise CollectionError(str(exc)) from exc
        logger.debug(
            "Collected %s samples for %s organizations",
            len(samples),
            len(organizations),
        )
        return build_families(samples)


class MergedRegistry:
    """Chains the collections of several registries into one."""

    def __init__(self, *registries):
        self.registries = registries

    def collect(self) -> Iterator[Metric]:
        for registry in self.registries:
            yield from registry.collect()
