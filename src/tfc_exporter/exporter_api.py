"""FastAPI app serving metrics, status, and the landing page."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse, PlainTextResponse, Response
from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge
from prometheus_client.exposition import choose_encoder

from . import __version__
from . import config as cfg
from .collector import CollectionError, ExporterCollector, MergedRegistry, ScrapeContext
from .http_client import TerraformClient
from .registry import ScraperRegistry
from .utils import parse_timeout_seconds

logger = logging.getLogger(__name__)

TIMEOUT_HEADER = "X-Prometheus-Scrape-Timeout-Seconds"
DISCONNECT_POLL_SECONDS = 0.5

HANDLER_REQUESTS = Counter(
    "promhttp_metric_handler_requests",
    "Total number of scrapes by HTTP status code.",
    ["code"],
)
HANDLER_IN_FLIGHT = Gauge(
    "promhttp_metric_handler_requests_in_flight",
    "Current number of scrapes being served.",
)

LANDING_PAGE = """<html>
	<head><title>Terraform Cloud/Enterprise Exporter</title></head>
	<body>
	<h1>Terraform Cloud/Enterprise Exporter</h1>
	<p><a href="/metrics">Metrics</a></p>
	</body>
</html>
"""


def derive_context(request: Request, loop: asyncio.AbstractEventLoop) -> ScrapeContext:
    """Build the scrape context, honoring the Prometheus timeout header."""
    timeout = None
    raw = request.headers.get(TIMEOUT_HEADER)
    if raw:
        try:
            timeout = parse_timeout_seconds(raw)
        except ValueError as exc:
            logger.error("Failed to parse timeout from Prometheus header: %s", exc)
    return ScrapeContext(loop, timeout)


async def watch_disconnect(request: Request, context: ScrapeContext) -> None:
    """Cancel the context once the scraping client goes away."""
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)
    context.cancel("client disconnected")


def error_response(exc: Exception) -> PlainTextResponse:
    return PlainTextResponse(
        f"An error has occurred while serving metrics:\n\n{exc}",
        status_code=500,
    )


def build_exporter_app(
    app_config: cfg.AppConfig,
    scrapers: ScraperRegistry,
    client: TerraformClient,
) -> FastAPI:
    """Create the exporter's FastAPI app."""
    app = FastAPI(
        title="Terraform Cloud/Enterprise Exporter",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    async def serve_metrics(request: Request) -> Response:
        context = derive_context(request, asyncio.get_running_loop())
        registry = CollectorRegistry()
        registry.register(ExporterCollector(context, app_config, scrapers, client))
        gatherer = MergedRegistry(REGISTRY, registry)
        encoder, content_type = choose_encoder(request.headers.get("accept", ""))

        watcher = asyncio.create_task(watch_disconnect(request, context))
        try:
            # prometheus_client collects synchronously; keep the loop free.
            output = await run_in_threadpool(encoder, gatherer)
        except CollectionError as exc:
            return error_response(exc)
        except Exception as exc:
            logger.exception("Unexpected error while serving metrics")
            return error_response(exc)
        finally:
            watcher.cancel()
            with suppress(asyncio.CancelledError):
                await watcher
        return Response(content=output, media_type=content_type)

    @app.get("/metrics")
    async def metrics(request: Request):
        """Run a full collection and expose the result."""
        HANDLER_IN_FLIGHT.inc()
        try:
            response = await serve_metrics(request)
        finally:
            HANDLER_IN_FLIGHT.dec()
        HANDLER_REQUESTS.labels(code=str(response.status_code)).inc()
        return response

    @app.get("/status")
    async def status():
        """Liveness endpoint."""
        return PlainTextResponse("ok")

    @app.get("/")
    async def landing():
        """Static landing page."""
        return HTMLResponse(LANDING_PAGE)

    return app
