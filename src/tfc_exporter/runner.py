"""Entrypoint wiring together config, client, scrapers, and the HTTP server."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import platform
import sys

import uvicorn
from dotenv import load_dotenv
from prometheus_client import Gauge

from . import __version__
from .config import DEFAULT_API_ADDRESS, AppConfig, load_config
from .exporter_api import build_exporter_app
from .http_client import BearerTokenStrategy, TerraformClient
from .registry import build_default_registry

logger = logging.getLogger(__name__)

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

LOGFMT_FORMAT = (
    "ts=%(asctime)s level=%(levelname)s caller=%(module)s:%(lineno)d msg=%(quoted)s"
)

BUILD_INFO = Gauge(
    "tf_exporter_build_info",
    "A metric with a constant '1' value labeled by version and python version.",
    ["version", "python_version"],
)


class LogfmtFormatter(logging.Formatter):
    """logfmt lines with the message quoted and escaped."""

    def format(self, record: logging.LogRecord) -> str:
        record.quoted = json.dumps(record.getMessage(), ensure_ascii=False)
        return super().format(record)


class JSONFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        data = {
            "ts": self.formatTime(record),
            "level": record.levelname.lower(),
            "caller": f"{record.module}:{record.lineno}",
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            data["err"] = self.formatException(record.exc_info)
        return json.dumps(data)


def setup_logging(level: str, fmt: str = "logfmt") -> None:
    """Configure base logging."""
    numeric = LOG_LEVELS.get(level.lower(), logging.INFO)
    handler = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(LogfmtFormatter(LOGFMT_FORMAT))
    logging.basicConfig(level=numeric, handlers=[handler], force=True)
    logging.getLogger().setLevel(numeric)


def build_client(app_config: AppConfig) -> TerraformClient:
    """Create the API client from config.

    Raises:
        ValueError: If no API token is configured.
    """
    api = app_config.api
    token = api.resolve_token()
    if api.address.rstrip("/") != DEFAULT_API_ADDRESS.rstrip("/"):
        logger.info("Overwritten Terraform API address: %s", api.address)
    if api.insecureSkipVerify:
        logger.warning("TLS certificate verification of the API is disabled")
    return TerraformClient(
        api.address,
        BearerTokenStrategy(token),
        max_concurrency=api.maxConcurrency,
        verify_tls=not api.insecureSkipVerify,
        timeout=api.requestTimeoutSeconds,
    )


async def async_main(config_path: str) -> None:
    """Async entrypoint loading config and serving until shutdown."""
    app_config = load_config(config_path)
    setup_logging(app_config.exporter.logLevel, app_config.exporter.logFormat)
    logger.info("Starting tf_exporter version=%s", __version__)
    logger.debug("Build context python=%s", platform.python_version())

    client = build_client(app_config)
    scrapers = build_default_registry()
    logger.info(
        "Enabled scrapers: %s",
        ", ".join(d.name for d in scrapers.descriptors()),
    )
    if app_config.organizations:
        logger.info("Scraping organizations: %s", ", ".join(app_config.organizations))
    else:
        logger.info("No organizations configured; scraping all accessible ones")
    BUILD_INFO.labels(
        version=__version__, python_version=platform.python_version()
    ).set(1)

    exporter = app_config.exporter
    app = build_exporter_app(app_config, scrapers, client)
    uv_config = uvicorn.Config(
        app,
        host=exporter.host,
        port=exporter.port,
        log_level="warning" if exporter.logLevel == "warn" else exporter.logLevel,
        ssl_certfile=exporter.tlsCertFile,
        ssl_keyfile=exporter.tlsKeyFile,
    )
    server = uvicorn.Server(uv_config)
    logger.info("Listening on address %s", exporter.listenAddress)
    try:
        await server.serve()
    finally:
        await client.close()


def main() -> None:
    """CLI entrypoint."""
    load_dotenv()
    config_path = os.environ.get("TFC_EXPORTER_CONFIG", "config.yaml")
    try:
        asyncio.run(async_main(config_path))
    except (ValueError, OSError) as exc:
        print(f"Error starting tf_exporter: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
