"""HTTP client for the Terraform Cloud/Enterprise API."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Optional, Sequence
from urllib.parse import quote, urljoin

import httpx
from prometheus_client import Counter, Gauge, Histogram

from .models import OrganizationList, WorkspaceList

logger = logging.getLogger(__name__)

JSONAPI_CONTENT_TYPE = "application/vnd.api+json"
API_PATH = "api/v2/"

CLIENT_IN_FLIGHT = Gauge(
    "client_api_in_flight_requests",
    "A gauge of in-flight requests for the wrapped client.",
)
CLIENT_REQUESTS = Counter(
    "client_api_requests",
    "A counter for requests from the wrapped client.",
    ["code", "method"],
)
CLIENT_DURATION = Histogram(
    "client_api_request_duration_seconds",
    "A histogram of request latencies.",
    ["method"],
)


class TerraformApiError(Exception):
    """Raised when the API answers with a non-success status or bad payload."""

    def __init__(self, message: str, status_code: int | None = None, url: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class AuthStrategy:
    """Base interface for authentication header injection."""

    async def headers(self) -> Dict[str, str]:
        """Return headers to include for authenticated requests."""
        return {}


class BearerTokenStrategy(AuthStrategy):
    """Static API token sent as a bearer token."""

    def __init__(self, token: str):
        """Create a bearer token strategy.

        Args:
            token: User, team or organization API token.
        """
        self._header = {"Authorization": f"Bearer {token}"}

    async def headers(self) -> Dict[str, str]:
        """Return static bearer header."""
        return self._header


class TerraformClient:
    """Thin async client enforcing global concurrency and instrumentation.

    The client holds no per-request state and is shared by all concurrent
    scrapes.
    """

    def __init__(
        self,
        address: str,
        auth: AuthStrategy,
        *,
        max_concurrency: int = 10,
        verify_tls: bool = True,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the API client.

        Args:
            address: Base address of the Terraform API.
            auth: Strategy providing authentication headers.
            max_concurrency: Global max concurrent upstream requests.
            verify_tls: Whether to verify the server certificate.
            timeout: Per-request timeout in seconds.
            transport: Optional transport override (used by tests).
        """
        self.address = address.rstrip("/") + "/"
        self.auth = auth
        self.timeout = timeout
        self._sem = asyncio.Semaphore(max_concurrency)
        kwargs: Dict[str, Any] = {"verify": verify_tls}
        if transport is not None:
            kwargs["transport"] = transport
        else:
            kwargs["http2"] = True
        self.client = httpx.AsyncClient(**kwargs)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self.client.aclose()

    def build_url(self, endpoint: str) -> str:
        """Join the API base path and an endpoint into a full URL."""
        return urljoin(self.address + API_PATH, endpoint.lstrip("/"))

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Perform an API request and return the decoded JSON document.

        Raises:
            TerraformApiError: On non-success status or a non-JSON body.
            httpx.HTTPError: On transport failures.
        """
        url = self.build_url(endpoint)
        headers = {"Content-Type": JSONAPI_CONTENT_TYPE}
        headers.update(await self.auth.headers())
        async with self._sem:
            logger.debug("HTTP %s %s params=%s", method, url, params)
            CLIENT_IN_FLIGHT.inc()
            start = time.perf_counter()
            try:
                response = await self.client.request(
                    method, url, headers=headers, params=params, timeout=self.timeout
                )
            finally:
                CLIENT_IN_FLIGHT.dec()
            CLIENT_DURATION.labels(method=method.lower()).observe(
                time.perf_counter() - start
            )
            CLIENT_REQUESTS.labels(
                code=str(response.status_code), method=method.lower()
            ).inc()
        if response.status_code >= 400:
            raise TerraformApiError(
                f"{method} {url}: unexpected status {response.status_code}",
                status_code=response.status_code,
                url=url,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise TerraformApiError(
                f"{method} {url}: invalid JSON body", response.status_code, url
            ) from exc
        if not isinstance(payload, dict):
            raise TerraformApiError(
                f"{method} {url}: expected a JSON object", response.status_code, url
            )
        return payload

    async def list_workspaces(
        self,
        organization: str,
        *,
        page_number: int,
        page_size: int,
        include: Sequence[str] = (),
    ) -> WorkspaceList:
        """List one page of workspaces of an organization."""
        params: Dict[str, Any] = {
            "page[number]": page_number,
            "page[size]": page_size,
        }
        if include:
            params["include"] = ",".join(include)
        endpoint = f"organizations/{quote(organization, safe='')}/workspaces"
        document = await self.request("GET", endpoint, params=params)
        try:
            return WorkspaceList.from_document(document)
        except (KeyError, TypeError, ValueError) as exc:
            raise TerraformApiError(
                f"malformed workspace list: {exc}", url=self.build_url(endpoint)
            ) from exc

    async def list_organizations(
        self, *, page_number: int, page_size: int
    ) -> OrganizationList:
        """List one page of organizations visible to the token."""
        params = {"page[number]": page_number, "page[size]": page_size}
        document = await self.request("GET", "organizations", params=params)
        try:
            return OrganizationList.from_document(document)
        except (KeyError, TypeError, ValueError) as exc:
            raise TerraformApiError(
                f"malformed organization list: {exc}",
                url=self.build_url("organizations"),
            ) from exc
