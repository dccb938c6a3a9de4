from __future__ import annotations

from typing import Any, Mapping

import httpx
import structlog

from strata.core.errors import (
    ConfigurationError,
    ResourceNotFoundError,
    TerminalProviderError,
    TransientProviderError,
)
from strata.providers.base import (
    DEFAULT_REPLACE_FIELDS,
    CreateResult,
    ProviderSet,
)
from strata.providers.registry import register_provider
from strata.resources.models import ResourceKind

logger = structlog.get_logger()

DEFAULT_USER_AGENT = "strata-provider-http/0.1.0"


def is_retryable_status(status_code: int) -> bool:
    """Determine if HTTP status code is retryable.

    409 covers dependency violations that clear once the remote side
    catches up (e.g. deleting a network whose subnets are still draining).
    """
    return status_code in (408, 409, 429, 500, 502, 503, 504)


class HttpControlPlane:
    """Client for a REST resource control API.

    Endpoints, relative to ``base_url``::

        POST   /v1/resources/{kind}        -> {"id": ..., "outputs": {...}}
        GET    /v1/resources/{kind}/{id}   -> {"attributes": {...}, "outputs": {...}}
        PUT    /v1/resources/{kind}/{id}   -> {"outputs": {...}}
        DELETE /v1/resources/{kind}/{id}
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        *,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout
        self._user_agent = user_agent
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "User-Agent": self._user_agent}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Execute a request, classifying failures as transient or terminal."""
        url = f"{self._base_url}{path}"
        req_headers = self._headers()
        if headers:
            req_headers.update(headers)

        try:
            response = await self._client.request(method, url, json=json, headers=req_headers)
        except (httpx.TimeoutException, httpx.ConnectError, httpx.ReadError, httpx.RemoteProtocolError) as exc:
            logger.warning("http_network_error", method=method, url=url, error=str(exc))
            raise TransientProviderError(str(exc), {"method": method, "url": url}) from exc

        if response.is_success:
            return response.json() if response.content else {}

        details = {"method": method, "url": url, "status": response.status_code}
        message = f"HTTP {response.status_code}: {response.text}"
        if is_retryable_status(response.status_code):
            logger.warning("http_retryable_error", **details)
            raise TransientProviderError(message, details)
        if response.status_code == 404:
            raise ResourceNotFoundError(message, details)
        logger.error("http_permanent_error", **details)
        raise TerminalProviderError(message, details)


class HttpProvider:
    """Provider for one resource kind backed by :class:`HttpControlPlane`."""

    def __init__(
        self,
        plane: HttpControlPlane,
        kind: ResourceKind,
        *,
        replace_fields: frozenset[str] | None = None,
    ) -> None:
        self._plane = plane
        self.kind = kind
        self.replace_fields = (
            replace_fields if replace_fields is not None else DEFAULT_REPLACE_FIELDS[kind]
        )

    @property
    def _collection(self) -> str:
        return f"/v1/resources/{self.kind.value}"

    async def create(self, attributes: dict[str, Any], *, idempotency_token: str) -> CreateResult:
        try:
            data = await self._plane.request(
                "POST",
                self._collection,
                json={"attributes": attributes},
                headers={"Idempotency-Key": idempotency_token},
            )
        except ResourceNotFoundError as exc:
            # The collection exists, so a 404 names a dependency not visible yet.
            raise TransientProviderError(exc.message, exc.details) from exc
        identity = data.get("id")
        if not identity:
            raise TerminalProviderError("Create response did not include an id", {"kind": self.kind.value})
        outputs = dict(data.get("outputs") or {})
        outputs.setdefault("id", identity)
        return CreateResult(identity=identity, outputs=outputs)

    async def read(self, identity: str) -> dict[str, Any] | None:
        try:
            data = await self._plane.request("GET", f"{self._collection}/{identity}")
        except ResourceNotFoundError:
            return None
        current = dict(data.get("attributes") or {})
        current.update(data.get("outputs") or {})
        return current

    async def update(self, identity: str, attributes: dict[str, Any]) -> dict[str, Any]:
        data = await self._plane.request(
            "PUT",
            f"{self._collection}/{identity}",
            json={"attributes": attributes},
        )
        return dict(data.get("outputs") or {})

    async def delete(self, identity: str) -> None:
        await self._plane.request("DELETE", f"{self._collection}/{identity}")


class HttpProviderSet(ProviderSet):
    """Every resource kind served by one control plane."""

    def __init__(
        self,
        plane: HttpControlPlane,
        *,
        replace_fields: Mapping[ResourceKind, frozenset[str]] | None = None,
    ) -> None:
        overrides = dict(replace_fields or {})
        super().__init__(
            {kind: HttpProvider(plane, kind, replace_fields=overrides.get(kind)) for kind in ResourceKind},
            name="http",
        )
        self._plane = plane

    async def aclose(self) -> None:
        await self._plane.aclose()


def _factory(
    *,
    url: str | None = None,
    token: str | None = None,
    timeout: float = 30.0,
    transport: httpx.AsyncBaseTransport | None = None,
    **_: Any,
) -> ProviderSet:
    if not url:
        raise ConfigurationError("The http provider requires STRATA_PROVIDER_URL")
    return HttpProviderSet(HttpControlPlane(url, token, timeout=timeout, transport=transport))


register_provider(
    "http",
    _factory,
    version=httpx.__version__,
    description="REST control-plane provider",
)

__all__ = ["HttpControlPlane", "HttpProvider", "HttpProviderSet", "is_retryable_status"]
