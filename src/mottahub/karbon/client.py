"""
Async client for the Karbon v3 REST API.

Every fetch returns a result object instead of raising: a transport failure
or non-2xx status is reported through FetchResult.error so the orchestrator
can record it against one entity kind and carry on with the others. The only
exception raised by this module is KarbonCredentialsError, when the client is
built without credentials.

No retries happen here. A failed page aborts the whole collection fetch and
no partial data is returned.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx

from mottahub.config import Settings, get_settings

logger = logging.getLogger(__name__)


class KarbonCredentialsError(Exception):
    """Raised when KARBON_ACCESS_KEY or KARBON_BEARER_TOKEN is not configured."""


class KarbonApiError(Exception):
    """A Karbon request failed. Carries the HTTP status when there was one."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class ODataQuery:
    """OData system query options understood by Karbon list endpoints."""

    filter: Optional[str] = None
    select: Optional[str] = None
    expand: Optional[str] = None
    orderby: Optional[str] = None
    top: Optional[int] = None
    skip: Optional[int] = None
    count: bool = False

    def to_params(self) -> Dict[str, str]:
        params: Dict[str, str] = {}
        if self.filter:
            params["$filter"] = self.filter
        if self.select:
            params["$select"] = self.select
        if self.expand:
            params["$expand"] = self.expand
        if self.orderby:
            params["$orderby"] = self.orderby
        if self.top is not None:
            params["$top"] = str(self.top)
        if self.skip is not None:
            params["$skip"] = str(self.skip)
        if self.count:
            params["$count"] = "true"
        return params


@dataclass
class FetchResult:
    records: List[Dict[str, Any]] = field(default_factory=list)
    total_count: Optional[int] = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class NestedFetchResult:
    """Children per parent key. Parents whose fetch failed are absent from by_parent."""

    by_parent: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @property
    def records(self) -> List[Dict[str, Any]]:
        return [record for children in self.by_parent.values() for record in children]


class KarbonClient:
    """
    Thin async wrapper over httpx for Karbon.

    Use as an async context manager, or call aclose() when done.
    """

    def __init__(
        self,
        access_key: str,
        bearer_token: str,
        base_url: str = "https://api.karbonhq.com/v3",
        timeout: float = 30.0,
        max_pages: int = 100,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            access_key: Karbon AccessKey header value.
            bearer_token: Karbon API bearer token.
            base_url: API root; collection paths are appended to it.
            timeout: Per-request timeout in seconds.
            max_pages: Upper bound on @odata.nextLink pages followed per fetch.
            transport: Optional httpx transport (tests pass httpx.MockTransport).

        Raises:
            KarbonCredentialsError: if either credential is empty.
        """
        if not access_key or not bearer_token:
            raise KarbonCredentialsError(
                "Karbon API credentials not configured: set KARBON_ACCESS_KEY and KARBON_BEARER_TOKEN"
            )
        self.base_url = base_url.rstrip("/")
        self.max_pages = max_pages
        self._http = httpx.AsyncClient(
            headers={
                "AccessKey": access_key,
                "Authorization": f"Bearer {bearer_token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "KarbonClient":
        """Build a client from Settings. Raises KarbonCredentialsError if unset."""
        settings = settings or get_settings()
        return cls(
            access_key=settings.karbon_access_key,
            bearer_token=settings.karbon_bearer_token,
            base_url=settings.karbon_base_url,
            timeout=settings.karbon_timeout_seconds,
            max_pages=settings.karbon_max_pages,
            transport=transport,
        )

    async def __aenter__(self) -> "KarbonClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def _url(self, entity_path: str) -> str:
        return f"{self.base_url}/{entity_path.lstrip('/')}"

    async def _get_json(
        self, url: str, params: Optional[Dict[str, str]] = None
    ) -> Any:
        """GET url and decode JSON. Raises KarbonApiError on any failure."""
        try:
            response = await self._http.get(url, params=params)
        except httpx.HTTPError as exc:
            raise KarbonApiError(f"{type(exc).__name__}: {exc}") from exc

        if response.status_code >= 400:
            raise KarbonApiError(
                f"{response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise KarbonApiError(f"Invalid JSON from {url}: {exc}", response.status_code) from exc

    async def fetch_all(
        self, entity_path: str, query: Optional[ODataQuery] = None
    ) -> FetchResult:
        """
        Fetch every page of a Karbon collection.

        Follows @odata.nextLink until it is absent. Any failed page, or
        reaching max_pages with a nextLink still pending, discards the pages
        already read and returns an error result with empty records. A body
        without a "value" array is a single object and becomes one record.
        """
        url: Optional[str] = self._url(entity_path)
        params: Optional[Dict[str, str]] = query.to_params() if query else None
        records: List[Dict[str, Any]] = []
        total_count: Optional[int] = None
        pages = 0

        while url and pages < self.max_pages:
            pages += 1
            try:
                body = await self._get_json(url, params)
            except KarbonApiError as exc:
                logger.warning("Karbon fetch %s failed on page %d: %s", entity_path, pages, exc)
                return FetchResult(error=str(exc), status_code=exc.status_code)

            if isinstance(body, dict) and "value" not in body:
                # Single-object resource such as /TenantSettings
                page, url = [body], None
            elif isinstance(body, dict):
                page = body.get("value") or []
                if total_count is None and body.get("@odata.count") is not None:
                    total_count = int(body["@odata.count"])
                url = body.get("@odata.nextLink")
            else:
                page, url = body, None
            records.extend(r for r in page if isinstance(r, dict))
            # nextLink already carries the query string
            params = None

        if url:
            logger.warning(
                "Karbon fetch %s stopped at max_pages=%d with more pages available",
                entity_path, self.max_pages,
            )
            return FetchResult(
                error=f"max_pages={self.max_pages} reached with more pages available",
                total_count=total_count,
            )
        return FetchResult(records=records, total_count=total_count)

    async def fetch_one(self, entity_path: str, expand: Optional[str] = None) -> FetchResult:
        """Fetch a single entity, e.g. "/WorkItems/{key}". The record is returned unwrapped."""
        params = {"$expand": expand} if expand else None
        try:
            body = await self._get_json(self._url(entity_path), params)
        except KarbonApiError as exc:
            logger.warning("Karbon fetch %s failed: %s", entity_path, exc)
            return FetchResult(error=str(exc), status_code=exc.status_code)
        if not isinstance(body, dict):
            return FetchResult(error=f"Unexpected response shape from {entity_path}")
        return FetchResult(records=[body], total_count=1)

    async def fetch_nested(
        self,
        parent_keys: Iterable[str],
        path_for: Callable[[str], str],
        batch_size: int = 10,
        delay: float = 0.1,
        query: Optional[ODataQuery] = None,
    ) -> NestedFetchResult:
        """
        Fetch a sub-collection for each parent key, e.g. tasks per work item.

        Parents are processed in sequential batches of batch_size with a
        pause of `delay` seconds between batches; requests inside a batch run
        concurrently. A 404 means the parent has no children. Any other
        failure is recorded in errors and that parent is skipped.
        """
        keys = [k for k in parent_keys if k]
        result = NestedFetchResult()

        for start in range(0, len(keys), batch_size):
            if start and delay:
                await asyncio.sleep(delay)
            batch = keys[start:start + batch_size]
            fetched = await asyncio.gather(*(self.fetch_all(path_for(k), query) for k in batch))
            for key, res in zip(batch, fetched):
                if res.ok:
                    result.by_parent[key] = res.records
                elif res.status_code == 404:
                    result.by_parent[key] = []
                else:
                    result.errors.append(f"{path_for(key)}: {res.error}")

        if result.errors:
            logger.warning(
                "Nested fetch: %d of %d parent(s) failed", len(result.errors), len(keys)
            )
        return result
