"""
Cloudflare D1 Data Source.

Runs the traversal query against a Cloudflare D1 database through the REST
query endpoint:
- Windowed reads (LIMIT/OFFSET over the wrapped query)
- Rate limiting and retry logic
- Error handling with specific D1 error codes
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from db_feed.connectors.base import QueryError

if TYPE_CHECKING:
    from db_feed.config import Settings

logger = logging.getLogger(__name__)

_VALUE_PARAM = re.compile(r":value\b")


class D1Error(Exception):
    """Base exception for D1 API errors."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status = status


class D1RateLimitError(D1Error):
    """Raised when rate limit is exceeded."""

    def __init__(self, retry_after: int = 60) -> None:
        super().__init__(f"Rate limit exceeded. Retry after {retry_after}s", status=429)
        self.retry_after = retry_after


class D1QueryTimeoutError(D1Error):
    """Raised when query exceeds time limit."""


@dataclass
class QueryResult:
    """Result of a D1 query."""

    results: list[dict[str, Any]] = field(default_factory=list)
    meta: dict[str, Any] = field(default_factory=dict)
    rows_read: int = 0
    duration_ms: float = 0.0


class D1Client:
    """
    Cloudflare D1 REST API client.

    Example:
        client = D1Client(
            account_id="your-account-id",
            database_id="your-database-id",
            api_token="your-api-token",
        )
        result = client.execute("SELECT * FROM users LIMIT ?1", [10])
    """

    BASE_URL = "https://api.cloudflare.com/client/v4"

    def __init__(
        self,
        account_id: str,
        database_id: str,
        api_token: str,
        query_timeout_seconds: int = 30,
        max_retries: int = 3,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """
        Initialize D1 client.

        Args:
            account_id: Cloudflare account ID
            database_id: D1 database ID (UUID)
            api_token: Cloudflare API token
            query_timeout_seconds: Maximum query execution time
            max_retries: Attempts per request
            transport: Optional httpx transport (tests use ``httpx.MockTransport``)
        """
        self.account_id = account_id
        self.database_id = database_id
        self.api_token = api_token
        self.query_timeout_seconds = query_timeout_seconds
        self.max_retries = max_retries
        self.retry_delay = 1.0
        self._transport = transport
        self._client: httpx.Client | None = None

    @property
    def database_url(self) -> str:
        """Base URL for database operations."""
        return (
            f"{self.BASE_URL}/accounts/{self.account_id}"
            f"/d1/database/{self.database_id}"
        )

    def _get_headers(self) -> dict[str, str]:
        """Get request headers with authentication."""
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.Client(
                headers=self._get_headers(),
                timeout=httpx.Timeout(
                    connect=10.0,
                    read=self.query_timeout_seconds + 10,
                    write=30.0,
                    pool=10.0,
                ),
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> "D1Client":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        """
        Make an API request with error handling and retry logic.

        Handles:
        - Rate limiting (429) honouring Retry-After
        - Transport errors with linear backoff
        - D1-specific error messages
        """
        client = self._get_client()

        for attempt in range(self.max_retries):
            try:
                response = client.request(method, url, **kwargs)

                if response.status_code == 429:
                    retry_after = int(response.headers.get("Retry-After", "60"))
                    if attempt < self.max_retries - 1:
                        logger.warning("D1 rate limited; retrying in %ss", retry_after)
                        time.sleep(retry_after)
                        continue
                    raise D1RateLimitError(retry_after)

                try:
                    data = response.json()
                except ValueError as e:
                    raise D1Error(
                        f"Invalid response (HTTP {response.status_code})",
                        status=response.status_code,
                    ) from e

                if not data.get("success", True):
                    errors = data.get("errors", [])
                    error = errors[0] if errors else {}
                    message = error.get("message", "Unknown error")
                    code = str(error.get("code", ""))
                    if "timeout" in message.lower():
                        raise D1QueryTimeoutError(message, code, response.status_code)
                    raise D1Error(message, code, response.status_code)

                return data

            except httpx.TransportError as e:
                if attempt < self.max_retries - 1:
                    time.sleep(self.retry_delay * (attempt + 1))
                    continue
                raise D1Error(f"Connection error: {e}") from e

        raise D1Error("Max retries exceeded")

    def execute(self, sql: str, params: list[Any] | None = None) -> QueryResult:
        """
        Execute a SQL query.

        Args:
            sql: SQL statement
            params: Ordinal parameters (``?1``, ``?2`` ...)

        Returns:
            QueryResult with results and metadata

        Raises:
            D1Error: The request or the query failed
        """
        body: dict[str, Any] = {"sql": sql}
        if params:
            body["params"] = params

        start_time = time.time()
        data = self._request("POST", f"{self.database_url}/query", json=body)
        duration = (time.time() - start_time) * 1000

        result_data = (data.get("result") or [{}])[0]
        meta = result_data.get("meta", {})
        return QueryResult(
            results=result_data.get("results", []),
            meta=meta,
            rows_read=meta.get("rows_read", 0),
            duration_ms=duration,
        )


class D1Source:
    """
    Data source backed by a Cloudflare D1 database.

    ``:value`` in the incremental query is rewritten to the ordinal
    parameter D1 expects.
    """

    def __init__(
        self,
        client: D1Client,
        query: str = "",
        incremental_query: str | None = None,
    ) -> None:
        self.client = client
        self.query = query.strip().rstrip(";")
        self.incremental_query = (incremental_query or "").strip().rstrip(";") or None

    @classmethod
    def from_settings(cls, settings: "Settings") -> "D1Source":
        d1 = settings.source.d1
        client = D1Client(
            account_id=d1.account_id,
            database_id=d1.database_id,
            api_token=d1.api_token.get_secret_value(),
            query_timeout_seconds=d1.query_timeout_seconds,
            max_retries=d1.max_retries,
        )
        return cls(
            client,
            query=settings.source.query,
            incremental_query=settings.source.incremental_query,
        )

    def execute(self, offset: int, limit: int, param: Any = None) -> list[dict[str, Any]]:
        if param is not None and self.incremental_query:
            inner = _VALUE_PARAM.sub("?1", self.incremental_query)
            sql = f"SELECT * FROM ({inner}) LIMIT ?2 OFFSET ?3"
            params = [param, limit, offset]
        else:
            if not self.query:
                raise QueryError("No traversal query configured")
            sql = f"SELECT * FROM ({self.query}) LIMIT ?1 OFFSET ?2"
            params = [limit, offset]

        try:
            return self.client.execute(sql, params).results
        except D1Error as e:
            raise QueryError(f"D1 query failed: {e}", sql) from e

    def is_reachable(self) -> bool:
        try:
            self.client.execute("SELECT 1")
            return True
        except D1Error as e:
            logger.debug("D1 probe failed: %s", e)
            return False

    def close(self) -> None:
        self.client.close()
