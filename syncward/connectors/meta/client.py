"""SYNCWARD — Meta API Client.

Handles authentication, pagination and error classification. Each call is a
single attempt: retries and waits belong to the backoff controller, so the
client never sleeps on its own.
"""

import json
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from syncward.config import settings
from syncward.connectors.base import FetchOutcome
from syncward.core.errors import MetaAPIError
from syncward.core.logging import get_logger

logger = get_logger("meta.client")

# Meta error codes that signal quota exhaustion
THROTTLE_CODES = {4, 17, 32, 613} | set(range(80000, 80015))
THROTTLE_SUBCODES = {2446079, 1487742}
# "Unknown error" / "Service temporarily unavailable"
TRANSIENT_CODES = {1, 2}

_WAIT_PATTERN = re.compile(r"wait\s+(\d+)\s*(s|sec|secs|seconds|m|min|mins|minutes)?\b", re.I)


def _header(headers: Dict[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def parse_retry_hint(headers: Dict[str, str], message: str = "") -> Optional[float]:
    """Extract a wait hint (seconds) from Meta throttle headers or message text."""
    retry_after = _header(headers, "retry-after")
    if retry_after:
        try:
            return float(retry_after)
        except ValueError:
            pass

    buc = _header(headers, "x-business-use-case-usage")
    if buc:
        try:
            usage = json.loads(buc)
            minutes = [
                float(entry.get("estimated_time_to_regain_access", 0) or 0)
                for entries in usage.values()
                for entry in entries
            ]
            if minutes and max(minutes) > 0:
                return max(minutes) * 60
        except (ValueError, AttributeError, TypeError):
            logger.warning(f"Unparseable business use case usage header: {buc}")

    account_usage = _header(headers, "x-ad-account-usage")
    if account_usage:
        try:
            reset = float(json.loads(account_usage).get("reset_time_duration", 0) or 0)
            if reset > 0:
                return reset
        except (ValueError, AttributeError, TypeError):
            logger.warning(f"Unparseable ad account usage header: {account_usage}")

    match = _WAIT_PATTERN.search(message or "")
    if match:
        value = float(match.group(1))
        unit = (match.group(2) or "s").lower()
        return value * 60 if unit.startswith("m") else value

    return None


def classify_meta_error(
    status_code: int,
    error_code: int = 0,
    error_subcode: int = 0,
    message: str = "",
    headers: Optional[Dict[str, str]] = None,
    is_transient: bool = False,
) -> FetchOutcome:
    """Map an upstream error response onto throttled / transient / fatal."""
    headers = headers or {}
    lowered = (message or "").lower()
    if (
        status_code == 429
        or error_code in THROTTLE_CODES
        or error_subcode in THROTTLE_SUBCODES
        or "request limit reached" in lowered
        or "too many calls" in lowered
    ):
        return FetchOutcome.throttled(parse_retry_hint(headers, message), message)

    if status_code >= 500 or error_code in TRANSIENT_CODES or is_transient:
        return FetchOutcome.transient(f"HTTP {status_code}: {message}")

    return FetchOutcome.fatal(
        f"HTTP {status_code} (code {error_code}/{error_subcode}): {message}"
    )


class MetaClient:
    """Async HTTP client for Meta Marketing API."""

    def __init__(
        self,
        access_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
    ):
        self.access_token = access_token or settings.meta_access_token
        self.base_url = f"{settings.meta_base_url}/{settings.meta_api_version}"
        self._transport = transport
        self._timeout = timeout or settings.meta_request_timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ── Core Request Method ──

    async def _request(
        self,
        method: str,
        url: str,
        params: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        """Make one request. Raises MetaAPIError on an error response.

        Transport failures (timeouts, connection resets) propagate as httpx errors.
        """
        params = dict(params or {})
        if "access_token=" not in url:
            params["access_token"] = self.access_token

        # paging.next URLs carry their own query (cursor, token); merge, never replace
        request_url = httpx.URL(url)
        if params:
            request_url = request_url.copy_merge_params(params)

        client = await self._get_client()
        resp = await client.request(method, request_url)

        if resp.status_code < 400:
            return resp.json()

        body: Dict[str, Any] = {}
        if resp.headers.get("content-type", "").startswith(("application/json", "text/javascript")):
            try:
                body = resp.json()
            except ValueError:
                body = {}
        error = body.get("error", {}) if isinstance(body, dict) else {}
        raise MetaAPIError(
            error.get("message", f"HTTP {resp.status_code}"),
            status_code=resp.status_code,
            error_code=int(error.get("code", 0) or 0),
            error_subcode=int(error.get("error_subcode", 0) or 0),
            headers=dict(resp.headers),
            is_transient=bool(error.get("is_transient", False)),
        )

    # ── Pagination ──

    async def _paginated_get(
        self,
        url: str,
        params: Dict[str, Any] | None = None,
        max_pages: int | None = None,
        before_page: Callable[[int], Awaitable[Any]] | None = None,
    ) -> List[Dict[str, Any]]:
        """Fetch all pages of a paginated endpoint."""
        all_data: List[Dict[str, Any]] = []
        params = params or {}
        current_url = url

        for page in range(max(max_pages or settings.meta_max_pages, 1)):
            if before_page is not None:
                await before_page(page)
            result = await self._request(
                "GET", current_url, params if page == 0 else None
            )
            data = result.get("data", [])
            all_data.extend(data)

            # Check for next page
            paging = result.get("paging", {})
            next_url = paging.get("next")
            if not next_url:
                break
            current_url = next_url
        else:
            logger.warning(f"Stopped paging {url} after {page + 1} pages")

        logger.info(f"Fetched {len(all_data)} records from {url}")
        return all_data

    # ── Token Validation ──

    async def validate_token(self) -> Dict[str, Any]:
        """Check if the access token is valid and return metadata."""
        url = f"{self.base_url}/debug_token"
        params = {"input_token": self.access_token}
        result = await self._request("GET", url, params)
        token_data = result.get("data", {})
        return {
            "valid": token_data.get("is_valid", False),
            "expires_at": token_data.get("expires_at", 0),
            "scopes": token_data.get("scopes", []),
            "app_id": token_data.get("app_id", ""),
        }

    # ── Account Info ──

    async def get_account_info(self, ad_account_id: str) -> Dict[str, Any]:
        """Fetch ad account details."""
        url = f"{self.base_url}/{ad_account_id}"
        params = {
            "fields": "name,account_id,account_status,currency,timezone_name"
        }
        return await self._request("GET", url, params)
