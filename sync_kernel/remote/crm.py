"""
CRM API connector (read-only).

The CRM is only ever a source of desired state: won deals and the quote
references recorded on them. Auth is a static API key sent as `x-api-token`.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from sync_kernel.models.execution import ErrorKind
from sync_kernel.remote.errors import (
    RemoteCallError,
    classify_status,
    decode_json,
    extract_error_message,
    parse_retry_after,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.pipedrive.com/api/v2"


class CrmClient:
    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        http_client: Optional[httpx.Client] = None,
        timeout_seconds: float = 30.0,
        page_size: int = 100,
        max_pages: int = 50,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(timeout=httpx.Timeout(timeout_seconds))
        self.page_size = page_size
        self.max_pages = max_pages

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> dict:
        url = f"{self._base_url}{path}"
        try:
            response = self._http.get(
                url,
                params=params,
                headers={"x-api-token": self._api_key, "Accept": "application/json"},
            )
        except httpx.TransportError as e:
            raise RemoteCallError(ErrorKind.TRANSIENT_NETWORK, f"GET {path} failed: {e}") from e

        if not response.is_success:
            body = response.text
            raise RemoteCallError(
                classify_status(response.status_code, body),
                extract_error_message(body),
                status=response.status_code,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
                body=body,
            )

        payload = decode_json(response)
        if isinstance(payload, dict) and payload.get("success") is False:
            raise RemoteCallError(
                ErrorKind.UNKNOWN,
                f"CRM reported failure: {payload.get('error') or 'unknown error'}",
                status=response.status_code,
            )
        return payload

    def fetch_won_deals(self, pipeline_id: Optional[int] = None) -> List[dict]:
        """
        All won deals, optionally for one pipeline.

        Follows `next_cursor` until it disappears or `max_pages` is reached.
        """
        deals: List[dict] = []
        cursor: Optional[str] = None
        for page in range(1, self.max_pages + 1):
            params: Dict[str, Any] = {"status": "won", "limit": self.page_size}
            if pipeline_id:
                params["pipeline_id"] = pipeline_id
            if cursor:
                params["cursor"] = cursor

            payload = self.get("/deals", params=params)
            data = payload.get("data") or []
            deals.extend(data)
            logger.debug("Fetched %d deals (page %d)", len(data), page)

            cursor = _next_cursor(payload)
            if not cursor:
                break
        else:
            logger.warning(
                "Stopped paging CRM deals after %d pages; results may be incomplete",
                self.max_pages,
            )
        return deals


def _next_cursor(payload: dict) -> Optional[str]:
    extra = payload.get("additional_data") or {}
    if extra.get("next_cursor"):
        return extra["next_cursor"]
    pagination = extra.get("pagination") or {}
    return pagination.get("next_cursor")
