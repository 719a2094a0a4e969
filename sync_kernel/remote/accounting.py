"""
Accounting API connector.

A small wrapper around `httpx.Client` for the projects/tasks/quotes endpoints.
Every request passes through the tenant's rate budget before it is sent and
feeds the response's rate headers back afterwards. Bearer tokens come from a
caller-supplied provider on every request; acquiring or refreshing them is
not this module's job.
"""

import logging
from typing import Any, Callable, Dict, Optional

import httpx

from sync_kernel.models.execution import ErrorKind
from sync_kernel.rate_budget.budget import TenantRateBudget
from sync_kernel.remote.errors import (
    AuthExpiredError,
    RemoteCallError,
    classify_status,
    decode_json,
    extract_error_message,
    parse_retry_after,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.xero.com"
PROJECTS_PATH = "/projects.xro/2.0/Projects"
QUOTES_PATH = "/api.xro/2.0/Quotes"

TokenProvider = Callable[[], str]


class AccountingClient:
    def __init__(
        self,
        *,
        tenant_id: str,
        token_provider: TokenProvider,
        rate_budget: TenantRateBudget,
        base_url: str = DEFAULT_BASE_URL,
        http_client: Optional[httpx.Client] = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.tenant_id = tenant_id
        self._token_provider = token_provider
        self.rate_budget = rate_budget
        self._base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(timeout=httpx.Timeout(timeout_seconds))

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def _headers(self, idempotency_key: Optional[str]) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._token_provider()}",
            "Xero-Tenant-Id": self.tenant_id,
            "Accept": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> httpx.Response:
        """Send one rate-gated request and return the raw response."""
        self.rate_budget.wait_if_needed(self.tenant_id)
        url = f"{self._base_url}{path}"
        try:
            response = self._http.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=self._headers(idempotency_key),
            )
        except httpx.TransportError as e:
            raise RemoteCallError(ErrorKind.TRANSIENT_NETWORK, f"{method} {path} failed: {e}") from e

        self.rate_budget.update_from_headers(self.tenant_id, response.headers)
        logger.debug("%s %s -> %d", method, path, response.status_code)
        return response

    def send(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Like `request`, but non-2xx responses raise a classified `RemoteCallError`."""
        response = self.request(method, path, **kwargs)
        if response.is_success:
            return response
        raise error_from_response(response)

    # --- Endpoints ---

    def list_projects_page(self, *, page: int, page_size: int, states: Optional[str] = None) -> dict:
        params: Dict[str, Any] = {"page": page, "pageSize": page_size}
        if states:
            params["states"] = states
        return decode_json(self.send("GET", PROJECTS_PATH, params=params))

    def list_tasks_page(self, project_id: str, *, page: int, page_size: int) -> dict:
        return decode_json(
            self.send(
                "GET",
                f"{PROJECTS_PATH}/{project_id}/Tasks",
                params={"page": page, "pageSize": page_size},
            )
        )

    def create_task(self, project_id: str, payload: dict, idempotency_key: str) -> httpx.Response:
        return self.send(
            "POST",
            f"{PROJECTS_PATH}/{project_id}/Tasks",
            json_body=payload,
            idempotency_key=idempotency_key,
        )

    def replace_task(self, project_id: str, task_id: str, payload: dict) -> httpx.Response:
        """Full-resource PUT; the API has no partial update for tasks."""
        return self.send("PUT", f"{PROJECTS_PATH}/{project_id}/Tasks/{task_id}", json_body=payload)

    def list_quotes_page(self, *, page: int, status: Optional[str] = None) -> dict:
        params: Dict[str, Any] = {"page": page}
        if status:
            params["Status"] = status
        return decode_json(self.send("GET", QUOTES_PATH, params=params))


def error_from_response(response: httpx.Response) -> RemoteCallError:
    body = response.text
    kind = classify_status(response.status_code, body)
    message = extract_error_message(body)
    if kind == ErrorKind.AUTH_EXPIRED:
        return AuthExpiredError(message or "Access token rejected", status=response.status_code)
    if kind == ErrorKind.UNKNOWN:
        logger.error("Unclassified response HTTP %d: %s", response.status_code, body)
    return RemoteCallError(
        kind,
        message,
        status=response.status_code,
        retry_after=parse_retry_after(response.headers.get("Retry-After")),
        body=body,
    )
