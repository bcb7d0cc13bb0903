from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Iterator, List, Optional

import httpx

from .audit import JsonAuditLogger
from .auth import TokenProvider
from .config import TenantConfig
from .errors import ApiError, AuthError, ConsentRequired, NetworkError

logger = logging.getLogger(__name__)

RETRY_STATUSES = (429, 503, 504)


class ApiClient:
    """Authenticated JSON client with throttling retries, timeouts and error mapping.

    401 becomes :class:`AuthError`, 403 :class:`ConsentRequired`, other 4xx/5xx
    :class:`ApiError`. Transport failures and exhausted retries become
    :class:`NetworkError`, so callers only deal with the provisioner's errors.
    """

    service = "api"

    def __init__(
        self,
        base_url: str,
        tenant_config: TenantConfig,
        token_provider: TokenProvider,
        audit_logger: JsonAuditLogger,
        scopes: Optional[List[str]] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.tenant_config = tenant_config
        self.token_provider = token_provider
        self.audit = audit_logger
        self.scopes = scopes or tenant_config.default_scopes
        self.max_retries = max_retries
        self._sleep = sleep
        self.session = httpx.Client(timeout=timeout, transport=transport)

    def url(self, path_or_url: str) -> str:
        if path_or_url.startswith(("https://", "http://")):
            return path_or_url
        return f"{self.base_url}{path_or_url}"

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.token_provider.acquire_token(self.scopes)}"}
        if extra:
            headers.update(extra)
        return headers

    def request(self, method: str, path_or_url: str, **kwargs: Any) -> httpx.Response:
        url = self.url(path_or_url)
        headers = self._headers(kwargs.pop("headers", None))
        tenant_id = self.tenant_config.tenant_id
        backoff = 1.0

        for attempt in range(1, self.max_retries + 2):
            try:
                response = self.session.request(method, url, headers=headers, **kwargs)
            except httpx.TransportError as exc:
                self.audit.warning(
                    f"{self.service}_transport_error", tenant_id=tenant_id, url=url, attempt=attempt, error=str(exc)
                )
                if attempt > self.max_retries:
                    raise NetworkError(f"{method} {url} failed: {exc}") from exc
                self._sleep(backoff)
                backoff = min(backoff * 2, 30)
                continue

            if response.status_code in RETRY_STATUSES and attempt <= self.max_retries:
                retry_after = self._get_retry_after_seconds(response) or backoff
                self.audit.warning(
                    f"{self.service}_throttled",
                    tenant_id=tenant_id,
                    status=response.status_code,
                    retry_after=retry_after,
                )
                self._sleep(retry_after)
                backoff = min(backoff * 2, 30)
                continue

            if response.status_code >= 400:
                self._raise_for_status(method, url, response)

            logger.debug("%s %s -> %s", method, url, response.status_code)
            return response

        raise NetworkError(f"Maximum retry attempts exceeded for {method} {url}")

    def _raise_for_status(self, method: str, url: str, response: httpx.Response) -> None:
        body = response.text
        message = self._error_message(response) or f"HTTP {response.status_code}"
        self.audit.error(
            f"{self.service}_request_failed",
            tenant_id=self.tenant_config.tenant_id,
            method=method,
            status=response.status_code,
            url=url,
            message=message,
        )
        if response.status_code == 401:
            raise AuthError(message)
        if response.status_code == 403:
            raise ConsentRequired(message, hint="The signed-in identity lacks a required permission or role.")
        if response.status_code in RETRY_STATUSES:
            raise NetworkError(message)
        raise ApiError(message, status_code=response.status_code, body=body)

    @staticmethod
    def _error_message(response: httpx.Response) -> Optional[str]:
        try:
            payload = response.json()
        except ValueError:
            return response.text or None
        error = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(error, dict):
            return error.get("message") or error.get("code")
        if isinstance(error, str):
            return error
        return None

    @staticmethod
    def _get_retry_after_seconds(response: httpx.Response) -> Optional[float]:
        retry_after = response.headers.get("Retry-After")
        if retry_after is None:
            return None
        try:
            return float(retry_after)
        except ValueError:
            return None

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ApiError(
                f"Invalid JSON from {response.url}", status_code=response.status_code, body=response.text
            ) from exc

    def close(self) -> None:
        self.session.close()


class GraphClient(ApiClient):
    """Tenant-scoped Microsoft Graph v1.0 client."""

    service = "graph"

    def __init__(self, tenant_config: TenantConfig, token_provider: TokenProvider, audit_logger: JsonAuditLogger, **kwargs: Any):
        super().__init__(
            tenant_config.graph_base_url,
            tenant_config,
            token_provider,
            audit_logger,
            scopes=tenant_config.default_scopes,
            **kwargs,
        )

    def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._json(self.request("GET", path, params=params))

    def get_paged_values(self, path: str, params: Optional[Dict[str, Any]] = None) -> Iterator[Dict[str, Any]]:
        """Yield every item of a collection, following ``@odata.nextLink``."""
        next_url: Optional[str] = path
        while next_url:
            page = self.get_json(next_url, params=params)
            yield from page.get("value", [])
            next_url = page.get("@odata.nextLink")
            # nextLink already carries the query
            params = None

    def post_json(self, path: str, json: Any) -> Dict[str, Any]:
        return self._json(self.request("POST", path, json=json))
