from __future__ import annotations

import dataclasses
import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterator, List, Optional, Tuple

from .audit import JsonAuditLogger
from .auth import PromptCallback, TokenProvider
from .config import AppConfig, TenantConfig
from .discovery import TenantDiscovery
from .errors import M365Error, NotConnectedError, SessionBusyError
from .exchange_client import ExchangeClient
from .graph_client import GraphClient
from .mail_provider import DirectoryFallbackMailProvider, ExchangeMailProvider, MailProvider
from .models import ProvisioningRequest, ProvisioningResult, Session, TenantSnapshot
from .provisioning import ProvisioningExecutor
from .token_cache import TokenStore

logger = logging.getLogger(__name__)

TokenProviderFactory = Callable[[TenantConfig], TokenProvider]
GraphFactory = Callable[[TenantConfig, TokenProvider], GraphClient]
ExchangeFactory = Callable[[TenantConfig, TokenProvider], MailProvider]


@dataclass
class DisconnectStep:
    name: str
    succeeded: bool
    error: Optional[str] = None


@dataclass
class DisconnectResult:
    tenant_id: Optional[str]
    steps: List[DisconnectStep] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return all(step.succeeded for step in self.steps)

    def to_dict(self) -> dict:
        return dataclasses.asdict(self) | {"clean": self.clean}


class SessionManager:
    """Owns the single tenant session of this process and its discovery snapshot.

    Connect, disconnect, discovery and provisioning are serialized by one lock. A
    caller that cannot get the lock within ``session.busy_wait_seconds`` gets
    :class:`SessionBusyError` naming the operation in flight. Connecting while a
    session is live switches tenants: the previous session is fully torn down first.
    """

    def __init__(
        self,
        config: AppConfig,
        audit_logger: Optional[JsonAuditLogger] = None,
        *,
        prompt: Optional[PromptCallback] = None,
        token_provider_factory: Optional[TokenProviderFactory] = None,
        graph_factory: Optional[GraphFactory] = None,
        exchange_factory: Optional[ExchangeFactory] = None,
    ):
        self.config = config
        self.audit = audit_logger or JsonAuditLogger()
        self.prompt = prompt
        self._token_provider_factory = token_provider_factory or self._default_token_provider
        self._graph_factory = graph_factory or self._default_graph
        self._exchange_factory = exchange_factory or self._default_exchange

        self._lock = threading.Lock()
        self._pending: Optional[str] = None
        self._session = Session()
        self._snapshot = TenantSnapshot()
        self._tenant: Optional[TenantConfig] = None
        self._tokens: Optional[TokenProvider] = None
        self._graph: Optional[GraphClient] = None
        self._mail: MailProvider = DirectoryFallbackMailProvider()

    # -- factories -------------------------------------------------------

    def _default_token_provider(self, tenant: TenantConfig) -> TokenProvider:
        store = TokenStore(tenant.tenant_id, self.config.token_cache.directory)
        return TokenProvider(
            tenant,
            self.audit,
            token_store=store,
            prompt=self.prompt,
            timeout=self.config.http.timeout_seconds,
            auth_timeout=self.config.http.auth_timeout_seconds,
        )

    def _default_graph(self, tenant: TenantConfig, tokens: TokenProvider) -> GraphClient:
        return GraphClient(
            tenant,
            tokens,
            self.audit,
            timeout=self.config.http.timeout_seconds,
            max_retries=self.config.http.max_retries,
        )

    def _default_exchange(self, tenant: TenantConfig, tokens: TokenProvider) -> MailProvider:
        client = ExchangeClient(
            tenant,
            tokens,
            self.audit,
            timeout=self.config.http.timeout_seconds,
            max_retries=self.config.http.max_retries,
        )
        try:
            return ExchangeMailProvider(client, self.audit).connect()
        except M365Error:
            client.close()
            raise

    # -- public operations -------------------------------------------------

    def status(self) -> Session:
        return dataclasses.replace(self._session, pending_operation=self._pending)

    @property
    def snapshot(self) -> TenantSnapshot:
        return self._snapshot

    @property
    def mail_provider(self) -> MailProvider:
        return self._mail

    def connect(self, tenant_id: str) -> Session:
        tenant = self.config.get_tenant(tenant_id)
        with self._exclusive("connect"):
            if self._session.graph_connected or self._tokens is not None:
                self.audit.info(
                    "tenant_switch", tenant_id=tenant_id, previous_tenant_id=self._session.tenant_id
                )
                self._teardown()

            self.audit.info("session_connect_started", tenant_id=tenant_id, auth_type=tenant.auth.type)
            tokens = self._token_provider_factory(tenant)
            graph: Optional[GraphClient] = None
            try:
                graph = self._graph_factory(tenant, tokens)
                organization = self._verify_graph(graph)
            except M365Error as exc:
                self.audit.error("session_connect_failed", tenant_id=tenant_id, error=exc.code, message=str(exc))
                self._discard(tokens, graph)
                raise

            self._tenant, self._tokens, self._graph = tenant, tokens, graph
            self._session = Session(
                graph_connected=True,
                tenant_id=tenant.tenant_id,
                account=tokens.account_name(),
                environment=tenant.environment,
                tenant_display_name=organization.get("displayName") or tenant.display_name,
                connected_at=datetime.now(timezone.utc),
            )
            self.audit.info(
                "session_connected",
                tenant_id=tenant_id,
                account=self._session.account,
                tenant_display_name=self._session.tenant_display_name,
            )

            if tenant.exchange.enabled:
                self._connect_exchange()
            self._snapshot = self._run_discovery()
            return dataclasses.replace(self._session)

    def ensure_exchange_connected(self) -> bool:
        with self._exclusive("ensure_exchange_connected"):
            if not self._session.graph_connected:
                return False
            if self._session.exchange_connected:
                return True
            return self._connect_exchange()

    def disconnect(self) -> DisconnectResult:
        with self._exclusive("disconnect"):
            return self._teardown()

    def discover(self) -> TenantSnapshot:
        with self._exclusive("discover"):
            self._require_connected()
            self._snapshot = self._run_discovery()
            return self._snapshot

    def provision(self, request: ProvisioningRequest, correlation_id: Optional[str] = None) -> ProvisioningResult:
        with self._exclusive("provision"):
            self._require_connected()
            correlation_id = correlation_id or str(uuid.uuid4())
            self.audit.info(
                "provisioning_started",
                tenant_id=self._session.tenant_id,
                correlation_id=correlation_id,
                user_principal_name=request.user_principal_name,
                assignments=request.assignment_count,
            )
            executor = ProvisioningExecutor(
                self._graph, self._mail, self._snapshot, self.audit, correlation_id=correlation_id
            )
            return executor.provision(request)

    # -- internals ---------------------------------------------------------

    @contextmanager
    def _exclusive(self, operation: str) -> Iterator[None]:
        wait = self.config.session.busy_wait_seconds
        acquired = self._lock.acquire(timeout=wait) if wait > 0 else self._lock.acquire(blocking=False)
        if not acquired:
            raise SessionBusyError(f"Cannot {operation}: {self._pending or 'another operation'} is in progress")
        self._pending = operation
        try:
            yield
        finally:
            self._pending = None
            self._lock.release()

    def _require_connected(self) -> None:
        if not self._session.graph_connected or self._graph is None:
            raise NotConnectedError("No tenant is connected")

    def _verify_graph(self, graph: GraphClient) -> dict:
        page = graph.get_json("/v1.0/organization", params={"$select": "id,displayName"})
        organizations = page.get("value") or [{}]
        return organizations[0]

    def _connect_exchange(self) -> bool:
        if self._tenant is None or self._tokens is None:
            raise NotConnectedError("No tenant is connected")
        tenant_id = self._tenant.tenant_id
        try:
            mail = self._exchange_factory(self._tenant, self._tokens)
        except M365Error as exc:
            self.audit.warning(
                "exchange_unavailable",
                tenant_id=tenant_id,
                error=exc.code,
                message=str(exc),
                fallback=DirectoryFallbackMailProvider.name,
            )
            self._mail = DirectoryFallbackMailProvider()
            self._session.exchange_connected = False
            return False
        self._mail = mail
        self._session.exchange_connected = mail.connected
        return mail.connected

    def _run_discovery(self) -> TenantSnapshot:
        self._require_connected()
        return TenantDiscovery(self._graph, self._mail, self.audit).discover()

    def _teardown(self) -> DisconnectResult:
        tenant_id = self._session.tenant_id
        result = DisconnectResult(tenant_id=tenant_id)
        tokens, graph, mail = self._tokens, self._graph, self._mail

        steps: List[Tuple[str, Callable[[], None]]] = [
            ("exchange_sign_out", mail.disconnect),
            ("graph_sign_out", graph.close if graph is not None else _noop),
            ("clear_snapshot", self._snapshot.clear),
            ("clear_token_cache", tokens.sign_out if tokens is not None else _noop),
        ]
        for name, step in steps:
            try:
                step()
            except Exception as exc:  # noqa: BLE001 - every step must run
                self.audit.warning("disconnect_step_failed", tenant_id=tenant_id, step=name, error=str(exc))
                result.steps.append(DisconnectStep(name=name, succeeded=False, error=str(exc)))
            else:
                result.steps.append(DisconnectStep(name=name, succeeded=True))

        self._snapshot = TenantSnapshot()
        self._session = Session()
        self._tenant = self._tokens = self._graph = None
        self._mail = DirectoryFallbackMailProvider()
        self.audit.info("session_disconnected", tenant_id=tenant_id, clean=result.clean)
        return result

    def _discard(self, tokens: TokenProvider, graph: Optional[GraphClient]) -> None:
        for cleanup in (graph.close if graph is not None else _noop, tokens.sign_out):
            try:
                cleanup()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Cleanup after failed connect raised: %s", exc)


def _noop() -> None:
    return None
