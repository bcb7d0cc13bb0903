from __future__ import annotations

from typing import Any, Dict, Iterator, List, Optional, Union
from unittest.mock import MagicMock

import pytest

from m365_provisioner.audit import InMemoryAuditStore, JsonAuditLogger
from m365_provisioner.config import AppConfig, TenantConfig
from m365_provisioner.mail_provider import MailProvider
from m365_provisioner.models import Mailbox
from m365_provisioner.session_manager import SessionManager

Route = Union[List[Dict[str, Any]], Dict[str, Any], Exception]


def make_tenant(tenant_id: str = "contoso.onmicrosoft.com", **overrides: Any) -> TenantConfig:
    raw: Dict[str, Any] = {
        "tenant_id": tenant_id,
        "display_name": tenant_id.split(".")[0].title(),
        "auth": {"type": "device_code", "client_id": "client-1"},
        "exchange": {"enabled": True, "organization": tenant_id},
    }
    raw.update(overrides)
    return TenantConfig(**raw)


class FakeGraph:
    """In-memory stand-in for GraphClient keyed by request path."""

    def __init__(self, tenant_config: TenantConfig, routes: Optional[Dict[str, Route]] = None):
        self.tenant_config = tenant_config
        self.base_url = tenant_config.graph_base_url
        self.routes: Dict[str, Route] = routes or {}
        self.posts: List[tuple] = []
        self.post_failures: Dict[str, Exception] = {}
        self.closed = False

    def _route(self, path: str) -> Route:
        route = self.routes.get(path, [])
        if isinstance(route, Exception):
            raise route
        return route

    def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        route = self._route(path)
        return route if isinstance(route, dict) else {"value": route}

    def get_paged_values(self, path: str, params: Optional[Dict[str, Any]] = None) -> Iterator[Dict[str, Any]]:
        route = self._route(path)
        yield from (route.get("value", []) if isinstance(route, dict) else route)

    def post_json(self, path: str, json: Any) -> Dict[str, Any]:
        self.posts.append((path, json))
        if path in self.post_failures:
            raise self.post_failures[path]
        if path == "/v1.0/users":
            return {"id": f"user-{len(self.posts)}", "userPrincipalName": json["userPrincipalName"]}
        return {}

    def close(self) -> None:
        self.closed = True


def tenant_routes(prefix: str) -> Dict[str, Route]:
    """Directory data whose every identifier carries ``prefix``."""
    return {
        "/v1.0/organization": [{"id": f"{prefix}-org", "displayName": f"{prefix} Ltd"}],
        "/v1.0/subscribedSkus": [
            {
                "skuId": f"{prefix}-sku-e3",
                "skuPartNumber": "ENTERPRISEPACK",
                "capabilityStatus": "Enabled",
                "consumedUnits": 5,
                "prepaidUnits": {"enabled": 10},
            }
        ],
        "/v1.0/groups": [
            {"id": f"{prefix}-g-m365", "displayName": "Team", "mailEnabled": True, "securityEnabled": False, "groupTypes": ["Unified"], "mail": f"team@{prefix}.com"},
            {"id": f"{prefix}-g-sec", "displayName": "Admins", "mailEnabled": False, "securityEnabled": True, "groupTypes": []},
            {"id": f"{prefix}-g-dl", "displayName": "Sales DL", "mailEnabled": True, "securityEnabled": False, "groupTypes": [], "mail": f"sales@{prefix}.com"},
            {"id": f"{prefix}-g-mesg", "displayName": "Finance", "mailEnabled": True, "securityEnabled": True, "groupTypes": [], "mail": f"finance@{prefix}.com"},
        ],
        "/v1.0/users": [
            {"id": f"{prefix}-u-1", "displayName": "Ada", "userPrincipalName": f"ada@{prefix}.com", "mail": f"ada@{prefix}.com", "accountEnabled": True},
            {"id": f"{prefix}-u-2", "displayName": "Reception", "userPrincipalName": f"reception@{prefix}.com", "mail": f"reception@{prefix}.com", "accountEnabled": False},
        ],
        "/v1.0/domains": [
            {"id": f"{prefix}.com", "isDefault": True, "isVerified": True},
            {"id": f"pending.{prefix}.com", "isVerified": False},
        ],
    }


@pytest.fixture
def audit() -> MagicMock:
    return MagicMock(spec=JsonAuditLogger)


@pytest.fixture
def audit_store() -> InMemoryAuditStore:
    return InMemoryAuditStore()


@pytest.fixture
def tenant() -> TenantConfig:
    return make_tenant()


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(tenants=[make_tenant("contoso.onmicrosoft.com"), make_tenant("fabrikam.onmicrosoft.com")])


@pytest.fixture
def token_provider() -> MagicMock:
    provider = MagicMock()
    provider.acquire_token.return_value = "token-123"
    provider.account_name.return_value = "admin@contoso.com"
    return provider


class Harness:
    """Wires a SessionManager to fake Graph/Exchange backends per tenant."""

    def __init__(self, config, audit, exchange_error=None):
        self.graphs = {}
        self.tokens = {}
        self.exchange_error = exchange_error
        self.mail_providers = []
        self.manager = SessionManager(
            config,
            audit,
            token_provider_factory=self.token_provider,
            graph_factory=self.graph,
            exchange_factory=self.exchange,
        )

    def token_provider(self, tenant):
        provider = MagicMock()
        provider.account_name.return_value = f"admin@{tenant.tenant_id}"
        provider.acquire_token.return_value = "token-123"
        self.tokens[tenant.tenant_id] = provider
        return provider

    def graph(self, tenant, tokens):
        prefix = tenant.tenant_id.split(".")[0]
        graph = FakeGraph(tenant, tenant_routes(prefix))
        self.graphs[tenant.tenant_id] = graph
        return graph

    def exchange(self, tenant, tokens):
        if self.exchange_error is not None:
            raise self.exchange_error
        prefix = tenant.tenant_id.split(".")[0]
        mail = MagicMock(spec=MailProvider)
        mail.name = "exchange"
        mail.connected = True
        mail.list_shared_mailboxes.return_value = [
            Mailbox(id=f"{prefix}-mbx", display_name="Support", primary_smtp_address=f"support@{prefix}.com")
        ]
        mail.list_distribution_lists.return_value = []
        mail.list_mail_enabled_security_groups.return_value = []
        self.mail_providers.append(mail)
        return mail
