from __future__ import annotations

from typing import Any, Dict, List, Optional

from .audit import JsonAuditLogger
from .auth import TokenProvider
from .config import TenantConfig
from .graph_client import ApiClient

# Well-known arbitration mailbox used to route admin API calls to the tenant.
_ANCHOR_MAILBOX = "SystemMailbox{bb558c35-97f1-4cb9-8ff7-d53741dc928c}"


class ExchangeClient(ApiClient):
    """Runs Exchange Online cmdlets through the admin REST endpoint.

    This is the endpoint the ExchangeOnlineManagement module talks to. A cmdlet call
    is a POST of ``{"CmdletInput": {"CmdletName": ..., "Parameters": {...}}}`` and
    the response pages like a Graph collection.
    """

    service = "exchange"

    def __init__(self, tenant_config: TenantConfig, token_provider: TokenProvider, audit_logger: JsonAuditLogger, **kwargs: Any):
        super().__init__(
            tenant_config.exchange_base_url,
            tenant_config,
            token_provider,
            audit_logger,
            scopes=tenant_config.exchange_scopes,
            **kwargs,
        )
        self.command_path = f"/adminapi/beta/{tenant_config.tenant_id}/InvokeCommand"

    def _anchor_headers(self) -> Dict[str, str]:
        organization = self.tenant_config.exchange.organization
        if not organization:
            return {}
        return {"X-AnchorMailbox": f"UPN:{_ANCHOR_MAILBOX}@{organization}"}

    def invoke(self, cmdlet: str, parameters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        body = {"CmdletInput": {"CmdletName": cmdlet, "Parameters": parameters or {}}}
        results: List[Dict[str, Any]] = []
        next_url: Optional[str] = self.command_path
        while next_url:
            page = self._json(self.request("POST", next_url, json=body, headers=self._anchor_headers()))
            results.extend(page.get("value", []))
            next_url = page.get("@odata.nextLink")
        self.audit.debug(
            "exchange_cmdlet_completed",
            tenant_id=self.tenant_config.tenant_id,
            cmdlet=cmdlet,
            count=len(results),
        )
        return results
