from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List, TypeVar

from .audit import JsonAuditLogger
from .errors import M365Error
from .graph_client import GraphClient
from .mail_provider import MailProvider
from .models import DirectoryUser, Domain, Group, License, TenantSnapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")

GROUP_SELECT = "id,displayName,mail,mailEnabled,securityEnabled,groupTypes,description"
USER_SELECT = "id,displayName,userPrincipalName,mail,accountEnabled,userType,usageLocation"


class TenantDiscovery:
    """Read-only enumeration pass that builds a fresh :class:`TenantSnapshot`.

    Each category is fetched on its own. A failed fetch leaves that collection empty
    and records a warning, and the rest of the pass continues.
    """

    def __init__(self, graph: GraphClient, mail: MailProvider, audit_logger: JsonAuditLogger, page_size: int = 999):
        self.graph = graph
        self.mail = mail
        self.audit = audit_logger
        self.page_size = page_size

    @property
    def tenant_id(self) -> str:
        return self.graph.tenant_config.tenant_id

    def discover(self) -> TenantSnapshot:
        snapshot = TenantSnapshot(tenant_id=self.tenant_id, mail_source=self.mail.name)
        self.audit.info("discovery_started", tenant_id=self.tenant_id, mail_source=self.mail.name)

        snapshot.licenses = self._fetch(snapshot, "licenses", self.fetch_licenses)
        snapshot.groups = self._fetch(snapshot, "groups", self.fetch_groups)
        snapshot.users = self._fetch(snapshot, "users", self.fetch_users)
        snapshot.domains = self._fetch(snapshot, "domains", self.fetch_domains)

        if not self.mail.connected:
            snapshot.warnings.append(
                "Exchange Online not connected; mailbox and distribution data is derived from the directory"
            )
        snapshot.shared_mailboxes = self._fetch(
            snapshot, "shared_mailboxes", lambda: self.mail.list_shared_mailboxes(snapshot)
        )
        snapshot.distribution_lists = self._fetch(
            snapshot, "distribution_lists", lambda: self.mail.list_distribution_lists(snapshot)
        )
        snapshot.mail_enabled_security_groups = self._fetch(
            snapshot, "mail_enabled_security_groups", lambda: self.mail.list_mail_enabled_security_groups(snapshot)
        )

        snapshot.discovered_at = datetime.now(timezone.utc)
        self.audit.info(
            "discovery_completed",
            tenant_id=self.tenant_id,
            counts=snapshot.counts(),
            warnings=len(snapshot.warnings),
        )
        return snapshot

    def _fetch(self, snapshot: TenantSnapshot, category: str, fetcher: Callable[[], List[T]]) -> List[T]:
        try:
            return list(fetcher())
        except (M365Error, ValueError) as exc:
            snapshot.warnings.append(f"{category}: {exc}")
            self.audit.warning(
                "discovery_fetch_failed",
                tenant_id=self.tenant_id,
                category=category,
                error=getattr(exc, "code", type(exc).__name__),
                message=str(exc),
            )
            return []

    def fetch_licenses(self) -> List[License]:
        return [License.from_graph(raw) for raw in self.graph.get_paged_values("/v1.0/subscribedSkus")]

    def fetch_groups(self) -> List[Group]:
        params = {"$select": GROUP_SELECT, "$top": self.page_size}
        groups = [Group.from_graph(raw) for raw in self.graph.get_paged_values("/v1.0/groups", params=params)]
        return sorted(groups, key=lambda group: group.display_name.lower())

    def fetch_users(self) -> List[DirectoryUser]:
        params = {"$select": USER_SELECT, "$top": self.page_size}
        users = [DirectoryUser.from_graph(raw) for raw in self.graph.get_paged_values("/v1.0/users", params=params)]
        return sorted(users, key=lambda user: user.user_principal_name.lower())

    def fetch_domains(self) -> List[Domain]:
        domains = [Domain.from_graph(raw) for raw in self.graph.get_paged_values("/v1.0/domains")]
        return [domain for domain in domains if domain.is_verified]
