from __future__ import annotations

import logging
from typing import Callable, Optional

from .audit import JsonAuditLogger
from .errors import ApiError, M365Error, ProvisioningError
from .graph_client import GraphClient
from .mail_provider import MailProvider
from .models import (
    AssignmentKind,
    AssignmentOutcome,
    GroupAssignment,
    GroupType,
    MailboxAssignment,
    ProvisioningRequest,
    ProvisioningResult,
    TenantSnapshot,
)

logger = logging.getLogger(__name__)

EXCHANGE_GROUP_TYPES = (GroupType.DISTRIBUTION, GroupType.MAIL_ENABLED_SECURITY)


class ProvisioningExecutor:
    """Creates a user, then applies each requested assignment independently.

    A failed assignment is recorded in the result and the remaining ones still run.
    Nothing is retried. Only a failure before or during user creation raises.
    """

    def __init__(
        self,
        graph: GraphClient,
        mail: MailProvider,
        snapshot: TenantSnapshot,
        audit_logger: JsonAuditLogger,
        correlation_id: Optional[str] = None,
    ):
        self.graph = graph
        self.mail = mail
        self.snapshot = snapshot
        self.audit = audit_logger
        self.correlation_id = correlation_id

    @property
    def tenant_id(self) -> str:
        return self.graph.tenant_config.tenant_id

    def provision(self, request: ProvisioningRequest) -> ProvisioningResult:
        self._preflight(request)
        user_id = self._create_user(request)
        result = ProvisioningResult(created_user_id=user_id, user_principal_name=request.user_principal_name)

        for group in request.group_assignments:
            result.outcomes.append(self._apply("group", group.group, lambda g=group: self._assign_group(user_id, request, g)))
        for mailbox in request.mailbox_assignments:
            result.outcomes.append(
                self._apply("mailbox", mailbox.mailbox, lambda m=mailbox: self._assign_mailbox(request, m))
            )
        for sku in request.license_skus:
            result.outcomes.append(self._apply("license", sku, lambda s=sku: self._assign_license(user_id, s)))

        log = self.audit.warning if result.failed else self.audit.info
        log(
            "provisioning_completed",
            tenant_id=self.tenant_id,
            correlation_id=self.correlation_id,
            user_principal_name=request.user_principal_name,
            status=result.status,
            succeeded=len(result.succeeded),
            failed=len(result.failed),
        )
        return result

    def _preflight(self, request: ProvisioningRequest) -> None:
        domains = self.snapshot.verified_domain_names()
        if domains and request.domain not in domains:
            raise ProvisioningError(
                f"{request.domain} is not a verified domain of tenant {self.tenant_id}",
                hint=f"Use one of: {', '.join(sorted(domains))}",
            )
        if request.license_skus and not request.usage_location:
            raise ProvisioningError("usage_location is required when licenses are assigned")

    def _create_user(self, request: ProvisioningRequest) -> str:
        self.audit.info(
            "user_create_started",
            tenant_id=self.tenant_id,
            correlation_id=self.correlation_id,
            user_principal_name=request.user_principal_name,
        )
        try:
            created = self.graph.post_json("/v1.0/users", json=request.to_graph_user())
        except ApiError as exc:
            raise ProvisioningError(f"Creating {request.user_principal_name} failed: {exc}") from exc
        user_id = created.get("id")
        if not user_id:
            raise ProvisioningError(f"Graph did not return an id for {request.user_principal_name}")
        self.audit.info(
            "user_created",
            tenant_id=self.tenant_id,
            correlation_id=self.correlation_id,
            user_principal_name=request.user_principal_name,
            user_id=user_id,
        )
        return user_id

    def _apply(self, kind: AssignmentKind, target: str, step: Callable[[], Optional[str]]) -> AssignmentOutcome:
        try:
            resolved_id = step()
        except M365Error as exc:
            self.audit.warning(
                "assignment_failed",
                tenant_id=self.tenant_id,
                correlation_id=self.correlation_id,
                kind=kind,
                target=target,
                error=exc.code,
                message=str(exc),
            )
            return AssignmentOutcome(kind=kind, target=target, succeeded=False, detail=str(exc))
        self.audit.info(
            "assignment_applied",
            tenant_id=self.tenant_id,
            correlation_id=self.correlation_id,
            kind=kind,
            target=target,
        )
        return AssignmentOutcome(kind=kind, target=target, succeeded=True, resolved_id=resolved_id)

    def _assign_group(self, user_id: str, request: ProvisioningRequest, assignment: GroupAssignment) -> str:
        group = self.snapshot.find_group(assignment.group)
        if group is not None and group.group_type in EXCHANGE_GROUP_TYPES:
            self.mail.add_distribution_group_member(group.mail or group.id, request.user_principal_name)
            return group.id
        # Unknown references are treated as Graph object ids.
        group_id = group.id if group is not None else assignment.group
        self.graph.post_json(
            f"/v1.0/groups/{group_id}/members/$ref",
            json={"@odata.id": f"{self.graph.base_url}/v1.0/directoryObjects/{user_id}"},
        )
        return group_id

    def _assign_mailbox(self, request: ProvisioningRequest, assignment: MailboxAssignment) -> str:
        mailbox = self.snapshot.find_mailbox(assignment.mailbox)
        identity = mailbox.primary_smtp_address if mailbox is not None and mailbox.primary_smtp_address else assignment.mailbox
        self.mail.add_mailbox_permission(
            identity,
            request.user_principal_name,
            assignment.access_rights,
            auto_mapping=assignment.auto_mapping,
        )
        return identity

    def _assign_license(self, user_id: str, reference: str) -> str:
        sku = self.snapshot.find_license(reference)
        if sku is None:
            raise ProvisioningError(f"License {reference} is not subscribed in this tenant")
        if sku.enabled_units and not sku.available_units:
            raise ProvisioningError(f"No available units left for {sku.sku_part_number}")
        self.graph.post_json(
            f"/v1.0/users/{user_id}/assignLicense",
            json={"addLicenses": [{"skuId": sku.sku_id, "disabledPlans": []}], "removeLicenses": []},
        )
        return sku.sku_id
