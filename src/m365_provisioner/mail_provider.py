from __future__ import annotations

import abc
from typing import List

from .audit import JsonAuditLogger
from .errors import MailProviderUnavailable
from .exchange_client import ExchangeClient
from .models import Group, GroupType, Mailbox, TenantSnapshot


class MailProvider(abc.ABC):
    """Exchange-side capabilities used by discovery and provisioning.

    Listing methods receive the directory part of the snapshot being built, so a
    provider without Exchange access can derive approximate answers from it.
    """

    name = "mail"

    @property
    @abc.abstractmethod
    def connected(self) -> bool:
        ...

    @abc.abstractmethod
    def list_shared_mailboxes(self, directory: TenantSnapshot) -> List[Mailbox]:
        ...

    @abc.abstractmethod
    def list_distribution_lists(self, directory: TenantSnapshot) -> List[Group]:
        ...

    @abc.abstractmethod
    def list_mail_enabled_security_groups(self, directory: TenantSnapshot) -> List[Group]:
        ...

    @abc.abstractmethod
    def add_distribution_group_member(self, group: str, member: str) -> None:
        ...

    @abc.abstractmethod
    def add_mailbox_permission(self, mailbox: str, user: str, access_rights: str, auto_mapping: bool = True) -> None:
        ...

    @abc.abstractmethod
    def disconnect(self) -> None:
        ...


class ExchangeMailProvider(MailProvider):
    name = "exchange"

    def __init__(self, client: ExchangeClient, audit_logger: JsonAuditLogger):
        self.client = client
        self.audit = audit_logger
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> "ExchangeMailProvider":
        """Probe the admin endpoint; any M365Error propagates to the caller."""
        domains = self.client.invoke("Get-AcceptedDomain")
        self._connected = True
        self.audit.info(
            "exchange_connected",
            tenant_id=self.client.tenant_config.tenant_id,
            accepted_domains=len(domains),
        )
        return self

    def list_shared_mailboxes(self, directory: TenantSnapshot) -> List[Mailbox]:
        raw = self.client.invoke(
            "Get-Mailbox", {"RecipientTypeDetails": "SharedMailbox", "ResultSize": "Unlimited"}
        )
        return [Mailbox.from_exchange(item) for item in raw]

    def list_distribution_lists(self, directory: TenantSnapshot) -> List[Group]:
        raw = self.client.invoke(
            "Get-DistributionGroup",
            {"RecipientTypeDetails": "MailUniversalDistributionGroup", "ResultSize": "Unlimited"},
        )
        return [Group.from_exchange(item, GroupType.DISTRIBUTION) for item in raw]

    def list_mail_enabled_security_groups(self, directory: TenantSnapshot) -> List[Group]:
        raw = self.client.invoke(
            "Get-DistributionGroup",
            {"RecipientTypeDetails": "MailUniversalSecurityGroup", "ResultSize": "Unlimited"},
        )
        return [Group.from_exchange(item, GroupType.MAIL_ENABLED_SECURITY) for item in raw]

    def add_distribution_group_member(self, group: str, member: str) -> None:
        self.client.invoke(
            "Add-DistributionGroupMember",
            {"Identity": group, "Member": member, "BypassSecurityGroupManagerCheck": True},
        )

    def add_mailbox_permission(self, mailbox: str, user: str, access_rights: str, auto_mapping: bool = True) -> None:
        if access_rights == "SendAs":
            self.client.invoke(
                "Add-RecipientPermission",
                {"Identity": mailbox, "Trustee": user, "AccessRights": ["SendAs"], "Confirm": False},
            )
            return
        self.client.invoke(
            "Add-MailboxPermission",
            {
                "Identity": mailbox,
                "User": user,
                "AccessRights": [access_rights],
                "InheritanceType": "All",
                "AutoMapping": auto_mapping,
            },
        )

    def disconnect(self) -> None:
        self._connected = False
        self.client.close()


class DirectoryFallbackMailProvider(MailProvider):
    """Used when Exchange Online is unavailable.

    Lists are approximations built from Graph directory data. Disabled accounts
    that still have a mail address are reported as possible shared mailboxes.
    Exchange-only changes raise :class:`MailProviderUnavailable`.
    """

    name = "directory_fallback"

    @property
    def connected(self) -> bool:
        return False

    def list_shared_mailboxes(self, directory: TenantSnapshot) -> List[Mailbox]:
        return [
            Mailbox(
                id=user.id,
                display_name=user.display_name,
                primary_smtp_address=user.mail or "",
                recipient_type="PossibleSharedMailbox",
                approximate=True,
            )
            for user in directory.users
            if not user.account_enabled and user.mail
        ]

    def list_distribution_lists(self, directory: TenantSnapshot) -> List[Group]:
        return [group for group in directory.groups if group.group_type is GroupType.DISTRIBUTION]

    def list_mail_enabled_security_groups(self, directory: TenantSnapshot) -> List[Group]:
        return [group for group in directory.groups if group.group_type is GroupType.MAIL_ENABLED_SECURITY]

    def add_distribution_group_member(self, group: str, member: str) -> None:
        raise MailProviderUnavailable(f"Cannot add {member} to {group}: Exchange Online not connected")

    def add_mailbox_permission(self, mailbox: str, user: str, access_rights: str, auto_mapping: bool = True) -> None:
        raise MailProviderUnavailable(f"Cannot grant {access_rights} on {mailbox}: Exchange Online not connected")

    def disconnect(self) -> None:
        return None
