from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

from .errors import PartialProvisioningFailure


class GroupType(str, enum.Enum):
    M365 = "m365"
    MAIL_ENABLED_SECURITY = "mail_enabled_security"
    SECURITY = "security"
    DISTRIBUTION = "distribution"
    OTHER = "other"


def classify_group(raw: Dict[str, Any]) -> GroupType:
    """Derive the group kind from Graph's groupTypes/mailEnabled/securityEnabled flags."""
    if "Unified" in (raw.get("groupTypes") or []):
        return GroupType.M365
    mail_enabled = bool(raw.get("mailEnabled"))
    security_enabled = bool(raw.get("securityEnabled"))
    if mail_enabled and security_enabled:
        return GroupType.MAIL_ENABLED_SECURITY
    if security_enabled:
        return GroupType.SECURITY
    if mail_enabled:
        return GroupType.DISTRIBUTION
    return GroupType.OTHER


@dataclass
class License:
    sku_id: str
    sku_part_number: str
    capability_status: str = ""
    enabled_units: int = 0
    consumed_units: int = 0

    @property
    def available_units(self) -> int:
        return max(self.enabled_units - self.consumed_units, 0)

    @classmethod
    def from_graph(cls, raw: Dict[str, Any]) -> "License":
        prepaid = raw.get("prepaidUnits") or {}
        return cls(
            sku_id=raw.get("skuId", ""),
            sku_part_number=raw.get("skuPartNumber", ""),
            capability_status=raw.get("capabilityStatus", ""),
            enabled_units=int(prepaid.get("enabled") or 0),
            consumed_units=int(raw.get("consumedUnits") or 0),
        )


@dataclass
class Group:
    id: str
    display_name: str
    mail: Optional[str] = None
    group_type: GroupType = GroupType.OTHER
    description: Optional[str] = None

    @classmethod
    def from_graph(cls, raw: Dict[str, Any]) -> "Group":
        return cls(
            id=raw.get("id", ""),
            display_name=raw.get("displayName") or "",
            mail=raw.get("mail"),
            group_type=classify_group(raw),
            description=raw.get("description"),
        )

    @classmethod
    def from_exchange(cls, raw: Dict[str, Any], group_type: GroupType) -> "Group":
        return cls(
            id=raw.get("ExternalDirectoryObjectId") or raw.get("Guid") or raw.get("Identity") or "",
            display_name=raw.get("DisplayName") or raw.get("Name") or "",
            mail=raw.get("PrimarySmtpAddress"),
            group_type=group_type,
        )

    def matches(self, reference: str) -> bool:
        ref = reference.strip().lower()
        return ref in {self.id.lower(), self.display_name.lower(), (self.mail or "").lower()}


@dataclass
class DirectoryUser:
    id: str
    display_name: str
    user_principal_name: str
    mail: Optional[str] = None
    account_enabled: bool = True
    user_type: Optional[str] = None
    usage_location: Optional[str] = None

    @classmethod
    def from_graph(cls, raw: Dict[str, Any]) -> "DirectoryUser":
        enabled = raw.get("accountEnabled")
        return cls(
            id=raw.get("id", ""),
            display_name=raw.get("displayName") or "",
            user_principal_name=raw.get("userPrincipalName") or "",
            mail=raw.get("mail"),
            account_enabled=True if enabled is None else bool(enabled),
            user_type=raw.get("userType"),
            usage_location=raw.get("usageLocation"),
        )


@dataclass
class Domain:
    name: str
    is_default: bool = False
    is_initial: bool = False
    is_verified: bool = True

    @classmethod
    def from_graph(cls, raw: Dict[str, Any]) -> "Domain":
        return cls(
            name=raw.get("id", ""),
            is_default=bool(raw.get("isDefault")),
            is_initial=bool(raw.get("isInitial")),
            is_verified=bool(raw.get("isVerified")),
        )


@dataclass
class Mailbox:
    id: str
    display_name: str
    primary_smtp_address: str
    recipient_type: str = "SharedMailbox"
    approximate: bool = False

    @classmethod
    def from_exchange(cls, raw: Dict[str, Any]) -> "Mailbox":
        return cls(
            id=raw.get("ExternalDirectoryObjectId") or raw.get("Guid") or "",
            display_name=raw.get("DisplayName") or "",
            primary_smtp_address=raw.get("PrimarySmtpAddress") or "",
            recipient_type=raw.get("RecipientTypeDetails") or "SharedMailbox",
        )

    def matches(self, reference: str) -> bool:
        ref = reference.strip().lower()
        return ref in {self.id.lower(), self.display_name.lower(), self.primary_smtp_address.lower()}


@dataclass
class Session:
    graph_connected: bool = False
    exchange_connected: bool = False
    tenant_id: Optional[str] = None
    account: Optional[str] = None
    environment: Optional[str] = None
    tenant_display_name: Optional[str] = None
    connected_at: Optional[datetime] = None
    pending_operation: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        if self.connected_at:
            payload["connected_at"] = self.connected_at.isoformat()
        return payload


@dataclass
class TenantSnapshot:
    """Everything discovery learned about one tenant. Replaced wholesale on each pass."""

    tenant_id: Optional[str] = None
    discovered_at: Optional[datetime] = None
    mail_source: Optional[str] = None
    licenses: List[License] = field(default_factory=list)
    groups: List[Group] = field(default_factory=list)
    users: List[DirectoryUser] = field(default_factory=list)
    distribution_lists: List[Group] = field(default_factory=list)
    mail_enabled_security_groups: List[Group] = field(default_factory=list)
    shared_mailboxes: List[Mailbox] = field(default_factory=list)
    domains: List[Domain] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    COLLECTIONS = (
        "licenses",
        "groups",
        "users",
        "distribution_lists",
        "mail_enabled_security_groups",
        "shared_mailboxes",
        "domains",
    )

    def clear(self) -> None:
        for name in self.COLLECTIONS:
            getattr(self, name).clear()
        self.warnings.clear()
        self.tenant_id = None
        self.discovered_at = None
        self.mail_source = None

    @property
    def is_empty(self) -> bool:
        return all(not getattr(self, name) for name in self.COLLECTIONS)

    def counts(self) -> Dict[str, int]:
        return {name: len(getattr(self, name)) for name in self.COLLECTIONS}

    def find_group(self, reference: str) -> Optional[Group]:
        for collection in (self.groups, self.distribution_lists, self.mail_enabled_security_groups):
            for group in collection:
                if group.matches(reference):
                    return group
        return None

    def find_mailbox(self, reference: str) -> Optional[Mailbox]:
        for mailbox in self.shared_mailboxes:
            if mailbox.matches(reference):
                return mailbox
        return None

    def find_license(self, reference: str) -> Optional[License]:
        ref = reference.strip().lower()
        for sku in self.licenses:
            if ref in (sku.sku_id.lower(), sku.sku_part_number.lower()):
                return sku
        return None

    def verified_domain_names(self) -> List[str]:
        return [domain.name.lower() for domain in self.domains if domain.is_verified]

    def to_dict(self) -> Dict[str, Any]:
        payload = {f.name: getattr(self, f.name) for f in fields(self)}
        for name in self.COLLECTIONS:
            payload[name] = [asdict(item) for item in getattr(self, name)]
        payload["warnings"] = list(self.warnings)
        if self.discovered_at:
            payload["discovered_at"] = self.discovered_at.isoformat()
        return payload


class GroupAssignment(BaseModel):
    group: str = Field(description="Group id, display name or mail address")

    model_config = ConfigDict(extra="forbid")


class MailboxAssignment(BaseModel):
    mailbox: str = Field(description="Mailbox SMTP address, display name or id")
    access_rights: Literal["FullAccess", "SendAs"] = "FullAccess"
    auto_mapping: bool = True

    model_config = ConfigDict(extra="forbid")


class ProvisioningRequest(BaseModel):
    display_name: str
    user_principal_name: str
    password: SecretStr
    mail_nickname: Optional[str] = None
    given_name: Optional[str] = None
    surname: Optional[str] = None
    job_title: Optional[str] = None
    department: Optional[str] = None
    usage_location: Optional[str] = Field(default=None, min_length=2, max_length=2)
    force_change_password: bool = True
    group_assignments: List[GroupAssignment] = Field(default_factory=list)
    mailbox_assignments: List[MailboxAssignment] = Field(default_factory=list)
    license_skus: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    @field_validator("display_name")
    @classmethod
    def ensure_display_name(cls, value: str) -> str:
        if not value:
            raise ValueError("display_name must not be empty")
        return value

    @field_validator("user_principal_name")
    @classmethod
    def ensure_upn(cls, value: str) -> str:
        local, sep, domain = value.partition("@")
        if not sep or not local or "." not in domain:
            raise ValueError(f"{value!r} is not a valid user principal name")
        return value.lower()

    @field_validator("password")
    @classmethod
    def ensure_password(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value():
            raise ValueError("password must not be empty")
        return value

    @model_validator(mode="after")
    def default_mail_nickname(self) -> "ProvisioningRequest":
        if not self.mail_nickname:
            self.mail_nickname = self.user_principal_name.split("@", 1)[0]
        if self.usage_location:
            self.usage_location = self.usage_location.upper()
        return self

    @property
    def domain(self) -> str:
        return self.user_principal_name.split("@", 1)[1]

    @property
    def assignment_count(self) -> int:
        return len(self.group_assignments) + len(self.mailbox_assignments) + len(self.license_skus)

    def to_graph_user(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "accountEnabled": True,
            "displayName": self.display_name,
            "mailNickname": self.mail_nickname,
            "userPrincipalName": self.user_principal_name,
            "passwordProfile": {
                "forceChangePasswordNextSignIn": self.force_change_password,
                "password": self.password.get_secret_value(),
            },
        }
        optional = {
            "givenName": self.given_name,
            "surname": self.surname,
            "jobTitle": self.job_title,
            "department": self.department,
            "usageLocation": self.usage_location,
        }
        payload.update({key: value for key, value in optional.items() if value})
        return payload


AssignmentKind = Literal["group", "mailbox", "license"]


@dataclass
class AssignmentOutcome:
    kind: AssignmentKind
    target: str
    succeeded: bool
    detail: Optional[str] = None
    resolved_id: Optional[str] = None


@dataclass
class ProvisioningResult:
    created_user_id: str
    user_principal_name: str
    outcomes: List[AssignmentOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> List[AssignmentOutcome]:
        return [outcome for outcome in self.outcomes if outcome.succeeded]

    @property
    def failed(self) -> List[AssignmentOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.succeeded]

    @property
    def status(self) -> str:
        return "completed_with_warnings" if self.failed else "completed"

    def raise_for_failures(self) -> None:
        if self.failed:
            raise PartialProvisioningFailure(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created_user_id": self.created_user_id,
            "user_principal_name": self.user_principal_name,
            "status": self.status,
            "outcomes": [asdict(outcome) for outcome in self.outcomes],
        }
