from __future__ import annotations

import os
from pathlib import Path
from typing import Annotated, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Environment = Literal["AzureCloud", "AzureUSGovernment", "AzureChinaCloud"]

# authority, graph, exchange
CLOUD_ENDPOINTS: Dict[str, Dict[str, str]] = {
    "AzureCloud": {
        "authority_host": "https://login.microsoftonline.com",
        "graph_base_url": "https://graph.microsoft.com",
        "exchange_base_url": "https://outlook.office365.com",
    },
    "AzureUSGovernment": {
        "authority_host": "https://login.microsoftonline.us",
        "graph_base_url": "https://graph.microsoft.us",
        "exchange_base_url": "https://outlook.office365.us",
    },
    "AzureChinaCloud": {
        "authority_host": "https://login.chinacloudapi.cn",
        "graph_base_url": "https://microsoftgraph.chinacloudapi.cn",
        "exchange_base_url": "https://partner.outlook.cn",
    },
}


class SecretRef(BaseModel):
    """Pointer to a secret held outside the configuration file.

    Environment variables are the supported source. Inline values exist for local
    testing only. Key Vault URIs are accepted by the schema so configs can be shared,
    but they must be resolved by the caller before authentication.
    """

    env: Optional[str] = Field(default=None, description="Environment variable holding the secret")
    value: Optional[str] = Field(default=None, description="Inline value (local testing only)")
    key_vault_secret_uri: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    def resolve(self) -> str:
        if self.env:
            resolved = os.getenv(self.env)
            if not resolved:
                raise ValueError(f"Environment variable {self.env} is not set")
            return resolved
        if self.value:
            return self.value
        if self.key_vault_secret_uri:
            raise ValueError(f"Key Vault reference {self.key_vault_secret_uri} must be resolved before sign-in")
        raise ValueError("Secret reference is empty")


class DeviceCodeAuth(BaseModel):
    type: Literal["device_code"]
    client_id: str

    model_config = ConfigDict(extra="forbid")


class InteractiveAuth(BaseModel):
    type: Literal["interactive"]
    client_id: str
    login_hint: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class ClientSecretAuth(BaseModel):
    type: Literal["client_secret"]
    client_id: str
    client_secret: SecretRef

    model_config = ConfigDict(extra="forbid")


class CertificateAuth(BaseModel):
    type: Literal["certificate"]
    client_id: str
    certificate_path: Path
    thumbprint: str
    certificate_password: Optional[SecretRef] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("thumbprint")
    @classmethod
    def normalize_thumbprint(cls, value: str) -> str:
        cleaned = value.replace(":", "").replace(" ", "").upper()
        if not cleaned:
            raise ValueError("thumbprint is required for certificate auth")
        return cleaned


class ManagedIdentityAuth(BaseModel):
    type: Literal["managed_identity"]
    client_id: Optional[str] = Field(default=None, description="User-assigned identity client ID")

    model_config = ConfigDict(extra="forbid")


AuthConfig = Annotated[
    Union[DeviceCodeAuth, InteractiveAuth, ClientSecretAuth, CertificateAuth, ManagedIdentityAuth],
    Field(discriminator="type"),
]

DELEGATED_AUTH_TYPES = {"device_code", "interactive"}


class ExchangeSettings(BaseModel):
    enabled: bool = True
    organization: Optional[str] = Field(
        default=None, description="Initial or primary domain, used to anchor admin API calls"
    )

    model_config = ConfigDict(extra="forbid")


class TenantConfig(BaseModel):
    tenant_id: str
    display_name: Optional[str] = None
    environment: Environment = "AzureCloud"
    auth: AuthConfig
    default_scopes: List[str] = Field(default_factory=list)
    authority_host: Optional[str] = None
    graph_base_url: Optional[str] = None
    exchange_base_url: Optional[str] = None
    exchange: ExchangeSettings = Field(default_factory=ExchangeSettings)

    model_config = ConfigDict(extra="forbid")

    @field_validator("tenant_id")
    @classmethod
    def ensure_tenant_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("tenant_id must not be empty")
        return value

    @model_validator(mode="after")
    def apply_cloud_defaults(self) -> "TenantConfig":
        endpoints = CLOUD_ENDPOINTS[self.environment]
        for key, default in endpoints.items():
            if not getattr(self, key):
                setattr(self, key, default)
            else:
                setattr(self, key, getattr(self, key).rstrip("/"))
        if not self.default_scopes:
            self.default_scopes = [f"{self.graph_base_url}/.default"]
        return self

    @property
    def is_delegated(self) -> bool:
        return self.auth.type in DELEGATED_AUTH_TYPES

    @property
    def exchange_scopes(self) -> List[str]:
        return [f"{self.exchange_base_url}/.default"]


class TokenCacheSettings(BaseModel):
    directory: Optional[Path] = Field(
        default=None, description="Where per-tenant MSAL caches are kept; memory only when unset"
    )

    model_config = ConfigDict(extra="forbid")

    @field_validator("directory")
    @classmethod
    def expand_directory(cls, value: Optional[Path]) -> Optional[Path]:
        return value.expanduser() if value is not None else None


class HttpSettings(BaseModel):
    timeout_seconds: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    auth_timeout_seconds: float = Field(default=300.0, gt=0)

    model_config = ConfigDict(extra="forbid")


class SessionSettings(BaseModel):
    busy_wait_seconds: float = Field(default=0.0, ge=0)

    model_config = ConfigDict(extra="forbid")


class AppConfig(BaseModel):
    tenants: List[TenantConfig]
    token_cache: TokenCacheSettings = Field(default_factory=TokenCacheSettings)
    http: HttpSettings = Field(default_factory=HttpSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)

    model_config = ConfigDict(extra="forbid")

    @field_validator("tenants")
    @classmethod
    def ensure_unique_tenants(cls, value: List[TenantConfig]) -> List[TenantConfig]:
        seen = set()
        for tenant in value:
            if tenant.tenant_id in seen:
                raise ValueError(f"Tenant {tenant.tenant_id} is configured more than once")
            seen.add(tenant.tenant_id)
        return value

    def get_tenant(self, tenant_id: str) -> TenantConfig:
        for tenant in self.tenants:
            if tenant.tenant_id == tenant_id:
                return tenant
        raise KeyError(f"Tenant {tenant_id} is not configured")

    @classmethod
    def load(cls, path: Union[str, Path]) -> "AppConfig":
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with config_path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

        return cls(**raw)
