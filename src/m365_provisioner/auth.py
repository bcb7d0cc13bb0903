from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import msal
import requests
from azure.core.exceptions import AzureError, ClientAuthenticationError
from azure.identity import ManagedIdentityCredential

from .audit import JsonAuditLogger
from .config import (
    CertificateAuth,
    ClientSecretAuth,
    DeviceCodeAuth,
    InteractiveAuth,
    ManagedIdentityAuth,
    TenantConfig,
)
from .errors import (
    AuthError,
    AuthTimeout,
    ConsentRequired,
    InvalidClientId,
    InvalidClientSecret,
    InvalidTenantId,
    NetworkError,
)
from .token_cache import TokenStore

logger = logging.getLogger(__name__)

PromptCallback = Callable[[str], None]


def map_msal_error(result: Dict[str, Any]) -> AuthError:
    """Translate an MSAL error payload into the matching AuthError subclass."""
    description = result.get("error_description") or result.get("error") or "Unknown sign-in error"
    error = result.get("error") or ""
    if "AADSTS7000215" in description or "AADSTS700027" in description:
        return InvalidClientSecret(description)
    if "AADSTS700016" in description:
        return InvalidClientId(description)
    if "AADSTS90002" in description or error == "invalid_tenant":
        return InvalidTenantId(description)
    if "AADSTS65001" in description or error == "consent_required":
        return ConsentRequired(description)
    if "AADSTS70016" in description or error in ("authorization_pending", "expired_token"):
        return AuthTimeout(description)
    return AuthError(description)


def _default_prompt(message: str) -> None:
    print(message, flush=True)


class TokenProvider:
    """Acquires access tokens for one tenant across Graph and Exchange Online.

    Delegated flows (device code, interactive browser) use a public client and an
    explicit :class:`TokenStore`, so later scopes are satisfied silently from the
    same account. App-only flows use a confidential client or managed identity.
    MSAL's own network timeout and the flow deadlines keep sign-in from blocking
    indefinitely.
    """

    def __init__(
        self,
        tenant_config: TenantConfig,
        audit_logger: JsonAuditLogger,
        token_store: Optional[TokenStore] = None,
        prompt: Optional[PromptCallback] = None,
        timeout: float = 30.0,
        auth_timeout: float = 300.0,
    ):
        self.tenant_config = tenant_config
        self.audit = audit_logger
        self.token_store = token_store or TokenStore(tenant_config.tenant_id)
        self.prompt = prompt or _default_prompt
        self.timeout = timeout
        self.auth_timeout = auth_timeout
        self._app: Optional[Union[msal.PublicClientApplication, msal.ConfidentialClientApplication]] = None
        self._managed_identity: Optional[ManagedIdentityCredential] = None

    @property
    def authority(self) -> str:
        return f"{self.tenant_config.authority_host}/{self.tenant_config.tenant_id}"

    def acquire_token(self, scopes: Iterable[str]) -> str:
        scopes = list(scopes)
        auth_config = self.tenant_config.auth
        try:
            if isinstance(auth_config, ManagedIdentityAuth):
                return self._acquire_managed_identity(auth_config, scopes)
            if isinstance(auth_config, (DeviceCodeAuth, InteractiveAuth)):
                result = self._acquire_delegated(auth_config, scopes)
            else:
                result = self._acquire_app_only(scopes)
        except requests.exceptions.RequestException as exc:
            raise NetworkError(str(exc)) from exc
        except ValueError as exc:
            # MSAL raises ValueError when authority discovery fails
            if "authority" in str(exc).lower():
                raise InvalidTenantId(str(exc)) from exc
            raise AuthError(str(exc), hint="Check the tenant's auth settings.") from exc
        finally:
            self.token_store.persist()

        if not result or "access_token" not in result:
            error = map_msal_error(result or {})
            self.audit.error(
                "token_acquisition_failed",
                tenant_id=self.tenant_config.tenant_id,
                auth_type=auth_config.type,
                error=error.code,
            )
            raise error

        self.audit.debug(
            "acquired_token",
            tenant_id=self.tenant_config.tenant_id,
            auth_type=auth_config.type,
            scopes=scopes,
            source=result.get("token_source"),
        )
        return result["access_token"]

    def account_name(self) -> Optional[str]:
        """Signed-in username for delegated flows, the client id for app-only ones."""
        auth_config = self.tenant_config.auth
        if isinstance(self._app, msal.PublicClientApplication):
            accounts = self._app.get_accounts()
            if accounts:
                return accounts[0].get("username")
        return getattr(auth_config, "client_id", None) or "managed-identity"

    def sign_out(self) -> None:
        """Forget every account and token held for this tenant, in memory and on disk."""
        try:
            if isinstance(self._app, msal.PublicClientApplication):
                for account in self._app.get_accounts():
                    self._app.remove_account(account)
            if self._managed_identity is not None:
                self._managed_identity.close()
        finally:
            self._app = None
            self._managed_identity = None
            self.token_store.clear()
        self.audit.info("signed_out", tenant_id=self.tenant_config.tenant_id)

    def _public_app(self, client_id: str) -> msal.PublicClientApplication:
        if self._app is None:
            self._app = msal.PublicClientApplication(
                client_id=client_id,
                authority=self.authority,
                token_cache=self.token_store.cache,
                timeout=self.timeout,
            )
        return self._app

    def _acquire_delegated(
        self, auth_config: Union[DeviceCodeAuth, InteractiveAuth], scopes: List[str]
    ) -> Optional[Dict[str, Any]]:
        app = self._public_app(auth_config.client_id)
        accounts = app.get_accounts()
        if accounts:
            result = app.acquire_token_silent(scopes, account=accounts[0])
            if result and "access_token" in result:
                return result

        if isinstance(auth_config, InteractiveAuth):
            self.audit.info("interactive_sign_in_started", tenant_id=self.tenant_config.tenant_id)
            return app.acquire_token_interactive(
                scopes,
                login_hint=auth_config.login_hint,
                prompt=msal.Prompt.SELECT_ACCOUNT,
                timeout=self.auth_timeout,
            )

        flow = app.initiate_device_flow(scopes=scopes)
        if "user_code" not in flow:
            return flow
        self.audit.info("device_code_issued", tenant_id=self.tenant_config.tenant_id)
        self.prompt(flow["message"])
        deadline = time.monotonic() + self.auth_timeout
        result = app.acquire_token_by_device_flow(flow, exit_condition=lambda _flow: time.monotonic() > deadline)
        if result and "access_token" not in result and time.monotonic() > deadline:
            raise AuthTimeout(f"Device code sign-in not completed within {self.auth_timeout:.0f}s")
        return result

    def _acquire_app_only(self, scopes: List[str]) -> Optional[Dict[str, Any]]:
        auth_config = self.tenant_config.auth
        if self._app is None:
            if isinstance(auth_config, ClientSecretAuth):
                credential: Any = auth_config.client_secret.resolve()
            elif isinstance(auth_config, CertificateAuth):
                credential = self._load_certificate(auth_config)
            else:
                raise ValueError("Unsupported authentication configuration")
            self._app = msal.ConfidentialClientApplication(
                client_id=auth_config.client_id,
                client_credential=credential,
                authority=self.authority,
                token_cache=self.token_store.cache,
                timeout=self.timeout,
            )
        return self._app.acquire_token_for_client(scopes=scopes)

    def _acquire_managed_identity(self, auth_config: ManagedIdentityAuth, scopes: List[str]) -> str:
        if self._managed_identity is None:
            self._managed_identity = ManagedIdentityCredential(client_id=auth_config.client_id)
        try:
            token = self._managed_identity.get_token(*scopes)
        except ClientAuthenticationError as exc:
            raise AuthError(str(exc)) from exc
        except AzureError as exc:
            raise NetworkError(str(exc)) from exc
        self.audit.debug("acquired_token", tenant_id=self.tenant_config.tenant_id, auth_type="managed_identity")
        return token.token

    @staticmethod
    def _load_certificate(auth_config: CertificateAuth) -> Dict[str, Any]:
        path = Path(auth_config.certificate_path)
        try:
            private_key = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise InvalidClientSecret(f"Failed to read certificate at {path}: {exc}") from exc
        credential: Dict[str, Any] = {"private_key": private_key, "thumbprint": auth_config.thumbprint}
        if auth_config.certificate_password:
            credential["passphrase"] = auth_config.certificate_password.resolve()
        return credential
