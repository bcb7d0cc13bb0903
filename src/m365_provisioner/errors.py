from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import ProvisioningResult


class M365Error(Exception):
    """Base error for the provisioner. Carries a stable code and an operator hint."""

    code = "m365_error"
    hint = "Unexpected error."

    def __init__(self, message: str = "", *, hint: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        if hint:
            self.hint = hint

    def to_dict(self) -> dict:
        return {"error": self.code, "message": str(self), "hint": self.hint}


class ConnectivityError(M365Error):
    code = "connectivity_error"
    hint = "Could not reach Microsoft 365."


class AuthError(ConnectivityError):
    code = "auth_error"
    hint = "Sign-in was rejected."


class InvalidTenantId(AuthError):
    code = "invalid_tenant_id"
    hint = "Tenant ID invalid or unreachable."


class InvalidClientId(AuthError):
    code = "invalid_client_id"
    hint = "Client ID invalid."


class InvalidClientSecret(AuthError):
    code = "invalid_client_secret"
    hint = "Client secret or certificate rejected."


class ConsentRequired(AuthError):
    code = "consent_required"
    hint = "Admin consent required for the requested permissions."


class AuthTimeout(AuthError):
    code = "auth_timeout"
    hint = "Sign-in was not completed in time."


class NetworkError(ConnectivityError):
    code = "network_error"
    hint = "Network or timeout issue."


class ApiError(M365Error):
    code = "api_error"
    hint = "The service rejected the request."

    def __init__(self, message: str = "", *, status_code: int = 0, body: str = "", hint: Optional[str] = None):
        super().__init__(message, hint=hint)
        self.status_code = status_code
        self.body = body


class SessionBusyError(M365Error):
    code = "session_busy"
    hint = "Another session operation is in progress; try again when it finishes."


class NotConnectedError(M365Error):
    code = "not_connected"
    hint = "Connect to a tenant first."


class MailProviderUnavailable(M365Error):
    code = "mail_provider_unavailable"
    hint = "Exchange Online is not connected; complete this step manually."


class ProvisioningError(M365Error):
    code = "provisioning_error"
    hint = "The user account was not created."


class PartialProvisioningFailure(M365Error):
    code = "partial_provisioning_failure"
    hint = "The user was created but some assignments need manual remediation."

    def __init__(self, result: "ProvisioningResult"):
        failed = result.failed
        super().__init__(
            f"{len(failed)} of {len(result.outcomes)} assignments failed for {result.user_principal_name}"
        )
        self.result = result
