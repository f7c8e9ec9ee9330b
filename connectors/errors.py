"""
Connector error taxonomy.

Every error carries a machine-readable ``code``.  Redirect flows expose only
that code to the browser (``/?error=<code>``); the message is for operators
and must never contain token material.
"""

from __future__ import annotations

from typing import List, Optional

from config.settings import ConfigurationError


class ConnectorError(Exception):
    """Base class for all credential-lifecycle failures."""

    code = "oauth_failed"


class AuthenticationRequired(ConnectorError):
    code = "authentication_required"


class CsrfValidationFailed(ConnectorError):
    code = "invalid_state"


class MissingCallbackParams(ConnectorError):
    code = "missing_params"


class ProviderConfigMissing(ConnectorError):
    """Credentials for a provider are not configured."""

    code = "server_misconfiguration"

    def __init__(self, provider: str, missing: List[str]) -> None:
        self.provider = provider
        self.missing = list(missing)
        super().__init__(f"{provider} is missing configuration: {', '.join(self.missing)}")


class UpstreamExchangeFailed(ConnectorError):
    """Non-2xx (or transport failure) from a provider token/identity endpoint."""

    code = "oauth_failed"

    def __init__(
        self,
        provider: str,
        operation: str,
        status_code: Optional[int] = None,
        excerpt: str = "",
    ) -> None:
        self.provider = provider
        self.operation = operation
        self.status_code = status_code
        self.excerpt = excerpt
        status = status_code if status_code is not None else "no response"
        super().__init__(f"{provider} {operation} failed ({status}): {excerpt}")


class IncompleteIdentity(ConnectorError):
    code = "missing_user_info"


class InvalidStaticCredentials(ConnectorError):
    """A store URL or API key was rejected before any network call."""

    code = "invalid_credentials"


class RefreshFailed(ConnectorError):
    code = "refresh_failed"


class InvalidConnectionState(ConnectorError):
    """Stored data violates the connection invariants."""

    code = "invalid_connection_state"


class UnknownProvider(ConnectorError):
    code = "unknown_provider"


class NoConnection(ConnectorError):
    code = "not_connected"


class TokenDecryptionError(ConnectorError):
    """Ciphertext was tampered with or written under an unknown key."""

    code = "decryption_failed"


__all__ = [
    "AuthenticationRequired",
    "ConfigurationError",
    "ConnectorError",
    "CsrfValidationFailed",
    "IncompleteIdentity",
    "InvalidConnectionState",
    "InvalidStaticCredentials",
    "MissingCallbackParams",
    "NoConnection",
    "ProviderConfigMissing",
    "RefreshFailed",
    "TokenDecryptionError",
    "UnknownProvider",
    "UpstreamExchangeFailed",
]
