"""
OAuth Metadata and Scope Helpers

Implements Authorization Server Metadata discovery (RFC 8414) so clients
can find the authorize, token and revocation endpoints, plus the
space-delimited scope parsing shared by the endpoints.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from pkce import SUPPORTED_METHODS


class OAuthMetadataProvider:
    """
    Provides OAuth metadata for discovery.

    Implements:
    - /.well-known/oauth-authorization-server (RFC 8414)
    """

    def __init__(self, server_url: str, scopes_supported: Optional[Iterable[str]] = None):
        """
        Initialize metadata provider.

        Args:
            server_url: Base URL of the server (e.g., https://auth.example.com)
            scopes_supported: Scopes to advertise; omitted from metadata when None
        """
        self.server_url = server_url.rstrip('/')
        self.scopes_supported = sorted(set(scopes_supported)) if scopes_supported is not None else None
        logging.info(f"OAuth metadata configured for server URL: {self.server_url}")

    def get_authorization_server_metadata(self) -> Dict[str, Any]:
        """
        Get Authorization Server Metadata (RFC 8414).

        Returns:
            Authorization server metadata dict
        """
        metadata = {
            "issuer": self.server_url,

            "authorization_endpoint": f"{self.server_url}/authorize",
            "token_endpoint": f"{self.server_url}/token",
            "revocation_endpoint": f"{self.server_url}/revoke",

            "response_types_supported": ["code"],
            "response_modes_supported": ["query"],
            "grant_types_supported": [
                "authorization_code",
                "refresh_token"
            ],

            # PKCE is optional per client, both methods accepted
            "code_challenge_methods_supported": list(SUPPORTED_METHODS),

            # Confidential clients only
            "token_endpoint_auth_methods_supported": [
                "client_secret_post",
                "client_secret_basic"
            ],
            "revocation_endpoint_auth_methods_supported": [
                "client_secret_post",
                "client_secret_basic"
            ],
        }

        if self.scopes_supported is not None:
            metadata["scopes_supported"] = self.scopes_supported

        return metadata

    def generate_www_authenticate_header(
        self,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        scope: Optional[str] = None
    ) -> str:
        """
        Generate a WWW-Authenticate header for 401 responses.

        Used for invalid_client on the token endpoint (HTTP Basic challenge)
        and invalid_token for resource servers (Bearer challenge).

        Args:
            error: OAuth error code (e.g., "invalid_client", "invalid_token")
            error_description: Human-readable error description
            scope: Required scopes, Bearer challenges only

        Returns:
            WWW-Authenticate header value
        """
        scheme = "Basic" if error == "invalid_client" else "Bearer"
        parts = [f'{scheme} realm="{self.server_url}"']

        if scope and scheme == "Bearer":
            parts.append(f'scope="{scope}"')
        if error:
            parts.append(f'error="{error}"')
        if error_description:
            parts.append(f'error_description="{error_description}"')

        return ", ".join(parts)

    def validate_metadata_consistency(self) -> Dict[str, Any]:
        """
        Check that the configured server URL produces usable metadata.

        Returns:
            Validation result dict with status, errors and warnings
        """
        errors = []

        if not self.server_url:
            errors.append("Server URL not configured")
        elif not self.server_url.startswith(('http://', 'https://')):
            errors.append(f"Invalid server URL scheme: {self.server_url}")

        if self.get_authorization_server_metadata().get("issuer") != self.server_url:
            errors.append("Issuer does not match server URL")

        if self.server_url.startswith('http://') and 'localhost' not in self.server_url:
            errors.append("WARNING: Using HTTP for non-localhost server (should use HTTPS)")

        return {
            "valid": not [e for e in errors if not e.startswith("WARNING:")],
            "errors": errors,
            "warnings": [e for e in errors if e.startswith("WARNING:")]
        }


def parse_scope_string(scope: Optional[str]) -> List[str]:
    """
    Parse a space-delimited scope string.

    Duplicate tokens are collapsed, keeping first-seen order.

    Args:
        scope: Space-separated scopes

    Returns:
        List of individual scope strings
    """
    if not scope:
        return []
    return list(dict.fromkeys(scope.split()))


def format_scope(scopes: Iterable[str]) -> str:
    return " ".join(scopes)
