"""
OAuth Token Manager

Issues access/refresh token pairs and answers the two questions resource
servers ask about a bearer credential: is it valid, and can it be revoked.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from credential_store import (
    ACCESS_TOKEN_BYTES,
    REFRESH_TOKEN_BYTES,
    AccessToken,
    CredentialStore,
    RefreshToken,
    generate_credential,
)
from oauth_metadata import format_scope

DEFAULT_ACCESS_TOKEN_TTL = 3600        # 1 hour
DEFAULT_REFRESH_TOKEN_TTL = 2592000    # 30 days


class InvalidTokenError(Exception):
    """Bearer credential rejected; surfaced to resource servers as invalid_token."""


class TokenNotFoundError(InvalidTokenError):
    """No record exists for the presented token (never issued or revoked)."""


class TokenExpiredError(InvalidTokenError):
    """The token existed but its lifetime has elapsed."""


class OAuthTokenManager:
    """
    Manages token issuance, validation and revocation.

    Responsibilities:
    - Mint access + refresh tokens for both grant types
    - Validate access tokens (lazy expiry deletes stale records)
    - Revoke access or refresh tokens (RFC 7009 semantics: idempotent)
    """

    def __init__(
        self,
        store: CredentialStore,
        access_token_ttl: float = DEFAULT_ACCESS_TOKEN_TTL,
        refresh_token_ttl: float = DEFAULT_REFRESH_TOKEN_TTL
    ):
        """
        Args:
            store: Credential store holding issued tokens
            access_token_ttl: Access token lifetime in seconds
            refresh_token_ttl: Refresh token lifetime in seconds
        """
        self.store = store
        self.access_token_ttl = access_token_ttl
        self.refresh_token_ttl = refresh_token_ttl
        logging.info("OAuth Token Manager initialized")

    def issue_tokens(self, client_id: str, user_id: str, scopes: List[str]) -> Dict[str, Any]:
        """
        Create and store a fresh access/refresh token pair.

        Args:
            client_id: Client the tokens are issued to
            user_id: Resource owner
            scopes: Granted scopes

        Returns:
            OAuth token response dict
        """
        now = time.time()
        scopes = list(scopes)

        access_token = generate_credential(ACCESS_TOKEN_BYTES)
        refresh_token = generate_credential(REFRESH_TOKEN_BYTES)

        access_record = AccessToken(
            token=access_token,
            client_id=client_id,
            user_id=user_id,
            scopes=scopes,
            expires_at=now + self.access_token_ttl,
            created_at=now
        )
        self.store.access_tokens.put(access_token, access_record)
        self.store.refresh_tokens.put(refresh_token, RefreshToken(
            token=refresh_token,
            client_id=client_id,
            user_id=user_id,
            scopes=scopes,
            expires_at=now + self.refresh_token_ttl,
            created_at=now
        ))

        logging.info(f"Issued tokens for client {client_id}, user {user_id}")

        return {
            "access_token": access_token,
            "token_type": "Bearer",
            "expires_in": access_record.expires_in(now),
            "refresh_token": refresh_token,
            "scope": format_scope(scopes)
        }

    def validate_access_token(self, access_token: str) -> AccessToken:
        """
        Validate an access token.

        Args:
            access_token: Opaque bearer value

        Returns:
            The stored AccessToken record

        Raises:
            TokenNotFoundError: Token was never issued or has been revoked
            TokenExpiredError: Token lifetime has elapsed (record is deleted)
        """
        record = self.store.access_tokens.get(access_token) if access_token else None
        if record is None:
            logging.debug(f"Access token not found: {(access_token or '')[:8]}...")
            raise TokenNotFoundError("Access token not found")

        if record.is_expired():
            self.store.access_tokens.delete_if_expired(access_token)
            logging.debug(f"Access token expired: {(access_token or '')[:8]}...")
            raise TokenExpiredError("Access token expired")

        return record

    def validate_bearer_header(self, authorization: Optional[str]) -> AccessToken:
        """
        Validate an ``Authorization: Bearer <token>`` header value.

        Raises:
            InvalidTokenError: Missing or malformed header, or the token fails
                validate_access_token
        """
        if not authorization:
            raise InvalidTokenError("Missing Authorization header")

        scheme, _, token = authorization.partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            raise InvalidTokenError("Authorization header must use the Bearer scheme")

        return self.validate_access_token(token)

    def revoke_token(self, token: str, is_refresh: bool, client_id: Optional[str] = None) -> bool:
        """
        Revoke an access or refresh token.

        Unknown or already revoked tokens are not an error. Revoking a refresh
        token leaves access tokens issued alongside it untouched.

        Args:
            token: Token to revoke
            is_refresh: True for refresh tokens, False for access tokens
            client_id: When given, tokens owned by a different client are kept

        Returns:
            True if a record was deleted
        """
        namespace = self.store.refresh_tokens if is_refresh else self.store.access_tokens
        kind = "refresh" if is_refresh else "access"

        if client_id is not None:
            record = namespace.get(token)
            if record is None:
                return False
            if record.client_id != client_id:
                logging.warning(f"Client {client_id} tried to revoke a {kind} token it does not own")
                return False

        revoked = namespace.delete(token)
        if revoked:
            logging.info(f"Revoked {kind} token: {token[:8]}...")
        return revoked

    def revoke(self, token: str, token_type_hint: Optional[str] = None, client_id: Optional[str] = None) -> bool:
        """
        RFC 7009 revocation: try the hinted token type first, then the other.

        Returns:
            True if a record was deleted
        """
        order = [True, False] if token_type_hint == "refresh_token" else [False, True]
        for is_refresh in order:
            if self.revoke_token(token, is_refresh, client_id=client_id):
                return True

        logging.debug(f"Token not found for revocation: {token[:8]}...")
        return False
