"""
OAuth 2.0 Endpoints

Implements the protocol logic behind the HTTP routes:
- GET /authorize: Authorization endpoint (authorization code, optional PKCE)
- POST /token: Token endpoint (authorization_code and refresh_token grants)
- POST /revoke: Token revocation (RFC 7009)

The handlers take already-parsed parameters and raise OAuthError; server.py
turns results and errors into HTTP responses.
"""

import base64
import binascii
import logging
import time
import urllib.parse
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from audit_logger import AuditAction, AuditSeverity, get_audit_logger
from client_registry import Client
from credential_store import (
    CODE_BYTES,
    AuthorizationCode,
    CredentialGenerationError,
    CredentialStore,
    StorageError,
    generate_credential,
)
from oauth_metadata import parse_scope_string
from oauth_token_manager import OAuthTokenManager
from pkce import SUPPORTED_METHODS, verify_code_challenge

DEFAULT_CODE_TTL = 600  # 10 minutes


class OAuthError(Exception):
    """
    OAuth protocol error.

    When redirect_uri is set the error is delivered to the client as a 302
    redirect carrying error, error_description and state. Otherwise it is a
    direct JSON response with status_code.
    """

    def __init__(
        self,
        error: str,
        error_description: str,
        status_code: int = 400,
        redirect_uri: Optional[str] = None,
        state: Optional[str] = None
    ):
        self.error = error
        self.error_description = error_description
        self.status_code = status_code
        self.redirect_uri = redirect_uri
        self.state = state
        super().__init__(f"{error}: {error_description}")

    def to_dict(self) -> Dict[str, str]:
        return {"error": self.error, "error_description": self.error_description}

    def to_redirect_url(self) -> str:
        params = self.to_dict()
        if self.state:
            params["state"] = self.state
        return append_query(self.redirect_uri, params)


@dataclass(frozen=True)
class AuthorizationCodeGrant:
    """grant_type=authorization_code"""
    code: str
    redirect_uri: str
    code_verifier: Optional[str] = None


@dataclass(frozen=True)
class RefreshTokenGrant:
    """grant_type=refresh_token"""
    refresh_token: str


Grant = Union[AuthorizationCodeGrant, RefreshTokenGrant]


def append_query(uri: str, params: Mapping[str, str]) -> str:
    """Add params to uri, keeping any query string it already has."""
    parts = urllib.parse.urlsplit(uri)
    extra = urllib.parse.urlencode(params)
    query = f"{parts.query}&{extra}" if parts.query else extra
    return urllib.parse.urlunsplit(parts._replace(query=query))


def parse_token_request(params: Mapping[str, Any]) -> Grant:
    """
    Parse token endpoint form parameters into a grant.

    Raises:
        OAuthError: invalid_request for missing parameters,
                    unsupported_grant_type for unknown grant types
    """
    grant_type = params.get('grant_type')

    if not grant_type:
        raise OAuthError('invalid_request', 'Missing grant_type parameter')

    if grant_type == 'authorization_code':
        code = params.get('code')
        redirect_uri = params.get('redirect_uri')
        if not code:
            raise OAuthError('invalid_request', 'Missing code parameter')
        if not redirect_uri:
            raise OAuthError('invalid_request', 'Missing redirect_uri parameter')
        return AuthorizationCodeGrant(
            code=code,
            redirect_uri=redirect_uri,
            code_verifier=params.get('code_verifier') or None
        )

    if grant_type == 'refresh_token':
        refresh_token = params.get('refresh_token')
        if not refresh_token:
            raise OAuthError('invalid_request', 'Missing refresh_token parameter')
        return RefreshTokenGrant(refresh_token=refresh_token)

    raise OAuthError('unsupported_grant_type', f'Grant type "{grant_type}" is not supported')


def parse_basic_authorization(authorization: Optional[str]) -> Optional[Tuple[str, str]]:
    """
    Extract client credentials from an HTTP Basic Authorization header.

    Returns:
        (client_id, client_secret), or None when the header is absent or
        uses another scheme

    Raises:
        OAuthError: invalid_client if the Basic payload is malformed
    """
    if not authorization:
        return None

    scheme, _, encoded = authorization.partition(' ')
    if scheme.lower() != 'basic':
        return None

    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode('utf-8')
    except (binascii.Error, ValueError):
        raise OAuthError('invalid_client', 'Client authentication failed', 401)

    client_id, sep, client_secret = decoded.partition(':')
    if not sep:
        raise OAuthError('invalid_client', 'Client authentication failed', 401)

    # RFC 6749 2.3.1: both halves are form-urlencoded before base64
    return urllib.parse.unquote_plus(client_id), urllib.parse.unquote_plus(client_secret)


class OAuthEndpoints:
    """
    OAuth endpoint handlers.

    Implements the authorization code flow with optional PKCE and refresh
    token rotation. All state lives in the injected registry and store.
    """

    def __init__(
        self,
        registry,
        store: CredentialStore,
        token_manager: OAuthTokenManager,
        code_ttl: float = DEFAULT_CODE_TTL
    ):
        """
        Initialize OAuth endpoints.

        Args:
            registry: ClientRegistry or RedisClientRegistry
            store: Credential store for authorization codes
            token_manager: Issues and revokes access/refresh tokens
            code_ttl: Authorization code lifetime in seconds
        """
        self.registry = registry
        self.store = store
        self.token_manager = token_manager
        self.code_ttl = code_ttl
        self.audit = get_audit_logger()
        logging.info("OAuth endpoints initialized")

    # ===== Authorization Endpoint =====

    async def handle_authorize(self, params: Mapping[str, Any], user_id: Optional[str]) -> Dict[str, Any]:
        """
        Handle GET /authorize request.

        Args:
            params: Query parameters from the authorization request
            user_id: Authenticated resource owner, or None

        Returns:
            Dict with:
            - redirect_url: redirect_uri carrying code and state
            - code: the issued authorization code
            - state: echoed state, if any

        Raises:
            OAuthError: If the request is rejected. redirect_uri is set on the
                        error only once the client and redirect URI are verified.
        """
        client_id = params.get('client_id') or None
        try:
            result = self._authorize(params, user_id)
        except OAuthError as e:
            self.audit.log_event(
                event_type="authorization_denied",
                severity=AuditSeverity.MEDIUM,
                action=AuditAction.AUTH,
                status="failure",
                client_id=client_id,
                user_id=user_id,
                error=e.error,
                error_description=e.error_description,
                status_code=e.status_code
            )
            raise

        self.audit.log_event(
            event_type="authorization_granted",
            severity=AuditSeverity.MEDIUM,
            action=AuditAction.AUTH,
            status="success",
            client_id=client_id,
            user_id=user_id,
            additional_safe_fields={"pkce": bool(params.get('code_challenge'))}
        )
        return result

    def _authorize(self, params: Mapping[str, Any], user_id: Optional[str]) -> Dict[str, Any]:
        response_type = params.get('response_type')
        client_id = params.get('client_id')
        redirect_uri = params.get('redirect_uri')
        state = params.get('state') or None

        client = self._lookup_client(client_id)
        trusted = client is not None and client.has_redirect_uri(redirect_uri)

        if response_type != 'code':
            raise OAuthError(
                'unsupported_response_type',
                'Only "code" response type is supported',
                redirect_uri=redirect_uri if trusted else None,
                state=state
            )

        if client is None:
            raise OAuthError('invalid_client', 'Unknown client')

        # SECURITY: never redirect to a URI that is not registered for this client
        if not trusted:
            raise OAuthError('invalid_request', 'redirect_uri is not registered for this client')

        scopes = parse_scope_string(params.get('scope'))
        if not scopes:
            raise OAuthError('invalid_scope', 'At least one scope is required',
                             redirect_uri=redirect_uri, state=state)
        if not client.allows_scopes(scopes):
            raise OAuthError('invalid_scope', 'Requested scope is not allowed for this client',
                             redirect_uri=redirect_uri, state=state)

        code_challenge = params.get('code_challenge') or None
        code_challenge_method = params.get('code_challenge_method') or None
        if code_challenge:
            if code_challenge_method not in SUPPORTED_METHODS:
                raise OAuthError('invalid_request', 'code_challenge_method must be S256 or plain',
                                 redirect_uri=redirect_uri, state=state)
        elif code_challenge_method:
            raise OAuthError('invalid_request', 'code_challenge_method given without code_challenge',
                             redirect_uri=redirect_uri, state=state)

        if not user_id:
            raise OAuthError('access_denied', 'User is not authenticated', 401)

        now = time.time()
        try:
            code = generate_credential(CODE_BYTES)
            self.store.codes.put(code, AuthorizationCode(
                code=code,
                client_id=client.client_id,
                user_id=user_id,
                redirect_uri=redirect_uri,
                scopes=scopes,
                expires_at=now + self.code_ttl,
                code_challenge=code_challenge,
                code_challenge_method=code_challenge_method if code_challenge else None,
                created_at=now
            ))
        except (StorageError, CredentialGenerationError) as e:
            logging.error(f"Failed to issue authorization code for client {client.client_id}: {e}")
            raise OAuthError('server_error', 'Temporary server failure', 500)

        redirect_params = {'code': code}
        if state:
            redirect_params['state'] = state

        logging.info(f"Issued authorization code for client {client.client_id}, user {user_id}")
        return {
            "redirect_url": append_query(redirect_uri, redirect_params),
            "code": code,
            "state": state
        }

    # ===== Client Authentication =====

    def authenticate_client(self, params: Mapping[str, Any], authorization: Optional[str] = None) -> Client:
        """
        Authenticate a confidential client (client_secret_basic or client_secret_post).

        SECURITY: Unknown clients and wrong secrets produce the same error.

        Args:
            params: Form parameters (client_id / client_secret)
            authorization: Authorization header value, if any

        Returns:
            The authenticated Client

        Raises:
            OAuthError: invalid_client (401), or invalid_request when both
                        methods are used at once
        """
        basic = parse_basic_authorization(authorization)
        form_client_id = params.get('client_id') or None
        form_secret = params.get('client_secret') or None

        if basic is not None:
            if form_secret is not None:
                raise OAuthError('invalid_request', 'Use only one client authentication method')
            client_id, client_secret = basic
            if form_client_id is not None and form_client_id != client_id:
                raise OAuthError('invalid_client', 'Client authentication failed', 401)
        else:
            client_id, client_secret = form_client_id, form_secret

        client = None
        if self._validate_secret(client_id, client_secret):
            client = self._lookup_client(client_id)

        if client is None:
            self.audit.log_event(
                event_type="client_authentication_failed",
                severity=AuditSeverity.MEDIUM,
                action=AuditAction.AUTH,
                status="failure",
                client_id=client_id,
                error="invalid_client",
                status_code=401
            )
            raise OAuthError('invalid_client', 'Client authentication failed', 401)

        return client

    # ===== Token Endpoint =====

    async def handle_token(self, params: Mapping[str, Any], authorization: Optional[str] = None) -> Dict[str, Any]:
        """
        Handle POST /token request.

        Supports:
        - authorization_code grant (PKCE verified when a challenge was stored)
        - refresh_token grant (the presented refresh token is rotated)

        Args:
            params: Form body parameters
            authorization: Authorization header value, for client_secret_basic

        Returns:
            OAuth token response

        Raises:
            OAuthError: If the request is rejected
        """
        client = self.authenticate_client(params, authorization)
        grant_type = params.get('grant_type')

        try:
            grant = parse_token_request(params)
            if isinstance(grant, AuthorizationCodeGrant):
                response = self._redeem_authorization_code(client, grant)
            elif isinstance(grant, RefreshTokenGrant):
                response = self._rotate_refresh_token(client, grant)
            else:
                raise TypeError(f"Unhandled grant: {type(grant).__name__}")
        except (StorageError, CredentialGenerationError) as e:
            logging.error(f"Token request failed for client {client.client_id}: {e}")
            raise OAuthError('server_error', 'Temporary server failure', 500)
        except OAuthError as e:
            self.audit.log_event(
                event_type="grant_rejected",
                severity=AuditSeverity.MEDIUM,
                action=AuditAction.AUTH,
                status="failure",
                client_id=client.client_id,
                grant_type=grant_type,
                error=e.error,
                error_description=e.error_description,
                status_code=e.status_code
            )
            raise

        self.audit.log_event(
            event_type="tokens_issued",
            severity=AuditSeverity.HIGH,
            action=AuditAction.CREATE,
            status="success",
            client_id=client.client_id,
            grant_type=grant_type,
            additional_safe_fields={"scope": response.get("scope")}
        )
        return response

    def _redeem_authorization_code(self, client: Client, grant: AuthorizationCodeGrant) -> Dict[str, Any]:
        # SECURITY: take before any other check, so a code is burned by its
        # first presentation whether or not that presentation succeeds
        record = self.store.codes.take(grant.code)

        if record is None:
            raise OAuthError('invalid_grant', 'Invalid or already used authorization code')
        if record.is_expired():
            raise OAuthError('invalid_grant', 'Authorization code expired')
        if record.client_id != client.client_id:
            logging.warning(f"Client {client.client_id} presented a code issued to another client")
            raise OAuthError('invalid_grant', 'Authorization code was issued to another client')
        if record.redirect_uri != grant.redirect_uri:
            raise OAuthError('invalid_grant', 'redirect_uri does not match authorization request')

        if record.code_challenge:
            if not grant.code_verifier:
                raise OAuthError('invalid_grant', 'code_verifier is required')
            if not verify_code_challenge(grant.code_verifier, record.code_challenge, record.code_challenge_method):
                raise OAuthError('invalid_grant', 'PKCE verification failed')

        return self.token_manager.issue_tokens(record.client_id, record.user_id, record.scopes)

    def _rotate_refresh_token(self, client: Client, grant: RefreshTokenGrant) -> Dict[str, Any]:
        record = self.store.refresh_tokens.take(grant.refresh_token)

        if record is None:
            raise OAuthError('invalid_grant', 'Invalid or already used refresh token')
        if record.is_expired():
            raise OAuthError('invalid_grant', 'Refresh token expired')
        if record.client_id != client.client_id:
            logging.warning(f"Client {client.client_id} presented a refresh token issued to another client")
            raise OAuthError('invalid_grant', 'Refresh token was issued to another client')

        return self.token_manager.issue_tokens(record.client_id, record.user_id, record.scopes)

    # ===== Token Revocation Endpoint =====

    async def handle_revoke(self, params: Mapping[str, Any], authorization: Optional[str] = None) -> Dict[str, Any]:
        """
        Handle POST /revoke request (RFC 7009).

        Args:
            params: Form body parameters (token, token_type_hint)
            authorization: Authorization header value, for client_secret_basic

        Returns:
            Empty dict; revocation answers 200 whether or not the token existed
        """
        client = self.authenticate_client(params, authorization)

        token = params.get('token')
        if not token:
            return {}

        try:
            revoked = self.token_manager.revoke(token, params.get('token_type_hint'), client_id=client.client_id)
        except StorageError as e:
            logging.error(f"Revocation failed for client {client.client_id}: {e}")
            raise OAuthError('server_error', 'Temporary server failure', 500)

        if revoked:
            self.audit.log_event(
                event_type="token_revoked",
                severity=AuditSeverity.CRITICAL,
                action=AuditAction.DELETE,
                status="success",
                client_id=client.client_id,
                additional_safe_fields={"token_type_hint": params.get('token_type_hint')}
            )
        return {}

    # ===== Helpers =====

    def _lookup_client(self, client_id: Optional[str]) -> Optional[Client]:
        try:
            return self.registry.lookup(client_id)
        except StorageError as e:
            logging.error(f"Client lookup failed: {e}")
            raise OAuthError('server_error', 'Temporary server failure', 500)

    def _validate_secret(self, client_id: Optional[str], client_secret: Optional[str]) -> bool:
        try:
            return self.registry.validate_secret(client_id, client_secret)
        except StorageError as e:
            logging.error(f"Client authentication lookup failed: {e}")
            raise OAuthError('server_error', 'Temporary server failure', 500)
