"""
OAuth 2.0 Authorization Server (Starlette)

HTTP binding for the authorization server:
- GET  /authorize                               Authorization endpoint
- POST /token                                   Token endpoint
- POST /revoke                                  Token revocation (RFC 7009)
- GET  /.well-known/oauth-authorization-server  Metadata (RFC 8414)
- GET  /health                                  Storage health check

Run with ``python server.py`` or ``uvicorn --factory server:create_app``. Configuration is
read from the environment (see config.ServerConfig).

The resource owner is authenticated elsewhere. By default the user id is
taken from ``request.user`` as populated by Starlette's
AuthenticationMiddleware; pass ``user_resolver`` to create_app to change that.
"""

import asyncio
import contextlib
import logging
import urllib.parse
from typing import Callable, Dict, Optional, Sequence

import redis
import uvicorn
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from client_registry import ClientRegistry, RedisClientRegistry, load_clients_from_yaml
from config import ServerConfig
from credential_store import (
    CredentialStore,
    InMemoryCredentialStore,
    RedisCredentialStore,
    StorageError,
)
from oauth_endpoints import OAuthEndpoints, OAuthError
from oauth_metadata import OAuthMetadataProvider
from oauth_token_manager import OAuthTokenManager
from rate_limiter import create_rate_limiter
from token_encryption import TokenEncryption

# Every /token response carries these (RFC 6749 5.1)
NO_CACHE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"

# /token and /revoke answer every method so non-POST requests still get an OAuth error body
ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

UserResolver = Callable[[Request], Optional[str]]


def default_user_resolver(request: Request) -> Optional[str]:
    """User id from AuthenticationMiddleware's request.user, if authenticated."""
    user = request.scope.get("user")
    if user is None or not getattr(user, "is_authenticated", False):
        return None
    return user.display_name or None


def configure_logging(config: ServerConfig) -> None:
    logging.basicConfig(level=config.log_level, format=config.log_format)


def build_storage(config: ServerConfig):
    """
    Create the client registry and credential store for the configured backend.

    Returns:
        (registry, store, redis_client); redis_client is None for the memory backend
    """
    if not config.uses_redis:
        logging.info("Using in-memory OAuth storage (state is lost on restart)")
        return ClientRegistry(), InMemoryCredentialStore(), None

    redis_client = redis.from_url(
        config.redis_url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        socket_keepalive=True
    )
    encryptor = TokenEncryption(config.redis_encryption_key) if config.redis_encryption_key else None
    store = RedisCredentialStore(redis_client=redis_client, encryptor=encryptor)

    if not store.ping():
        logging.error("Redis connection failed! OAuth will not work properly.")
        logging.error("Please ensure Redis is running and REDIS_URL is correct.")
    else:
        logging.info("Redis connection successful")

    return RedisClientRegistry(redis_client), store, redis_client


async def sweep_expired_periodically(store: CredentialStore, interval: float) -> None:
    """Remove expired credentials every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            store.sweep_expired()
        except StorageError as e:
            logging.error(f"Expired credential sweep failed: {e}")


def _parse_form(body: bytes) -> Dict[str, str]:
    """
    Decode an x-www-form-urlencoded body.

    Raises:
        OAuthError: invalid_request for undecodable bodies or repeated parameters
    """
    try:
        pairs = urllib.parse.parse_qsl(body.decode("utf-8"), keep_blank_values=True)
    except (UnicodeDecodeError, ValueError):
        raise OAuthError("invalid_request", "Request body is not valid form data")

    params: Dict[str, str] = {}
    for key, value in pairs:
        if key in params:
            raise OAuthError("invalid_request", f"Parameter {key} must not be repeated")
        params[key] = value
    return params


def _is_form_request(request: Request) -> bool:
    content_type = request.headers.get("content-type", "")
    return content_type.split(";")[0].strip().lower() == FORM_CONTENT_TYPE


def _require_form_post(request: Request) -> None:
    """
    Reject anything but a form-encoded POST.

    Raises:
        OAuthError: invalid_request for other methods or content types
    """
    if request.method != "POST":
        raise OAuthError("invalid_request", f"{request.method} is not supported, use POST")
    if not _is_form_request(request):
        raise OAuthError("invalid_request", f"Content-Type must be {FORM_CONTENT_TYPE}")


def create_app(
    config: Optional[ServerConfig] = None,
    registry=None,
    store: Optional[CredentialStore] = None,
    user_resolver: Optional[UserResolver] = None,
    middleware: Optional[Sequence[Middleware]] = None
) -> Starlette:
    """
    Build the Starlette application.

    Args:
        config: Server configuration (read from the environment when None)
        registry: Client registry; built from config when None
        store: Credential store; built from config when None
        user_resolver: Maps a request to the authenticated user id
        middleware: Extra Starlette middleware, e.g. the login system's AuthenticationMiddleware

    Returns:
        Starlette application with components on ``app.state``
    """
    config = config or ServerConfig()
    user_resolver = user_resolver or default_user_resolver

    redis_client = None
    if registry is None or store is None:
        built_registry, built_store, redis_client = build_storage(config)
        if registry is None:
            registry = built_registry
        if store is None:
            store = built_store

    scopes_supported = None
    if config.clients_file:
        loaded = load_clients_from_yaml(config.clients_file, registry)
        scopes_supported = set()
        for client_id in loaded:
            scopes_supported.update(registry.lookup(client_id).allowed_scopes)

    token_manager = OAuthTokenManager(
        store,
        access_token_ttl=config.access_token_ttl,
        refresh_token_ttl=config.refresh_token_ttl
    )
    endpoints = OAuthEndpoints(registry, store, token_manager, code_ttl=config.code_ttl)
    metadata_provider = OAuthMetadataProvider(config.server_url, scopes_supported=scopes_supported)

    rate_limiters = {}
    if config.rate_limit_enabled:
        for name in ("authorize", "token", "revoke"):
            rate_limiters[name] = create_rate_limiter(
                name,
                redis_client=redis_client,
                trust_forwarded_for=config.rate_limit_trust_proxy
            )
        logging.info("OAuth rate limiters initialized")

    def check_rate_limit(request: Request, name: str):
        """Returns (limiter, remaining, rejection_response)."""
        limiter = rate_limiters.get(name)
        if limiter is None:
            return None, None, None
        allowed, remaining = limiter.check_rate_limit(request, name)
        if not allowed:
            return limiter, 0, limiter.create_rate_limit_response()
        return limiter, remaining, None

    def add_rate_limit_headers(response: Response, limiter, remaining) -> Response:
        if limiter is not None:
            response.headers["X-RateLimit-Limit"] = str(limiter.requests_per_minute)
            response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response

    def oauth_error_response(e: OAuthError, headers: Optional[Dict[str, str]] = None) -> Response:
        headers = dict(headers or {})
        if e.status_code == 401 and e.error == "invalid_client":
            headers["WWW-Authenticate"] = metadata_provider.generate_www_authenticate_header(error=e.error)
        return JSONResponse(e.to_dict(), status_code=e.status_code, headers=headers)

    def server_error_response(headers: Optional[Dict[str, str]] = None) -> Response:
        return JSONResponse(
            {"error": "server_error", "error_description": "Internal server error"},
            status_code=500,
            headers=headers
        )

    async def handle_authorize_endpoint(request: Request):
        """GET /authorize - Authorization endpoint (rate limited)"""
        limiter, remaining, rejected = check_rate_limit(request, "authorize")
        if rejected is not None:
            return rejected

        try:
            params = dict(request.query_params)
            result = await endpoints.handle_authorize(params, user_resolver(request))
            response = RedirectResponse(url=result["redirect_url"], status_code=302)
        except OAuthError as e:
            if e.redirect_uri:
                response = RedirectResponse(url=e.to_redirect_url(), status_code=302)
            else:
                response = oauth_error_response(e)
        except Exception as e:
            logging.error(f"Authorization endpoint error: {e}", exc_info=True)
            response = server_error_response()

        return add_rate_limit_headers(response, limiter, remaining)

    async def handle_token_endpoint(request: Request):
        """POST /token - Token endpoint (rate limited)"""
        limiter, remaining, rejected = check_rate_limit(request, "token")
        if rejected is not None:
            rejected.headers.update(NO_CACHE_HEADERS)
            return rejected

        try:
            _require_form_post(request)
            params = _parse_form(await request.body())
            result = await endpoints.handle_token(params, request.headers.get("authorization"))
            response = JSONResponse(result, headers=NO_CACHE_HEADERS)
        except OAuthError as e:
            response = oauth_error_response(e, NO_CACHE_HEADERS)
        except Exception as e:
            logging.error(f"Token endpoint error: {e}", exc_info=True)
            response = server_error_response(NO_CACHE_HEADERS)

        return add_rate_limit_headers(response, limiter, remaining)

    async def handle_revoke_endpoint(request: Request):
        """POST /revoke - Token revocation (rate limited)"""
        limiter, remaining, rejected = check_rate_limit(request, "revoke")
        if rejected is not None:
            return rejected

        try:
            _require_form_post(request)
            params = _parse_form(await request.body())
            await endpoints.handle_revoke(params, request.headers.get("authorization"))
            response = JSONResponse({}, headers=NO_CACHE_HEADERS)
        except OAuthError as e:
            response = oauth_error_response(e, NO_CACHE_HEADERS)
        except Exception as e:
            logging.error(f"Revocation endpoint error: {e}", exc_info=True)
            response = server_error_response(NO_CACHE_HEADERS)

        return add_rate_limit_headers(response, limiter, remaining)

    async def handle_oauth_authz_metadata_endpoint(request: Request):
        """GET /.well-known/oauth-authorization-server"""
        return JSONResponse(metadata_provider.get_authorization_server_metadata())

    async def handle_health_endpoint(request: Request):
        healthy = store.ping() and registry.ping()
        return JSONResponse(
            {"status": "ok" if healthy else "unavailable", "storage": config.storage_backend},
            status_code=200 if healthy else 503
        )

    routes = [
        Route("/authorize", handle_authorize_endpoint, methods=["GET"]),
        Route("/token", handle_token_endpoint, methods=ALL_METHODS),
        Route("/revoke", handle_revoke_endpoint, methods=ALL_METHODS),
        Route("/.well-known/oauth-authorization-server", handle_oauth_authz_metadata_endpoint, methods=["GET"]),
        Route("/health", handle_health_endpoint, methods=["GET"]),
    ]

    @contextlib.asynccontextmanager
    async def lifespan(app):
        sweeper = None
        if config.cleanup_enabled:
            sweeper = asyncio.create_task(sweep_expired_periodically(store, config.cleanup_interval))
            logging.info(f"Expired credential sweep every {config.cleanup_interval}s")
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweeper

    app = Starlette(routes=routes, middleware=list(middleware or []), lifespan=lifespan)

    app.state.config = config
    app.state.registry = registry
    app.state.store = store
    app.state.token_manager = token_manager
    app.state.endpoints = endpoints
    app.state.metadata_provider = metadata_provider

    logging.info(f"OAuth authorization server ready at {config.server_url}")
    return app


def main() -> None:
    config = ServerConfig()
    configure_logging(config)
    logging.info(f"Starting OAuth authorization server on {config.host}:{config.port}")
    uvicorn.run(create_app(config), host=config.host, port=config.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
