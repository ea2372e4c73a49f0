#!/usr/bin/env python3

import asyncio
import hmac
import html
import logging
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from pydantic import ValidationError

from auth import AuthManager, AuthorizationError, OAuthError
from config import Config
from crypto import generate_es256_key_pair, private_key_to_pem, public_key_to_pem
from models import (
    ClientRegistrationRequest,
    DiscoveryDocument,
    HealthCheckResponse,
    JWKS,
    ProviderRegistrationRequest,
    ProviderRegistrationResponse,
    UserInfoResponse,
)
from ratelimit import RateLimiter, get_client_identifier
from registry import Registry
from store import MemoryStore, StoreError, TokenStore, create_store
from tokens import verify_admin_token

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}
PUBLIC_CACHE_HEADERS = {"Cache-Control": "public, max-age=3600"}

ERROR_PAGE = """<!DOCTYPE html>
<html>
  <head><title>Authorization Error</title></head>
  <body>
    <h1>Authorization Error</h1>
    <p><strong>{error}</strong>: {description}</p>
  </body>
</html>
"""


def create_app(config: Optional[Config] = None, store: Optional[TokenStore] = None) -> FastAPI:
    """Build the bbauth application"""
    config = config or Config()

    # Configure logging
    logging.basicConfig(level=config.log_level, format=config.log_format)

    store = store or create_store(config)
    auth_manager = AuthManager(config, store)
    registry = Registry(store)
    rate_limiter = RateLimiter(config, store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting bbauth server v{VERSION}")
        logger.info(f"Environment: {config.environment}")
        logger.info(f"Issuer: {config.issuer_url}")

        cleanup_task = None
        if isinstance(store, MemoryStore):
            cleanup_task = asyncio.create_task(store.cleanup_expired(config.cleanup_interval))
        yield
        logger.info("Shutting down bbauth server")
        if cleanup_task:
            cleanup_task.cancel()
            with suppress(asyncio.CancelledError):
                await cleanup_task
        await store.close()

    app = FastAPI(
        title="bbauth",
        description="OAuth 2.0 / OpenID Connect identity broker with PKCE",
        version=VERSION,
        docs_url="/docs" if config.is_development else None,
        redoc_url="/redoc" if config.is_development else None,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.store = store
    app.state.auth_manager = auth_manager

    # Add security headers middleware
    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        # HTTPS enforcement in production
        if config.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_credentials="*" not in config.allowed_origins,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        expose_headers=["WWW-Authenticate"],
        max_age=86400,
    )

    # Error handling
    @app.exception_handler(AuthorizationError)
    async def authorization_error_handler(request: Request, exc: AuthorizationError):
        logger.warning(f"Authorization request rejected: {exc.error} - {exc.description}")
        if exc.redirect_uri:
            return RedirectResponse(url=exc.redirect_url(), status_code=302)
        page = ERROR_PAGE.format(error=html.escape(exc.error), description=html.escape(exc.description))
        return HTMLResponse(content=page, status_code=400)

    @app.exception_handler(OAuthError)
    async def oauth_error_handler(request: Request, exc: OAuthError):
        headers = dict(exc.headers)
        if request.url.path == "/oauth/token":
            headers.update(NO_STORE_HEADERS)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error(f"Store error on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={"error": "server_error", "error_description": "Internal server error"},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={"error": "server_error", "error_description": "Internal server error"},
        )

    # Dependencies
    async def require_admin(request: Request):
        """Accept the configured ADMIN_TOKEN or a signed admin token"""
        auth_header = request.headers.get("Authorization") or ""
        if not auth_header.startswith("Bearer "):
            raise HTTPException(status_code=401, detail="Unauthorized")
        token = auth_header[len("Bearer "):].strip()

        if config.admin_token and hmac.compare_digest(token.encode(), config.admin_token.encode()):
            return "admin"

        admin = verify_admin_token(token, auth_manager.public_key)
        if admin:
            return admin.user_name

        logger.warning(f"Rejected admin request from {get_client_identifier(request)}")
        raise HTTPException(status_code=401, detail="Unauthorized")

    async def rate_limit(request: Request):
        await rate_limiter.check(get_client_identifier(request))

    # Health and discovery endpoints
    @app.get("/health", response_model=HealthCheckResponse)
    async def health_check():
        """Health check endpoint"""
        return HealthCheckResponse(
            status="healthy",
            service="bbauth",
            version=VERSION,
            timestamp=datetime.now(timezone.utc).isoformat(),
            components={
                "store": type(store).__name__,
                "auth": "ready",
                "verifier": "configured" if config.verifier_url else "not_configured",
            },
            environment=config.environment,
        )

    @app.get("/")
    async def root():
        """Root endpoint with server information"""
        return {
            "name": "bbauth",
            "version": VERSION,
            "description": "OAuth 2.0 / OpenID Connect identity broker with PKCE",
            "endpoints": {
                "authorization": f"{config.issuer_url}/oauth/authorize",
                "token": f"{config.issuer_url}/oauth/token",
                "userinfo": f"{config.issuer_url}/oauth/userinfo",
                "discovery": f"{config.issuer_url}/.well-known/openid-configuration",
                "jwks": f"{config.issuer_url}/.well-known/jwks.json",
            },
        }

    @app.get("/.well-known/openid-configuration", response_model=DiscoveryDocument)
    async def openid_configuration():
        """OpenID Connect Discovery document"""
        document = auth_manager.discovery_document()
        return JSONResponse(content=document.model_dump(), headers=PUBLIC_CACHE_HEADERS)

    @app.get("/.well-known/jwks.json", response_model=JWKS)
    async def jwks():
        """Public signing key set"""
        key_set = auth_manager.jwks()
        return JSONResponse(content=key_set.model_dump(exclude_none=True), headers=PUBLIC_CACHE_HEADERS)

    # OAuth endpoints
    @app.get("/oauth/authorize", dependencies=[Depends(rate_limit)])
    async def oauth_authorize(request: Request):
        """Authorization endpoint: start the flow at the identity verifier"""
        verifier_redirect = await auth_manager.start_authorization(request.query_params)
        return RedirectResponse(url=verifier_redirect, status_code=302)

    @app.get("/oauth/callback")
    async def oauth_callback(request: Request):
        """Resume the flow after external identity verification"""
        client_redirect = await auth_manager.complete_callback(request.query_params)
        return RedirectResponse(url=client_redirect, status_code=302)

    @app.post("/oauth/token", dependencies=[Depends(rate_limit)])
    async def oauth_token(request: Request):
        """Token endpoint: authorization_code and refresh_token grants"""
        content_type = request.headers.get("content-type", "")
        if not content_type.startswith("application/x-www-form-urlencoded"):
            raise OAuthError("invalid_request", "Token requests must be application/x-www-form-urlencoded")

        form_data = await request.form()
        token_response = await auth_manager.exchange_token(form_data)
        return JSONResponse(content=token_response.model_dump(exclude_none=True), headers=NO_STORE_HEADERS)

    @app.get("/oauth/userinfo", response_model=UserInfoResponse)
    async def oauth_userinfo(request: Request):
        """UserInfo endpoint"""
        return auth_manager.userinfo(request.headers.get("Authorization"))

    # Admin endpoints
    @app.post("/setup/init")
    async def setup_init(admin: str = Depends(require_admin)):
        """Generate a fresh ES256 key pair for JWT_PRIVATE_KEY / JWT_PUBLIC_KEY"""
        private_key, public_key = generate_es256_key_pair()
        logger.info(f"Signing key pair generated by {admin}")
        return {
            "message": "Setup successful. Store these keys in JWT_PRIVATE_KEY and JWT_PUBLIC_KEY.",
            "jwt_private_key": private_key_to_pem(private_key),
            "jwt_public_key": public_key_to_pem(public_key),
        }

    @app.post("/admin/client/register", dependencies=[Depends(rate_limit)])
    async def admin_client_register(request: Request, admin: str = Depends(require_admin)):
        """Register an OAuth client"""
        client_request = await _parse_body(request, ClientRegistrationRequest)
        client = await registry.register_client(client_request)
        return {"message": "Client registered successfully", "clientId": client.client_id}

    @app.get("/admin/client/list")
    async def admin_client_list(admin: str = Depends(require_admin)):
        """List OAuth clients"""
        return await registry.list_clients()

    @app.delete("/admin/client/delete/{client_id}")
    async def admin_client_delete(client_id: str, admin: str = Depends(require_admin)):
        """Delete an OAuth client"""
        if not await registry.delete_client(client_id):
            raise HTTPException(status_code=404, detail="Client not found")
        return {"message": "Client deleted successfully", "clientId": client_id}

    @app.post("/admin/provider/register", response_model=ProviderRegistrationResponse,
              dependencies=[Depends(rate_limit)])
    async def admin_provider_register(request: Request, admin: str = Depends(require_admin)):
        """Register an identity verifier; the private key is only returned here"""
        provider_request = await _parse_body(request, ProviderRegistrationRequest)
        response = await registry.register_provider(provider_request)
        return JSONResponse(content=response.model_dump(), headers=NO_STORE_HEADERS)

    @app.get("/admin/provider/list")
    async def admin_provider_list(admin: str = Depends(require_admin)):
        """List identity verifiers"""
        return await registry.list_providers()

    @app.delete("/admin/provider/delete/{provider_id}")
    async def admin_provider_delete(provider_id: str, admin: str = Depends(require_admin)):
        """Delete an identity verifier"""
        if not await registry.delete_provider(provider_id):
            raise HTTPException(status_code=404, detail="Provider not found")
        return {"message": "Provider deleted successfully", "providerId": provider_id}

    return app


async def _parse_body(request: Request, model):
    """Validate a JSON body, reporting problems as invalid_request"""
    try:
        body = await request.json()
    except ValueError:
        raise OAuthError("invalid_request", "Request body must be JSON")
    try:
        return model.model_validate(body)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise OAuthError("invalid_request", f"{location}: {first['msg']}" if location else first["msg"])


if __name__ == "__main__":
    config = Config()

    print(f"Starting bbauth server v{VERSION}")
    print(f"Environment: {config.environment}")
    print(f"Issuer: {config.issuer_url}")
    print(f"Discovery: {config.issuer_url}/.well-known/openid-configuration")

    uvicorn.run(
        "main:create_app",
        factory=True,
        host=config.host,
        port=config.port,
        reload=config.is_development,
        log_level=config.log_level.lower(),
        access_log=True,
    )
