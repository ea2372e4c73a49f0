import hmac
import logging
import time
from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pydantic import ValidationError

from config import Config
from crypto import (
    generate_es256_key_pair,
    load_private_key,
    load_public_key,
    pkce_verify,
    public_key_to_jwk,
    random_token,
    sign_jwt,
    verify_jwt,
)
from models import (
    AuthorizationCodeGrantRequest,
    AuthorizationCodeRecord,
    ClientRecord,
    DiscoveryDocument,
    JWKS,
    ProviderRecord,
    RefreshTokenGrantRequest,
    RefreshTokenRecord,
    SessionRecord,
    TokenResponse,
    UserInfoResponse,
)
from store import TokenStore

logger = logging.getLogger(__name__)

# Scope tokens that disclose the verified email and therefore get an ID token
IDENTITY_SCOPES = {"openid", "email"}
EMAIL_SCOPE = "email"


class OAuthError(Exception):
    """An OAuth 2.0 error rendered as {error, error_description}"""

    def __init__(self, error: str, description: str, status_code: int = 400,
                 headers: Optional[Dict[str, str]] = None):
        super().__init__(f"{error}: {description}")
        self.error = error
        self.description = description
        self.status_code = status_code
        self.headers = headers or {}

    def to_dict(self) -> Dict[str, str]:
        return {"error": self.error, "error_description": self.description}


class AuthorizationError(OAuthError):
    """
    Authorization endpoint error. Redirected back to the client when
    `redirect_uri` is set, otherwise rendered as an error page.
    """

    def __init__(self, error: str, description: str, redirect_uri: Optional[str] = None,
                 state: Optional[str] = None):
        super().__init__(error, description)
        self.redirect_uri = redirect_uri
        self.state = state

    def redirect_url(self) -> str:
        params = self.to_dict()
        if self.state:
            params["state"] = self.state
        return append_query(self.redirect_uri, params)


def append_query(url: str, params: Mapping[str, str]) -> str:
    """Add query parameters to a URL, keeping any it already has"""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def is_redirectable_uri(uri: Optional[str]) -> bool:
    """Absolute URI without fragment (RFC 6749 section 3.1.2)"""
    if not uri:
        return False
    try:
        parts = urlsplit(uri)
    except ValueError:
        return False
    if not parts.scheme or parts.fragment:
        return False
    if parts.scheme in ("http", "https") and not parts.netloc:
        return False
    return True


def scope_tokens(scope: Optional[str]) -> list:
    return scope.split() if scope else []


class AuthManager:
    """OAuth 2.0 authorization server state machine backed by a TokenStore"""

    def __init__(self, config: Config, store: TokenStore):
        self.config = config
        self.store = store

        if config.jwt_private_key and config.jwt_public_key:
            self.private_key = load_private_key(config.jwt_private_key)
            self.public_key = load_public_key(config.jwt_public_key)
        else:
            self.private_key, self.public_key = generate_es256_key_pair()
            logger.warning("Using an ephemeral ES256 key pair - tokens will not survive a restart")

    # ==================== STORE HELPERS ====================

    async def get_client(self, client_id: str) -> Optional[ClientRecord]:
        data = await self.store.get(f"client:{client_id}")
        return ClientRecord.model_validate(data) if data else None

    async def get_provider(self, provider_id: str) -> Optional[ProviderRecord]:
        data = await self.store.get(f"provider:{provider_id}")
        return ProviderRecord.model_validate(data) if data else None

    # ==================== AUTHORIZATION ENDPOINT ====================

    async def start_authorization(self, params: Mapping[str, str]) -> str:
        """Validate an authorization request, persist a session, return the verifier redirect URL"""
        client_id = params.get("client_id")
        redirect_uri = params.get("redirect_uri")
        response_type = params.get("response_type")
        scope = params.get("scope")
        state = params.get("state") or None
        code_challenge = params.get("code_challenge")
        code_challenge_method = params.get("code_challenge_method")
        nonce = params.get("nonce") or None
        provider_id = params.get("provider_id") or None

        if not is_redirectable_uri(redirect_uri):
            raise AuthorizationError("invalid_request", "Missing or malformed redirect_uri")

        # Until the client and redirect_uri are verified, errors are shown to the user agent
        if not all([client_id, response_type, scope_tokens(scope), code_challenge, code_challenge_method]):
            client = await self.get_client(client_id) if client_id else None
            target = redirect_uri if client and redirect_uri in client.redirect_uris else None
            raise AuthorizationError("invalid_request", "Missing required parameters", target, state)

        client = await self.get_client(client_id)
        verified_target = redirect_uri if client and redirect_uri in client.redirect_uris else None

        if response_type != "code":
            raise AuthorizationError(
                "unsupported_response_type", 'Only "code" response type is supported',
                verified_target, state,
            )

        if code_challenge_method != "S256":
            raise AuthorizationError(
                "invalid_request", "Only S256 code challenge method is supported",
                verified_target, state,
            )

        if not client:
            logger.warning(f"Authorization request for unknown client {client_id}")
            raise AuthorizationError("unauthorized_client", "Invalid client_id")

        if not verified_target:
            logger.warning(f"Unregistered redirect_uri for client {client_id}: {redirect_uri}")
            raise AuthorizationError("invalid_request", "Invalid redirect_uri")

        invalid_scopes = [s for s in scope_tokens(scope) if s not in client.allowed_scopes]
        if invalid_scopes:
            raise AuthorizationError(
                "invalid_scope", f"Invalid scopes: {', '.join(invalid_scopes)}",
                verified_target, state,
            )

        verifier_url = self.config.verifier_url
        if provider_id:
            provider = await self.get_provider(provider_id)
            if provider:
                verifier_url = provider.verifier_url
            else:
                logger.warning(f"Unknown provider_id {provider_id}, using default verifier")

        if not verifier_url:
            raise OAuthError("server_error", "No identity verifier configured", 500)

        now = time.time()
        session = SessionRecord(
            session_id=random_token(),
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=scope,
            state=state or "",
            code_challenge=code_challenge,
            code_challenge_method="S256",
            nonce=nonce,
            provider_id=provider_id,
            created_at=now,
            expires_at=now + self.config.session_ttl,
        )
        await self.store.put(
            f"session:{session.session_id}", session.model_dump(), ttl=self.config.session_ttl
        )

        logger.info(f"Session created for client {client_id}")
        return append_query(verifier_url, {"session_id": session.session_id})

    # ==================== CALLBACK ENDPOINT ====================

    async def complete_callback(self, params: Mapping[str, str]) -> str:
        """Turn a verified identity into an authorization code, return the client redirect URL"""
        error = params.get("error")
        if error:
            logger.warning(f"Identity verifier returned error: {error}")
            raise OAuthError(error, params.get("error_description") or "Unknown error")

        session_id = params.get("session_id")
        email = params.get("email")
        if not session_id or not email:
            raise OAuthError("invalid_request", "Missing session_id or email")

        data = await self.store.get(f"session:{session_id}")
        if not data:
            raise OAuthError("invalid_request", "Invalid or expired session")

        session = SessionRecord.model_validate(data)
        if session.expires_at < time.time():
            raise OAuthError("invalid_request", "Session expired")

        # Single use: only the request whose delete succeeds may mint a code
        if not await self.store.delete(f"session:{session_id}"):
            logger.warning(f"Session {session_id[:8]}... consumed concurrently")
            raise OAuthError("invalid_request", "Invalid or expired session")

        now = time.time()
        auth_code = AuthorizationCodeRecord(
            code=random_token(),
            client_id=session.client_id,
            redirect_uri=session.redirect_uri,
            scope=session.scope,
            email=email,
            code_challenge=session.code_challenge,
            code_challenge_method=session.code_challenge_method,
            nonce=session.nonce,
            created_at=now,
            expires_at=now + self.config.oauth_code_expiry,
        )
        await self.store.put(
            f"authcode:{auth_code.code}", auth_code.model_dump(), ttl=self.config.oauth_code_expiry
        )

        redirect_params = {"code": auth_code.code}
        if session.state:
            redirect_params["state"] = session.state

        logger.info(f"Authorization code created for client {session.client_id}")
        return append_query(session.redirect_uri, redirect_params)

    # ==================== TOKEN ENDPOINT ====================

    async def exchange_token(self, form_data: Mapping[str, Any]) -> TokenResponse:
        """Dispatch a token request on grant_type"""
        grant_type = form_data.get("grant_type")
        if not grant_type:
            raise OAuthError("invalid_request", "Missing grant_type")

        fields = {k: v for k, v in form_data.items() if isinstance(v, str)}
        try:
            if grant_type == "authorization_code":
                return await self._authorization_code_grant(
                    AuthorizationCodeGrantRequest.model_validate(fields)
                )
            if grant_type == "refresh_token":
                return await self._refresh_token_grant(
                    RefreshTokenGrantRequest.model_validate(fields)
                )
        except ValidationError as e:
            raise OAuthError("invalid_request", f"Malformed token request: {e.errors()[0]['msg']}")

        raise OAuthError("unsupported_grant_type", "Grant type not supported")

    async def _authorization_code_grant(self, request: AuthorizationCodeGrantRequest) -> TokenResponse:
        if not all([request.code, request.redirect_uri, request.client_id, request.code_verifier]):
            raise OAuthError("invalid_request", "Missing required parameters")

        key = f"authcode:{request.code}"
        data = await self.store.get(key)
        if not data:
            raise OAuthError("invalid_grant", "Invalid or expired authorization code")

        auth_code = AuthorizationCodeRecord.model_validate(data)
        if auth_code.expires_at < time.time():
            await self.store.delete(key)
            raise OAuthError("invalid_grant", "Authorization code expired")

        if auth_code.client_id != request.client_id:
            raise OAuthError("invalid_grant", "Client ID mismatch")

        if auth_code.redirect_uri != request.redirect_uri:
            raise OAuthError("invalid_grant", "Redirect URI mismatch")

        if not pkce_verify(request.code_verifier, auth_code.code_challenge, auth_code.code_challenge_method):
            logger.warning(f"PKCE verification failed for client {request.client_id}")
            raise OAuthError("invalid_grant", "PKCE verification failed")

        client = await self.get_client(request.client_id)
        if not client:
            raise OAuthError("invalid_client", "Invalid client")

        if client.is_confidential and not hmac.compare_digest(
            (client.client_secret or "").encode(), (request.client_secret or "").encode()
        ):
            logger.warning(f"Client secret mismatch for client {client.client_id}")
            raise OAuthError("invalid_client", "Invalid client secret")

        # One-time use: the delete is the guard against concurrent redemption
        if not await self.store.delete(key):
            logger.warning(f"Authorization code {request.code[:8]}... redeemed concurrently")
            raise OAuthError("invalid_grant", "Invalid or expired authorization code")

        now = int(time.time())
        access_token = self._issue_access_token(auth_code.email, client.client_id, auth_code.scope, now)

        id_token = None
        if IDENTITY_SCOPES.intersection(scope_tokens(auth_code.scope)):
            id_claims = {
                "iss": self.config.issuer_url,
                "sub": auth_code.email,
                "aud": client.client_id,
                "iat": now,
                "exp": now + self.config.oauth_token_expiry,
                "email": auth_code.email,
                "email_verified": True,
            }
            if auth_code.nonce:
                id_claims["nonce"] = auth_code.nonce
            id_token = sign_jwt(id_claims, self.private_key)

        refresh = RefreshTokenRecord(
            token=random_token(),
            client_id=client.client_id,
            email=auth_code.email,
            scope=auth_code.scope,
            created_at=time.time(),
            expires_at=time.time() + self.config.oauth_refresh_token_expiry,
        )
        await self.store.put(
            f"refresh:{refresh.token}", refresh.model_dump(), ttl=self.config.oauth_refresh_token_expiry
        )

        logger.info(f"Access token issued for client {client.client_id}")
        return TokenResponse(
            access_token=access_token,
            expires_in=self.config.oauth_token_expiry,
            refresh_token=refresh.token,
            id_token=id_token,
            scope=auth_code.scope,
        )

    async def _refresh_token_grant(self, request: RefreshTokenGrantRequest) -> TokenResponse:
        if not request.refresh_token or not request.client_id:
            raise OAuthError("invalid_request", "Missing required parameters")

        key = f"refresh:{request.refresh_token}"
        data = await self.store.get(key)
        if not data:
            raise OAuthError("invalid_grant", "Invalid or expired refresh token")

        refresh = RefreshTokenRecord.model_validate(data)
        if refresh.expires_at < time.time():
            await self.store.delete(key)
            raise OAuthError("invalid_grant", "Refresh token expired")

        if refresh.client_id != request.client_id:
            raise OAuthError("invalid_grant", "Client ID mismatch")

        original = scope_tokens(refresh.scope)
        requested = scope_tokens(request.scope)
        if requested and not set(requested).issubset(original):
            raise OAuthError("invalid_scope", "Requested scope exceeds original scope")
        final_scope = " ".join(requested) if requested else refresh.scope

        access_token = self._issue_access_token(refresh.email, refresh.client_id, final_scope, int(time.time()))

        logger.info(f"Access token refreshed for client {refresh.client_id}")
        return TokenResponse(
            access_token=access_token,
            expires_in=self.config.oauth_token_expiry,
            scope=final_scope,
        )

    def _issue_access_token(self, subject: str, client_id: str, scope: str, now: int) -> str:
        return sign_jwt(
            {
                "iss": self.config.issuer_url,
                "sub": subject,
                "aud": client_id,
                "iat": now,
                "exp": now + self.config.oauth_token_expiry,
                "scope": scope,
            },
            self.private_key,
        )

    # ==================== RESOURCE ACCESS ====================

    def verify_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Verify an access token issued by this server and return its claims"""
        payload = verify_jwt(token, self.public_key)
        if not payload or payload.get("iss") != self.config.issuer_url or "scope" not in payload:
            return None
        return payload

    def userinfo(self, authorization: Optional[str]) -> UserInfoResponse:
        if not authorization or not authorization.startswith("Bearer "):
            raise self._bearer_error("invalid_token", "Missing or invalid Authorization header", 401)

        payload = self.verify_token(authorization[len("Bearer "):].strip())
        if not payload:
            raise self._bearer_error("invalid_token", "Invalid or expired access token", 401)

        if EMAIL_SCOPE not in scope_tokens(payload.get("scope")):
            raise self._bearer_error("insufficient_scope", "Token does not have email scope", 403)

        return UserInfoResponse(sub=payload["sub"], email=payload["sub"], email_verified=True)

    @staticmethod
    def _bearer_error(error: str, description: str, status_code: int) -> OAuthError:
        challenge = f'Bearer error="{error}", error_description="{description}"'
        return OAuthError(error, description, status_code, headers={"WWW-Authenticate": challenge})

    # ==================== DISCOVERY ====================

    def discovery_document(self) -> DiscoveryDocument:
        issuer = self.config.issuer_url
        return DiscoveryDocument(
            issuer=issuer,
            authorization_endpoint=f"{issuer}/oauth/authorize",
            token_endpoint=f"{issuer}/oauth/token",
            userinfo_endpoint=f"{issuer}/oauth/userinfo",
            jwks_uri=f"{issuer}/.well-known/jwks.json",
            scopes_supported=self.config.scopes_supported,
        )

    def jwks(self) -> JWKS:
        return JWKS.model_validate({"keys": [public_key_to_jwk(self.public_key)]})
