from typing import Dict, List, Literal, Optional
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# Stored records
class ClientRecord(BaseModel):
    """Registered OAuth client, stored under client:{client_id}"""
    client_id: str
    client_secret: Optional[str] = None
    redirect_uris: List[str]
    allowed_scopes: List[str]
    client_type: Literal["public", "confidential"] = "public"
    name: str = ""
    created_at: float

    @property
    def is_confidential(self) -> bool:
        return self.client_type == "confidential"

class ProviderRecord(BaseModel):
    """External identity verifier, stored under provider:{provider_id}"""
    provider_id: str
    verifier_url: str
    public_key: str = Field(..., description="Raw Ed25519 public key, base64url")
    name: str = ""
    created_at: float

class SessionRecord(BaseModel):
    """Authorize-to-callback bridge, stored under session:{session_id}"""
    session_id: str
    client_id: str
    redirect_uri: str
    scope: str
    state: str = ""
    code_challenge: str
    code_challenge_method: Literal["S256"] = "S256"
    nonce: Optional[str] = None
    provider_id: Optional[str] = None
    created_at: float
    expires_at: float

class AuthorizationCodeRecord(BaseModel):
    """One-time authorization code, stored under authcode:{code}"""
    code: str
    client_id: str
    redirect_uri: str
    scope: str
    email: str
    code_challenge: str
    code_challenge_method: Literal["S256"] = "S256"
    nonce: Optional[str] = None
    created_at: float
    expires_at: float

class RefreshTokenRecord(BaseModel):
    """Refresh token, stored under refresh:{token}"""
    token: str
    client_id: str
    email: str
    scope: str
    created_at: float
    expires_at: float

class RateLimitRecord(BaseModel):
    """Fixed-window request counter, stored under ratelimit:{identifier}"""
    count: int
    reset_at: float

# Token endpoint requests
class AuthorizationCodeGrantRequest(BaseModel):
    """authorization_code grant. Presence of fields is checked by the grant handler."""
    grant_type: Literal["authorization_code"]
    code: Optional[str] = None
    redirect_uri: Optional[str] = None
    client_id: Optional[str] = None
    code_verifier: Optional[str] = None
    client_secret: Optional[str] = None

class RefreshTokenGrantRequest(BaseModel):
    """refresh_token grant"""
    grant_type: Literal["refresh_token"]
    refresh_token: Optional[str] = None
    client_id: Optional[str] = None
    scope: Optional[str] = None

# Responses
class TokenResponse(BaseModel):
    """OAuth 2.0 Token Response"""
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    scope: str

class UserInfoResponse(BaseModel):
    """OpenID Connect UserInfo Response"""
    sub: str
    email: str
    email_verified: bool = True

class DiscoveryDocument(BaseModel):
    """OpenID Connect Discovery Document"""
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: str
    jwks_uri: str
    response_types_supported: List[str] = ["code"]
    grant_types_supported: List[str] = ["authorization_code", "refresh_token"]
    subject_types_supported: List[str] = ["public"]
    id_token_signing_alg_values_supported: List[str] = ["ES256"]
    scopes_supported: List[str]
    token_endpoint_auth_methods_supported: List[str] = ["client_secret_post", "none"]
    code_challenge_methods_supported: List[str] = ["S256"]

class JWK(BaseModel):
    """JSON Web Key"""
    kty: str
    use: str
    kid: str
    alg: str
    crv: Optional[str] = None
    x: Optional[str] = None
    y: Optional[str] = None

class JWKS(BaseModel):
    """JSON Web Key Set"""
    keys: List[JWK]

# Admin requests. Bodies use camelCase keys; snake_case is accepted too.
class ClientRegistrationRequest(BaseModel):
    """Admin client registration"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    client_id: str = Field(..., min_length=1)
    client_secret: Optional[str] = None
    redirect_uris: List[str] = Field(..., min_length=1)
    allowed_scopes: List[str] = Field(..., min_length=1)
    client_type: Literal["public", "confidential"] = "public"
    name: str = ""

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v):
        for uri in v:
            if "://" not in uri or "#" in uri:
                raise ValueError(f"Invalid redirect URI: {uri}")
        return v

    @field_validator("allowed_scopes")
    @classmethod
    def validate_scopes(cls, v):
        for scope in v:
            if not scope or " " in scope:
                raise ValueError(f"Invalid scope: {scope!r}")
        return v

    @model_validator(mode="after")
    def validate_secret_matches_type(self):
        if self.client_type == "confidential" and not self.client_secret:
            raise ValueError("clientSecret is required for confidential clients")
        if self.client_type == "public" and self.client_secret:
            raise ValueError("clientSecret must not be set for public clients")
        return self

class ProviderRegistrationRequest(BaseModel):
    """Admin provider registration"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    verifier_url: str = Field(
        ..., min_length=1,
        validation_alias=AliasChoices("verifierUrl", "verifier_url", "appsScriptUrl"),
    )
    name: str = ""

    @field_validator("verifier_url")
    @classmethod
    def validate_verifier_url(cls, v):
        if not (v.startswith("https://") or v.startswith("http://localhost") or v.startswith("http://127.0.0.1")):
            raise ValueError(f"Invalid verifier URL: {v}")
        return v

class ProviderRegistrationResponse(BaseModel):
    """Returned once; the private key is never stored"""
    message: str = "Provider registered successfully"
    provider_id: str
    private_key: str
    public_key: str

class HealthCheckResponse(BaseModel):
    """Health Check Response"""
    status: str
    service: str
    version: str
    timestamp: str
    components: Dict[str, str]
    environment: str
