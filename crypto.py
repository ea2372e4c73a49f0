"""
Cryptographic primitives for the bbauth server: base64url, random tokens,
PKCE, ES256 JWT signing and verification, JWK export and Ed25519 provider keys.
"""

import base64
import hashlib
import hmac
import logging
import secrets
from typing import Any, Dict, Optional, Tuple, Union

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519

logger = logging.getLogger(__name__)

ALGORITHM = "ES256"
PROVIDER_ID_PREFIX = "bbauth:"

PrivateKeyLike = Union[str, bytes, ec.EllipticCurvePrivateKey]
PublicKeyLike = Union[str, bytes, ec.EllipticCurvePublicKey]


# ==================== ENCODING ====================

def base64url_encode(data: bytes) -> str:
    """RFC 4648 section 5 encoding without padding"""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def base64url_decode(data: str) -> bytes:
    """Decode unpadded base64url, raising ValueError on malformed input"""
    padding = "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(data + padding)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid base64url data: {e}") from e


def random_token(length: int = 32) -> str:
    """Generate `length` random bytes, base64url encoded"""
    return base64url_encode(secrets.token_bytes(length))


# ==================== PKCE ====================

def pkce_challenge(code_verifier: str) -> str:
    """Compute the S256 code challenge for a verifier"""
    return base64url_encode(hashlib.sha256(code_verifier.encode("utf-8")).digest())


def pkce_verify(code_verifier: str, code_challenge: str, method: str) -> bool:
    """Verify a PKCE verifier against its challenge. Only S256 is accepted."""
    if method != "S256":
        return False
    if not code_verifier or not code_challenge:
        return False
    return hmac.compare_digest(pkce_challenge(code_verifier), code_challenge)


# ==================== ES256 KEYS ====================

def generate_es256_key_pair() -> Tuple[ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey]:
    private_key = ec.generate_private_key(ec.SECP256R1())
    return private_key, private_key.public_key()


def private_key_to_pem(private_key: ec.EllipticCurvePrivateKey) -> str:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def public_key_to_pem(public_key: ec.EllipticCurvePublicKey) -> str:
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def load_private_key(key: PrivateKeyLike) -> ec.EllipticCurvePrivateKey:
    """Load a P-256 private key from PEM text, PEM bytes or a key object"""
    if isinstance(key, ec.EllipticCurvePrivateKey):
        return key
    if isinstance(key, str):
        key = key.encode("ascii")
    loaded = serialization.load_pem_private_key(key, password=None)
    if not isinstance(loaded, ec.EllipticCurvePrivateKey) or not isinstance(loaded.curve, ec.SECP256R1):
        raise ValueError("JWT private key must be an EC P-256 key")
    return loaded


def load_public_key(key: PublicKeyLike) -> ec.EllipticCurvePublicKey:
    """Load a P-256 public key from PEM text, PEM bytes or a key object"""
    if isinstance(key, ec.EllipticCurvePublicKey):
        return key
    if isinstance(key, str):
        key = key.encode("ascii")
    loaded = serialization.load_pem_public_key(key)
    if not isinstance(loaded, ec.EllipticCurvePublicKey) or not isinstance(loaded.curve, ec.SECP256R1):
        raise ValueError("JWT public key must be an EC P-256 key")
    return loaded


def public_key_to_jwk(public_key: PublicKeyLike, kid: str = "default") -> Dict[str, str]:
    """Export a P-256 public key as a JSON Web Key"""
    numbers = load_public_key(public_key).public_numbers()
    return {
        "kty": "EC",
        "use": "sig",
        "kid": kid,
        "alg": ALGORITHM,
        "crv": "P-256",
        "x": base64url_encode(numbers.x.to_bytes(32, "big")),
        "y": base64url_encode(numbers.y.to_bytes(32, "big")),
    }


# ==================== JWT ====================

def sign_jwt(payload: Dict[str, Any], private_key: PrivateKeyLike) -> str:
    """Sign a payload as a compact ES256 JWT with header {alg, typ}"""
    return jwt.encode(
        payload,
        load_private_key(private_key),
        algorithm=ALGORITHM,
        headers={"typ": "JWT"},
    )


def verify_jwt(token: str, public_key: PublicKeyLike) -> Optional[Dict[str, Any]]:
    """
    Verify an ES256 JWT and return its payload.

    Returns None for anything other than exactly three segments, a bad
    signature, an undecodable payload or an `exp` in the past. Audience
    checks are left to callers.
    """
    if not isinstance(token, str) or token.count(".") != 2:
        return None

    try:
        return jwt.decode(
            token,
            load_public_key(public_key),
            algorithms=[ALGORITHM],
            options={
                "verify_aud": False,
                "verify_iat": False,
                "verify_nbf": False,
                "verify_sub": False,
                "verify_jti": False,
            },
        )
    except jwt.PyJWTError as e:
        logger.debug(f"JWT rejected: {type(e).__name__}")
        return None
    except ValueError as e:
        logger.warning(f"JWT verification key error: {e}")
        return None


# ==================== ED25519 PROVIDER KEYS ====================

def generate_ed25519_key_pair() -> Tuple[bytes, bytes]:
    """Generate an Ed25519 key pair as raw (private, public) 32-byte values"""
    private_key = ed25519.Ed25519PrivateKey.generate()
    private_raw = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_raw = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return private_raw, public_raw


def provider_id_from_public_key(public_key: bytes) -> str:
    """Provider IDs are a deterministic fingerprint of the Ed25519 public key"""
    return f"{PROVIDER_ID_PREFIX}{base64url_encode(public_key)}"
