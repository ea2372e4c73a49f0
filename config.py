import os
import logging
from typing import List, Optional

logger = logging.getLogger(__name__)

class Config:
    """Configuration management for the bbauth server"""

    def __init__(self):
        # Server configuration
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = int(os.getenv("PORT", 8000))
        self.environment = os.getenv("ENVIRONMENT", "production")
        self.issuer_url = os.getenv("ISSUER_URL", "http://localhost:8000").rstrip("/")

        # External identity verifier (default provider)
        self.verifier_url = os.getenv("VERIFIER_URL", "")

        # Security configuration
        self.admin_token = os.getenv("ADMIN_TOKEN", "")
        self.jwt_private_key = self._read_pem("JWT_PRIVATE_KEY")
        self.jwt_public_key = self._read_pem("JWT_PUBLIC_KEY")
        self.allowed_origins = self._parse_allowed_origins()

        # Rate limiting configuration
        self.rate_limit_enabled = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
        self.rate_limit_requests = int(os.getenv("RATE_LIMIT_REQUESTS", 60))
        self.rate_limit_window = int(os.getenv("RATE_LIMIT_WINDOW", 60))  # 1 minute

        # OAuth configuration
        self.session_ttl = int(os.getenv("SESSION_TTL", 600))  # 10 minutes
        self.oauth_code_expiry = int(os.getenv("OAUTH_CODE_EXPIRY", 600))  # 10 minutes
        self.oauth_token_expiry = int(os.getenv("OAUTH_TOKEN_EXPIRY", 3600))  # 1 hour
        self.oauth_refresh_token_expiry = int(os.getenv("OAUTH_REFRESH_TOKEN_EXPIRY", 2592000))  # 30 days
        self.scopes_supported = os.getenv("SCOPES_SUPPORTED", "openid email drive.readonly gmail.send").split()

        # Storage configuration
        self.redis_url = os.getenv("REDIS_URL")  # Optional Redis for production

        # Cleanup configuration (in-memory store only)
        self.cleanup_interval = int(os.getenv("CLEANUP_INTERVAL", 300))  # 5 minutes

        # Logging configuration
        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        self.log_format = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        self._validate_config()

    @staticmethod
    def _read_pem(name: str) -> Optional[str]:
        """Read a PEM value from the environment, accepting escaped newlines"""
        value = os.getenv(name)
        if not value:
            return None
        return value.replace("\\n", "\n")

    def _parse_allowed_origins(self) -> List[str]:
        """Parse allowed origins from environment variable"""
        origins_str = os.getenv("ALLOWED_ORIGINS", "*")
        if origins_str == "*":
            return ["*"]
        return [origin.strip() for origin in origins_str.split(",") if origin.strip()]

    def _validate_config(self):
        """Validate configuration values"""
        if self.environment == "production":
            if not self.admin_token or len(self.admin_token) < 32:
                raise ValueError("ADMIN_TOKEN must be set to at least 32 characters in production")

            if not self.issuer_url.startswith("https://"):
                raise ValueError("ISSUER_URL must use HTTPS in production")

            if not self.jwt_private_key or not self.jwt_public_key:
                raise ValueError("JWT_PRIVATE_KEY and JWT_PUBLIC_KEY must be set in production")

            if not self.verifier_url:
                raise ValueError("VERIFIER_URL must be set in production")

        elif not self.jwt_private_key or not self.jwt_public_key:
            logger.warning("JWT key pair not configured - an ephemeral key pair will be generated")

        if bool(self.jwt_private_key) != bool(self.jwt_public_key):
            raise ValueError("JWT_PRIVATE_KEY and JWT_PUBLIC_KEY must be set together")

        if self.session_ttl < 60 or self.session_ttl > 3600:
            raise ValueError("SESSION_TTL must be between 60 and 3600 seconds")

        if self.oauth_code_expiry < 30 or self.oauth_code_expiry > 600:
            raise ValueError("OAUTH_CODE_EXPIRY must be between 30 and 600 seconds")

        if self.oauth_token_expiry < 300:  # 5 minutes minimum
            raise ValueError("OAUTH_TOKEN_EXPIRY must be at least 300 seconds")

        if self.rate_limit_requests < 1 or self.rate_limit_window < 1:
            raise ValueError("RATE_LIMIT_REQUESTS and RATE_LIMIT_WINDOW must be positive")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode"""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode"""
        return self.environment == "production"
