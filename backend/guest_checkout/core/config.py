"""Application configuration loaded from environment variables.

Settings for the database, the guest payment token key material, the guest
session cookie, e-mail delivery, and admin access. Uses pydantic-settings for
validation and .env file support.
"""

from typing import Literal

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Known insecure default password that must not be used in production
_INSECURE_DEFAULT_PASSWORD = "guest_checkout_dev_password"  # nosec B105

# Used when neither an explicit encryption key nor the host auth keys are set.
# Tokens still work, but anyone who knows this constant can forge them.
FALLBACK_ENCRYPTION_KEY = "fallback-key-please-define-in-environment"  # nosec B105

SUPPORTED_ENCRYPTION_METHODS = frozenset({"aes-128-cbc", "aes-192-cbc", "aes-256-cbc"})

MIN_TOKEN_EXPIRY_DAYS = 1
MAX_TOKEN_EXPIRY_DAYS = 365

# Minimum length for secrets in production (256 bits = 32 bytes)
_MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "guest_checkout"
    database_user: str = "guest_checkout_user"
    database_password: str = _INSECURE_DEFAULT_PASSWORD

    # Application
    environment: str = "development"
    log_level: str = "INFO"
    site_name: str = "Wicket"
    site_url: str = "http://localhost:8000"
    cart_path: str = "/cart/"
    receipt_path: str = "/receipt/"

    # Host-level secrets. Their concatenation is the default token key, so
    # rotating either one invalidates every outstanding payment link.
    secure_auth_key: SecretStr = SecretStr("")
    auth_key: SecretStr = SecretStr("")

    # WICKET_GUEST_PAYMENT_ENCRYPTION_KEY / _METHOD
    wicket_guest_payment_encryption_key: SecretStr = SecretStr("")
    wicket_guest_payment_encryption_method: str = "aes-256-cbc"

    # Token policy
    token_expiry_days: int = 7
    payable_order_statuses: list[str] = ["pending", "failed", "on-hold"]
    receipt_expiry_days: int = 30

    # Guest session cookie
    session_secret: SecretStr = SecretStr("")
    guest_session_cookie_name: str = "wgp_guest_session"
    guest_session_ttl_minutes: int = 60
    guest_session_cookie_secure: bool = True
    guest_session_cookie_samesite: Literal["lax", "strict", "none"] = "lax"

    # Failed token attempts per client IP before lockout
    max_failed_token_attempts: int = 5
    failed_attempt_window_minutes: int = 15
    failed_attempt_exempt_ip_prefixes: list[str] = []

    # Admin access (bearer token for the admin AJAX endpoint)
    admin_api_key: SecretStr = SecretStr("")
    nonce_lifetime_hours: int = 24

    # Email
    email_from: str = "noreply@wicket.io"
    resend_api_key: SecretStr = SecretStr("")
    email_integration_enabled: bool = False

    # Rate Limiting
    # Format: "count/period" (e.g., "10/minute", "100/hour")
    rate_limit_admin: str = "30/minute"
    rate_limit_enabled: bool = True  # Disable for testing

    @property
    def database_url(self) -> str:
        """Async database URL for SQLAlchemy."""
        return (
            f"postgresql+asyncpg://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @property
    def database_url_sync(self) -> str:
        """Sync database URL for Alembic."""
        return (
            f"postgresql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @property
    def encryption_key(self) -> str:
        """Key material for guest payment tokens.

        Resolution order: the explicit override, then the two host auth keys
        concatenated, then the fallback constant.
        """
        explicit = self.wicket_guest_payment_encryption_key.get_secret_value()
        if explicit:
            return explicit
        host_keys = (
            self.secure_auth_key.get_secret_value() + self.auth_key.get_secret_value()
        )
        return host_keys or FALLBACK_ENCRYPTION_KEY

    @property
    def encryption_key_is_insecure(self) -> bool:
        """True when tokens are keyed with the public fallback constant."""
        return self.encryption_key == FALLBACK_ENCRYPTION_KEY

    @property
    def encryption_method(self) -> str:
        """Normalized cipher identifier."""
        return self.wicket_guest_payment_encryption_method.lower()

    @property
    def session_signing_key(self) -> str:
        """Secret used to sign guest session cookies and admin nonces.

        Falls back to the token key outside production so a bare
        development setup works without extra configuration.
        """
        return self.session_secret.get_secret_value() or self.encryption_key

    @property
    def cart_url(self) -> str:
        """Absolute URL of the cart page; payment links point here."""
        return f"{self.site_url.rstrip('/')}{self.cart_path}"

    @property
    def receipt_url(self) -> str:
        """Absolute URL of the receipt page."""
        return f"{self.site_url.rstrip('/')}{self.receipt_path}"

    @model_validator(mode="after")
    def check_production_security(self) -> "Settings":
        """Validate configuration invariants and production requirements.

        Checks:
        - Token expiry within 1..365 days (all environments)
        - Receipt expiry of at least one day (all environments)
        - Encryption method is a supported AES-CBC variant (all environments)
        - SameSite=None requires the Secure cookie flag (all environments)
        - Production must not use the fallback encryption key
        - Production must not use the default database password
        - Production requires an admin API key and session secret >= 32 chars
        """
        if not MIN_TOKEN_EXPIRY_DAYS <= self.token_expiry_days <= MAX_TOKEN_EXPIRY_DAYS:
            msg = (
                f"Token expiry must be between {MIN_TOKEN_EXPIRY_DAYS} and "
                f"{MAX_TOKEN_EXPIRY_DAYS} days. Got: {self.token_expiry_days}"
            )
            raise ValueError(msg)

        if self.receipt_expiry_days < 1:
            msg = f"Receipt expiry must be at least 1 day. Got: {self.receipt_expiry_days}"
            raise ValueError(msg)

        if self.encryption_method not in SUPPORTED_ENCRYPTION_METHODS:
            msg = (
                "WICKET_GUEST_PAYMENT_ENCRYPTION_METHOD must be one of "
                f"{sorted(SUPPORTED_ENCRYPTION_METHODS)}. "
                f"Got: {self.wicket_guest_payment_encryption_method}"
            )
            raise ValueError(msg)

        if (
            self.guest_session_cookie_samesite == "none"
            and not self.guest_session_cookie_secure
        ):
            msg = (
                "GUEST_SESSION_COOKIE_SECURE must be true when "
                "GUEST_SESSION_COOKIE_SAMESITE=none. Browsers reject "
                "SameSite=None cookies without the Secure flag."
            )
            raise ValueError(msg)

        if self.environment != "production":
            return self

        if self.encryption_key_is_insecure:
            msg = (
                "WICKET_GUEST_PAYMENT_ENCRYPTION_KEY (or SECURE_AUTH_KEY and "
                "AUTH_KEY) must be set in production. Refusing to sign payment "
                "links with the fallback key."
            )
            raise ValueError(msg)

        if self.database_password == _INSECURE_DEFAULT_PASSWORD:
            msg = (
                "DATABASE_PASSWORD must be set to a secure value in production. "
                "The default development password cannot be used."
            )
            raise ValueError(msg)

        if len(self.admin_api_key.get_secret_value()) < _MIN_SECRET_LENGTH:
            msg = (
                f"ADMIN_API_KEY must be at least {_MIN_SECRET_LENGTH} characters "
                "in production."
            )
            raise ValueError(msg)

        if len(self.session_secret.get_secret_value()) < _MIN_SECRET_LENGTH:
            msg = (
                f"SESSION_SECRET must be at least {_MIN_SECRET_LENGTH} characters "
                "in production."
            )
            raise ValueError(msg)

        return self


# Default instance read from the environment. Components take what they need
# as constructor arguments; only the app wiring reads this directly.
settings = Settings()
