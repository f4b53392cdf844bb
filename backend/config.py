"""
Configuration - Single Source of Settings
==========================================
Immutable settings value built once at process start and handed to every
component constructor. Nothing below the API layer reads os.environ.

Also owns the structlog setup shared by all components.
"""

import logging
import os
from typing import Mapping, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# LMN ELIGIBILITY
# =============================================================================

# Non-therapeutic supplies never appear on a Letter of Medical Necessity.
# Unknown SKUs resolve to "uncategorized" and are excluded as well.
DEFAULT_LMN_EXCLUDED_CATEGORIES = frozenset({"accessory", "uncategorized"})


# =============================================================================
# SETTINGS
# =============================================================================

class Settings(BaseModel):
    """Process-wide configuration. Frozen: build a new one instead of mutating."""

    model_config = ConfigDict(frozen=True)

    # Storage
    database_url: Optional[str] = None
    db_min_pool_size: int = 5
    db_max_pool_size: int = 20

    # Stripe (card_direct)
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_webhook_tolerance_seconds: int = 300

    # Authorize.net (card_gateway)
    authorize_net_api_login_id: Optional[str] = None
    authorize_net_transaction_key: Optional[str] = None
    authorize_net_signature_key: Optional[str] = None
    authorize_net_api_url: str = "https://apitest.authorize.net/xml/v1/request.api"

    # Affirm (bnpl_a)
    affirm_public_key: Optional[str] = None
    affirm_private_key: Optional[str] = None
    affirm_api_url: str = "https://sandbox.affirm.com"

    # Klarna (bnpl_b)
    klarna_api_key: Optional[str] = None
    klarna_api_secret: Optional[str] = None
    klarna_api_url: str = "https://api.playground.klarna.com"
    klarna_purchase_country: str = "US"

    # Email (Resend)
    resend_api_key: Optional[str] = None
    resend_api_url: str = "https://api.resend.com"
    from_email: str = "CULTR <onboarding@resend.dev>"

    # HTTP surface
    frontend_url: str = "http://localhost:3000"
    internal_api_key: Optional[str] = None

    # Time budgets
    post_materialization_budget_seconds: float = 5.0
    provider_timeout_seconds: float = 8.0

    # Documents
    default_currency: str = "USD"
    lmn_excluded_categories: frozenset[str] = Field(default=DEFAULT_LMN_EXCLUDED_CATEGORIES)

    # Backfill loop
    backfill_enabled: bool = True
    backfill_interval_seconds: int = 300
    backfill_batch_size: int = 25

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Read every setting from the environment exactly once."""
        env = os.environ if environ is None else environ

        def opt(name: str) -> Optional[str]:
            value = env.get(name)
            return value or None

        values = {
            "database_url": opt("DATABASE_URL") or opt("POSTGRES_URL"),
            "stripe_secret_key": opt("STRIPE_SECRET_KEY"),
            "stripe_webhook_secret": opt("STRIPE_WEBHOOK_SECRET"),
            "authorize_net_api_login_id": opt("AUTHORIZE_NET_API_LOGIN_ID"),
            "authorize_net_transaction_key": opt("AUTHORIZE_NET_TRANSACTION_KEY"),
            "authorize_net_signature_key": opt("AUTHORIZE_NET_WEBHOOK_SIGNATURE_KEY"),
            "affirm_public_key": opt("AFFIRM_PUBLIC_KEY"),
            "affirm_private_key": opt("AFFIRM_PRIVATE_API_KEY"),
            "klarna_api_key": opt("KLARNA_API_KEY"),
            "klarna_api_secret": opt("KLARNA_API_SECRET"),
            "resend_api_key": opt("RESEND_API_KEY"),
            "internal_api_key": opt("INTERNAL_API_KEY"),
        }

        overrides = {
            "db_min_pool_size": ("DB_MIN_POOL_SIZE", int),
            "db_max_pool_size": ("DB_MAX_POOL_SIZE", int),
            "stripe_webhook_tolerance_seconds": ("STRIPE_WEBHOOK_TOLERANCE", int),
            "authorize_net_api_url": ("AUTHORIZE_NET_API_URL", str),
            "affirm_api_url": ("AFFIRM_API_URL", str),
            "klarna_api_url": ("KLARNA_API_URL", str),
            "resend_api_url": ("RESEND_API_URL", str),
            "from_email": ("FROM_EMAIL", str),
            "frontend_url": ("FRONTEND_URL", str),
            "post_materialization_budget_seconds": ("POST_MATERIALIZATION_BUDGET_SECONDS", float),
            "provider_timeout_seconds": ("PROVIDER_TIMEOUT_SECONDS", float),
            "backfill_interval_seconds": ("BACKFILL_INTERVAL", int),
            "backfill_batch_size": ("BACKFILL_BATCH_SIZE", int),
        }
        for field_name, (env_name, cast) in overrides.items():
            raw = opt(env_name)
            if raw is not None:
                values[field_name] = cast(raw)

        enabled = opt("BACKFILL_ENABLED")
        if enabled is not None:
            values["backfill_enabled"] = enabled.lower() == "true"

        return cls(**values)

    # -------------------------------------------------------------------------
    # Capability checks (resolved once at startup)
    # -------------------------------------------------------------------------

    @property
    def storage_configured(self) -> bool:
        return bool(self.database_url)

    @property
    def email_configured(self) -> bool:
        return bool(self.resend_api_key)

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key)


# =============================================================================
# STRUCTURED LOGGING SETUP
# =============================================================================

def configure_logging(level: int = logging.INFO) -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Reduce verbosity from HTTP client libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
