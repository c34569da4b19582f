"""
Tenant and Request Context

A TenantContext is the immutable, already-resolved view of the merchant a
request acts for. A RequestContext pairs it with the correlation id so every
pipeline step logs against the same request.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from app.config import Settings, get_settings

logger = logging.getLogger(__name__)

VALID_ENVIRONMENTS = ("sandbox", "production")


def normalize_environment(value: Optional[str]) -> str:
    """Normalize to 'sandbox' or 'production' (default production)."""
    if value and value.strip().lower() == "sandbox":
        return "sandbox"
    return "production"


def mask_token(token: Optional[str]) -> str:
    """Mask an access token for logging."""
    if not token:
        return "none"
    if len(token) < 12:
        return "***"
    return f"{token[:4]}...{token[-4:]}"


@dataclass(frozen=True)
class TenantContext:
    """Per-request tenant record. Never mutated in flight."""

    tenant_id: str
    access_token: Optional[str]
    location_id: Optional[str]
    environment: str = "production"
    agent_id: Optional[str] = None
    merchant_id: Optional[str] = None
    timezone: str = "America/New_York"
    # Seller tokens may modify any booking at the location. Agents acting with
    # buyer-level scope send X-Seller-Level-Writes: false to enforce ledger ownership.
    supports_seller_level_writes: bool = True
    business_name: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "environment", normalize_environment(self.environment))

    @property
    def client_key(self) -> str:
        """Cache key for the client factory: token and environment."""
        return f"{self.access_token or 'anonymous'}:{self.environment}"

    @property
    def owner_id(self) -> str:
        """Identity recorded as the owning agent in the booking ledger."""
        return self.agent_id or self.tenant_id

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "TenantContext":
        """Default tenant built from environment configuration."""
        config = config or get_settings()
        return cls(
            tenant_id="default",
            agent_id=config.default_agent_id,
            access_token=config.square_access_token,
            location_id=config.square_location_id,
            merchant_id=config.square_merchant_id,
            environment=config.square_environment,
            timezone=config.default_timezone,
        )

    def to_log_dict(self) -> dict[str, Any]:
        """Loggable view with the token masked."""
        return {
            "tenantId": self.tenant_id,
            "agentId": self.agent_id,
            "locationId": self.location_id,
            "merchantId": self.merchant_id,
            "environment": self.environment,
            "token": mask_token(self.access_token),
        }

    def __repr__(self) -> str:
        return (
            f"<TenantContext(id={self.tenant_id}, agent={self.agent_id}, "
            f"env={self.environment}, location={self.location_id})>"
        )


@dataclass
class RequestContext:
    """Correlation id and tenant passed through a booking pipeline."""

    correlation_id: str
    tenant: TenantContext
    log: logging.Logger = field(default=logger, repr=False)

    def event(self, name: str, **attrs: Any) -> None:
        """Log a structured event line for this request."""
        parts = [f"{key}: {value}" for key, value in attrs.items()]
        suffix = " | " + " | ".join(parts) if parts else ""
        self.log.info(
            f"{name} | correlation_id: {self.correlation_id} | "
            f"tenant: {self.tenant.tenant_id}{suffix}"
        )

    def warn(self, message: str) -> None:
        self.log.warning(f"{message} | correlation_id: {self.correlation_id}")
