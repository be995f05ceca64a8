"""Per-request service context passed into every core operation."""

from pydantic import BaseModel, ConfigDict, Field


class ServiceContext(BaseModel):
    """Identity and provenance of the caller of a core operation.

    Supplied by the calling layer, never derived inside the core. Tenant
    isolation is enforced by passing `tenant_id` explicitly to every query.
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: str = Field(min_length=1, description="Owning tenant identifier")
    user_id: str = Field(min_length=1, description="Acting user identifier")
    request_id: str = Field(description="Request correlation ID")
    session_id: str | None = Field(default=None, description="Optional user session ID")
    ip_address: str | None = Field(default=None, description="Client IP address for audit provenance")
    user_agent: str | None = Field(default=None, description="Client user agent for audit provenance")
