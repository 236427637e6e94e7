"""Pydantic schemas for the rate-limit endpoints."""

from pydantic import BaseModel, Field, model_validator


class RateLimitCheckRequest(BaseModel):
    """Body of POST /api/v1/rate-limit/check."""

    identifier: str = Field(..., min_length=1, max_length=255)
    rule: str = Field(..., min_length=1, max_length=50, examples=["api_conversation"])
    increment: bool = True
    user_id: str | None = Field(default=None, max_length=100)
    endpoint: str | None = Field(default=None, max_length=255)


class BlockIPRequest(BaseModel):
    """Body of POST /api/v1/rate-limit/block (admin)."""

    ip_address: str = Field(..., min_length=1, max_length=45)
    reason: str = Field(default="Manual block", max_length=255)
    duration_hours: float = Field(default=24, gt=0)
    permanent: bool = False


class UnblockIPRequest(BaseModel):
    ip_address: str = Field(..., min_length=1, max_length=45)


class ResetRequest(BaseModel):
    """Body of POST /api/v1/rate-limit/reset (admin).

    At least one of identifier and rule narrows the reset; use
    all_entries=true to clear every counter.
    """

    identifier: str | None = None
    rule: str | None = None
    all_entries: bool = False

    @model_validator(mode="after")
    def require_scope(self) -> "ResetRequest":
        if not self.identifier and not self.rule and not self.all_entries:
            raise ValueError("identifier, rule or all_entries is required")
        return self
