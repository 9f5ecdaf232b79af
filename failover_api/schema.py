from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class LoginRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=512)


class RestoreRequest(BaseModel):
    proxied: bool | None = Field(None, description="Override the primary IP's CDN flag")


class DNSRecordRequest(BaseModel):
    """Record body passed through to the DNS provider; unknown provider fields are kept."""

    model_config = ConfigDict(extra="allow")

    type: str | None = Field(None, max_length=16)
    name: str | None = Field(None, max_length=255)
    content: str | None = Field(None, max_length=4096)
    ttl: int | None = Field(None, ge=1)
    proxied: bool | None = None
