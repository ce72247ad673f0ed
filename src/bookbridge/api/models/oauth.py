"""Pydantic models for the calendar connection OAuth endpoints."""

from __future__ import annotations

from pydantic import BaseModel

from bookbridge.models import CalendarProviderName


class OAuthStartResponse(BaseModel):
    """Authorization URL the user should visit to grant calendar access."""

    authorization_url: str
    state: str


class OAuthCallbackSuccess(BaseModel):
    """The code was exchanged and the default calendar is now a connection."""

    success: bool = True
    tenant_id: str
    provider: CalendarProviderName
    connection_id: str
    calendar_id: str
    calendar_name: str
