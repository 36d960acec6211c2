"""Authentication request and response schemas."""

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    """Credentials submitted to the login endpoint."""

    username: str = Field(..., min_length=1, max_length=255, description="Directory username")
    password: str = Field(..., min_length=1, max_length=1024, description="Plain-text password")
    csrf_token: str | None = Field(None, description="Token issued for the login action")


class CsrfTokenResponse(BaseModel):
    """Token handed to scripts that submit forms via AJAX."""

    token: str = Field(..., description="64 hex character one-time token")
    name: str = Field(..., description="Form field name the token is expected in")
    action: str = Field(..., description="Action the token is bound to")


class SessionInfoResponse(BaseModel):
    """Public view of an authenticated session."""

    user_id: str
    username: str
    display_name: str = ""
    groups: list[str] = Field(default_factory=list)
    login_time: float | None = None
    last_activity: float
    session_timeout: int
    time_remaining: int
