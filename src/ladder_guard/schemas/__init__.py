# src/ladder_guard/schemas/__init__.py
"""
Pydantic schemas for API request/response models.
"""

from .auth import CsrfTokenResponse, LoginRequest, SessionInfoResponse

__all__ = ["CsrfTokenResponse", "LoginRequest", "SessionInfoResponse"]
