"""
Gap Advisor Backend — Auth Helpers

Authentication happens upstream (API gateway / Supabase Auth). The caller's
identity reaches this service in the X-User-Id header.
"""

from fastapi import HTTPException, Request

from advisor.config import generate_error_code, log

USER_ID_HEADER = "X-User-Id"


def get_current_user_id(request: Request) -> str | None:
    """Return the authenticated user's ID, or None if anonymous."""
    user_id = (request.headers.get(USER_ID_HEADER) or "").strip()
    return user_id or None


def require_user_id(request: Request) -> str:
    """FastAPI dependency: the caller's user ID, or 401."""
    user_id = get_current_user_id(request)
    if not user_id:
        code = generate_error_code()
        log("ERROR", "request without user id", path=request.url.path, error_code=code)
        raise HTTPException(
            status_code=401,
            detail={"message": "Sign in to continue.", "error_code": code},
        )
    return user_id
