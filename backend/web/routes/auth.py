"""
Authentication-related FastAPI routes (router-only module).

Why:
    Keep account endpoints in a dedicated router. The identity protocol runs
    on the platform; these handlers validate input, call `AccountService`
    and manage the `docshare_session` cookie.

Notes:
    - Tokens are returned in the body as well so non-browser clients can use
      bearer authentication.
    - ALLOWED_REGISTRATION_DOMAINS (comma-separated, e.g. "@uni.edu.ng")
      restricts student signup; empty means no restriction.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from backend.identity_access.accounts import AccountService, AuthError, RecoveryParams, SignInResult
from backend.web.auth_utils import SESSION_COOKIE, cookie_opts
from backend.web.config import get_environment
from backend.web.storage_wiring import get_platform

from .security import _json_private, _private_error, csrf_rejected

auth_router = APIRouter(tags=["Auth"])  # explicit paths, no prefix
logger = logging.getLogger("docshare.web.auth")

SESSION_MAX_AGE_SECONDS = 3600


class SignupPayload(BaseModel):
    email: str = ""


class SignupVerifyPayload(BaseModel):
    email: str = ""
    otp: str = ""
    password: str = ""
    name: str = ""
    level: str = ""


class LoginPayload(BaseModel):
    email: str = ""
    password: str = ""
    portal: str = "student"
    recaptcha_token: Optional[str] = None


class ForgotPasswordPayload(BaseModel):
    email: str = ""


class ResetPasswordPayload(BaseModel):
    password: str = ""
    access_token: str = ""
    refresh_token: str = ""
    error: str = ""
    error_code: str = ""
    error_description: str = ""


def _parse_allowed_registration_domains(raw: str | None) -> set[str]:
    """Parse ALLOWED_REGISTRATION_DOMAINS into a normalized set like {"@uni.edu"}."""
    if not raw:
        return set()
    return {part.strip().lower() for part in str(raw).split(",") if part.strip()}


def _is_allowed_registration_email(email: str, allowed_domains: set[str]) -> bool:
    if not allowed_domains:
        return True
    normalized = (email or "").strip().lower()
    if "@" not in normalized:
        return False
    domain = "@" + normalized.rsplit("@", 1)[1]
    return domain in allowed_domains


def _accounts() -> Optional[AccountService]:
    return get_platform().accounts


def _auth_unavailable() -> JSONResponse:
    return _private_error({"error": "auth_unavailable"}, status_code=503)


def _auth_error(exc: AuthError) -> JSONResponse:
    status = 401 if exc.code == "invalid_credentials" else 400
    return _private_error({"error": exc.code, "detail": exc.message}, status_code=status)


def _signed_in_response(result: SignInResult, *, status_code: int) -> JSONResponse:
    resp = _json_private(
        {
            "user_id": result.user_id,
            "email": result.email,
            "role": result.role,
            "access_token": result.access_token,
            "refresh_token": result.refresh_token,
        },
        status_code=status_code,
    )
    resp.set_cookie(
        SESSION_COOKIE,
        result.access_token,
        max_age=SESSION_MAX_AGE_SECONDS,
        path="/",
        **cookie_opts(get_environment()),
    )
    return resp


@auth_router.post("/auth/signup")
async def signup_start(payload: SignupPayload):
    """Send an e-mail OTP to start student registration."""
    accounts = _accounts()
    if accounts is None:
        return _auth_unavailable()
    allowed = _parse_allowed_registration_domains(os.getenv("ALLOWED_REGISTRATION_DOMAINS"))
    if not _is_allowed_registration_email(payload.email, allowed):
        detail = "Registration requires a school e-mail address."
        if allowed:
            detail += " Allowed domains: " + ", ".join(sorted(allowed))
        return _private_error({"error": "invalid_email_domain", "detail": detail}, status_code=400)
    try:
        await accounts.start_student_signup(payload.email)
    except AuthError as exc:
        return _auth_error(exc)
    return _json_private({"status": "otp_sent"}, status_code=202)


@auth_router.post("/auth/signup/verify")
async def signup_verify(payload: SignupVerifyPayload):
    accounts = _accounts()
    if accounts is None:
        return _auth_unavailable()
    try:
        result = await accounts.verify_signup(
            email=payload.email,
            otp=payload.otp,
            password=payload.password,
            name=payload.name,
            level=payload.level,
        )
    except AuthError as exc:
        return _auth_error(exc)
    return _signed_in_response(result, status_code=201)


@auth_router.post("/auth/login")
async def login(payload: LoginPayload):
    """Password sign-in for the student or admin portal."""
    accounts = _accounts()
    if accounts is None:
        return _auth_unavailable()
    try:
        result = await accounts.sign_in(
            email=payload.email,
            password=payload.password,
            expected_role=payload.portal,
            recaptcha_token=payload.recaptcha_token,
        )
    except AuthError as exc:
        return _auth_error(exc)
    logger.info("signed in: user=%s role=%s", result.user_id, result.role)
    return _signed_in_response(result, status_code=200)


@auth_router.post("/auth/logout")
async def logout(request: Request):
    rejected = csrf_rejected(request)
    if rejected is not None:
        return rejected
    session = getattr(request.state, "session", None)
    accounts = _accounts()
    if session is not None:
        if accounts is not None:
            await accounts.sign_out(session)
        else:
            get_platform().sessions.invalidate(session.access_token)
    resp = Response(status_code=204, headers={"Cache-Control": "private, no-store"})
    resp.delete_cookie(SESSION_COOKIE, path="/", **cookie_opts(get_environment()))
    return resp


@auth_router.post("/auth/forgot-password")
async def forgot_password(payload: ForgotPasswordPayload):
    """Request a recovery e-mail; the response does not reveal whether the account exists."""
    accounts = _accounts()
    if accounts is None:
        return _auth_unavailable()
    try:
        await accounts.send_password_reset(payload.email)
    except AuthError as exc:
        return _auth_error(exc)
    return _json_private({"status": "reset_email_sent"}, status_code=202)


@auth_router.post("/auth/reset-password")
async def reset_password(payload: ResetPasswordPayload):
    accounts = _accounts()
    if accounts is None:
        return _auth_unavailable()
    params = RecoveryParams(
        access_token=payload.access_token,
        refresh_token=payload.refresh_token,
        error=payload.error,
        error_code=payload.error_code,
        error_description=payload.error_description,
    )
    try:
        await accounts.reset_password(params, payload.password)
    except AuthError as exc:
        return _auth_error(exc)
    return _json_private({"status": "password_updated"})
