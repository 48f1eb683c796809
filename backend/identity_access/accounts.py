"""
Account flows against the platform identity service.

Scope:
    Student signup via e-mail OTP, password sign-in per portal (student or
    admin), sign-out, and password recovery. All protocol work is done by
    the platform; this module shapes calls and maps failures to short codes.

Clients:
    Stateful auth calls (verify_otp, set_session, update_user) mutate the
    client's session, so each flow uses a fresh anon client from
    `client_factory`. Profile rows are written through the service catalog.

Errors:
    `AuthError(code)`; `AUTH_MESSAGES[code]` holds the user-facing text.
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from backend.documents.models import LEVELS
from backend.documents.ports import CatalogProtocol
from backend.identity_access.domain import DEFAULT_ROLE, normalize_role, validate_password
from backend.identity_access.session import SessionContext, SessionProvider
from backend.storage.config import PROFILES_TABLE

logger = logging.getLogger("docshare.identity_access")

RECAPTCHA_VERIFY_URL = "https://www.google.com/recaptcha/api/siteverify"
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

AUTH_MESSAGES = {
    "invalid_email": "Please enter a valid email address.",
    "invalid_name": "Please enter your full name.",
    "invalid_level": "Please select your level.",
    "weak_password": "Password must be at least 8 characters and include uppercase, lowercase, a number and a special character.",
    "otp_send_failed": "Could not send the verification code. Please try again.",
    "invalid_otp": "Invalid or expired verification code.",
    "signup_failed": "Account setup failed. Please try again.",
    "invalid_credentials": "Invalid email or password.",
    "recaptcha_failed": "Please complete the reCAPTCHA verification.",
    "reset_link_expired": "Your password reset link has expired. Please request a new one.",
    "reset_link_invalid": "Your password reset link is invalid or has expired. Please request a new one.",
    "missing_recovery_token": "Missing password reset token. Please use the link from your email.",
    "reset_failed": "Could not update your password. Please request a new reset link.",
}


class AuthError(Exception):
    def __init__(self, code: str):
        self.code = code
        super().__init__(code)

    @property
    def message(self) -> str:
        return AUTH_MESSAGES.get(self.code, self.code)


@dataclass(frozen=True)
class SignInResult:
    user_id: str
    email: str
    role: str
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class RecoveryParams:
    """Fields carried by a password recovery link (query or fragment)."""

    access_token: str = ""
    refresh_token: str = ""
    error: str = ""
    error_code: str = ""
    error_description: str = ""


ClientFactory = Callable[[], Awaitable[Any]]
HttpFactory = Callable[[], httpx.AsyncClient]


def _attr(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _check_email(email: str) -> str:
    email = (email or "").strip().lower()
    if not _EMAIL_RE.match(email):
        raise AuthError("invalid_email")
    return email


def recovery_error_code(params: RecoveryParams) -> Optional[str]:
    """Map an error-carrying recovery link to an AuthError code, or None."""
    if not (params.error or params.error_code):
        return None
    if params.error_code == "otp_expired":
        return "reset_link_expired"
    return "reset_link_invalid"


class AccountService:
    """
    Parameters:
        client_factory: coroutine returning a fresh anon supabase client.
        sessions: provider whose local revocation list sign-out updates.
        catalog: service-role catalog for the `profiles` table.
        supabase_url / anon_key: used for the direct REST password update.
        recaptcha_secret: when set, sign-in requires a verified token.
        http_factory: builds the httpx client for REST calls.
    """

    def __init__(
        self,
        *,
        client_factory: ClientFactory,
        sessions: SessionProvider,
        catalog: CatalogProtocol,
        supabase_url: str,
        anon_key: str,
        recaptcha_secret: Optional[str] = None,
        http_factory: HttpFactory = lambda: httpx.AsyncClient(timeout=10.0),
    ):
        self._client_factory = client_factory
        self._sessions = sessions
        self._catalog = catalog
        self._supabase_url = (supabase_url or "").rstrip("/")
        self._anon_key = anon_key or ""
        self._recaptcha_secret = recaptcha_secret if recaptcha_secret is not None else os.getenv("RECAPTCHA_SECRET_KEY")
        self._http_factory = http_factory

    # --- signup ---------------------------------------------------------------

    async def start_student_signup(self, email: str) -> None:
        email = _check_email(email)
        client = await self._client_factory()
        try:
            await client.auth.sign_in_with_otp({"email": email, "options": {"should_create_user": True}})
        except Exception as exc:
            logger.warning("otp send failed: %s", type(exc).__name__)
            raise AuthError("otp_send_failed") from exc

    async def verify_signup(self, *, email: str, otp: str, password: str, name: str, level: str) -> SignInResult:
        email = _check_email(email)
        name = (name or "").strip()
        if not name or len(name) > 100:
            raise AuthError("invalid_name")
        if level not in LEVELS:
            raise AuthError("invalid_level")
        if not validate_password(password):
            raise AuthError("weak_password")
        client = await self._client_factory()
        try:
            resp = await client.auth.verify_otp({"email": email, "token": (otp or "").strip(), "type": "email"})
        except Exception as exc:
            logger.info("otp verification rejected: %s", type(exc).__name__)
            raise AuthError("invalid_otp") from exc
        user, session = _attr(resp, "user"), _attr(resp, "session")
        if user is None or session is None:
            raise AuthError("invalid_otp")
        try:
            await client.auth.update_user(
                {"password": password, "data": {"name": name, "level": level, "role": DEFAULT_ROLE}}
            )
        except Exception as exc:
            logger.warning("password setup failed after otp: %s", type(exc).__name__)
            raise AuthError("signup_failed") from exc
        user_id = str(_attr(user, "id"))
        try:
            await self._catalog.insert(
                PROFILES_TABLE,
                {"id": user_id, "email": email, "name": name, "level": level, "role": DEFAULT_ROLE},
            )
        except Exception as exc:
            # The account exists at this point; a missing profile is repaired on next edit.
            logger.error("profile insert failed for new user=%s: %s", user_id, type(exc).__name__)
        logger.info("student signup completed: user=%s", user_id)
        return SignInResult(
            user_id=user_id,
            email=email,
            role=DEFAULT_ROLE,
            access_token=str(_attr(session, "access_token") or ""),
            refresh_token=str(_attr(session, "refresh_token") or ""),
        )

    # --- sign in / out --------------------------------------------------------

    async def verify_recaptcha(self, token: Optional[str]) -> bool:
        """Return True when reCAPTCHA is disabled or Google accepts the token."""
        if not self._recaptcha_secret:
            return True
        if not token:
            return False
        try:
            async with self._http_factory() as http:
                resp = await http.post(RECAPTCHA_VERIFY_URL, data={"secret": self._recaptcha_secret, "response": token})
            return bool(resp.status_code == 200 and resp.json().get("success"))
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("recaptcha verification unavailable: %s", type(exc).__name__)
            return False

    async def sign_in(
        self, *, email: str, password: str, expected_role: str, recaptcha_token: Optional[str] = None
    ) -> SignInResult:
        email = _check_email(email)
        if not await self.verify_recaptcha(recaptcha_token):
            raise AuthError("recaptcha_failed")
        client = await self._client_factory()
        try:
            resp = await client.auth.sign_in_with_password({"email": email, "password": password or ""})
        except Exception as exc:
            logger.info("sign-in rejected: %s", type(exc).__name__)
            raise AuthError("invalid_credentials") from exc
        user, session = _attr(resp, "user"), _attr(resp, "session")
        if user is None or session is None:
            raise AuthError("invalid_credentials")
        user_id = str(_attr(user, "id"))
        rows = await self._catalog.select(PROFILES_TABLE, eq={"id": user_id}, limit=1)
        metadata = _attr(user, "user_metadata") or {}
        role = normalize_role((rows[0].get("role") if rows else None) or metadata.get("role"))
        if role != normalize_role(expected_role):
            logger.info("sign-in for wrong portal: user=%s role=%s portal=%s", user_id, role, expected_role)
            try:
                await client.auth.sign_out()
            except Exception as exc:
                logger.warning("sign-out after portal mismatch failed: %s", type(exc).__name__)
            raise AuthError("invalid_credentials")
        return SignInResult(
            user_id=user_id,
            email=email,
            role=role,
            access_token=str(_attr(session, "access_token") or ""),
            refresh_token=str(_attr(session, "refresh_token") or ""),
        )

    async def sign_out(self, session: SessionContext) -> None:
        """Revoke the token on the platform (best-effort) and locally (always)."""
        try:
            client = await self._client_factory()
            await client.auth.admin.sign_out(session.access_token)
        except Exception as exc:
            logger.warning("platform sign-out failed: %s", type(exc).__name__)
        finally:
            self._sessions.invalidate(session.access_token)

    # --- password recovery ----------------------------------------------------

    async def send_password_reset(self, email: str, *, redirect_to: Optional[str] = None) -> None:
        """Send a recovery e-mail. Unknown addresses are not revealed to the caller."""
        email = _check_email(email)
        redirect_to = redirect_to or os.getenv("PASSWORD_RESET_REDIRECT_URL") or None
        client = await self._client_factory()
        options = {"redirect_to": redirect_to} if redirect_to else {}
        try:
            await client.auth.reset_password_for_email(email, options)
        except Exception as exc:
            logger.warning("password reset e-mail failed: %s", type(exc).__name__)

    async def _update_password_via_session(self, params: RecoveryParams, new_password: str) -> None:
        client = await self._client_factory()
        await client.auth.set_session(params.access_token, params.refresh_token)
        await client.auth.update_user({"password": new_password})

    async def _update_password_via_rest(self, params: RecoveryParams, new_password: str) -> None:
        async with self._http_factory() as http:
            resp = await http.put(
                f"{self._supabase_url}/auth/v1/user",
                headers={"apikey": self._anon_key, "Authorization": f"Bearer {params.access_token}"},
                json={"password": new_password},
            )
        if resp.status_code != 200:
            raise AuthError("reset_failed")

    async def reset_password(self, params: RecoveryParams, new_password: str) -> None:
        """Set a new password from a recovery link.

        Tries the SDK session first and falls back to a direct REST update.
        """
        code = recovery_error_code(params)
        if code:
            raise AuthError(code)
        if not params.access_token:
            raise AuthError("missing_recovery_token")
        if not validate_password(new_password):
            raise AuthError("weak_password")
        if params.refresh_token:
            try:
                await self._update_password_via_session(params, new_password)
                logger.info("password reset via session")
                return
            except Exception as exc:
                logger.warning("session password reset failed, trying REST: %s", type(exc).__name__)
        try:
            await self._update_password_via_rest(params, new_password)
        except httpx.HTTPError as exc:
            logger.warning("REST password reset failed: %s", type(exc).__name__)
            raise AuthError("reset_failed") from exc
        logger.info("password reset via REST")


__all__ = [
    "AUTH_MESSAGES",
    "AuthError",
    "SignInResult",
    "RecoveryParams",
    "recovery_error_code",
    "AccountService",
]
