"""
Configuration and startup security checks for docshare.

Why: Students and staff share documents through a service-role client; an
accidental insecure deployment would expose every private upload. This module
provides a single guard that enforces minimal production safety constraints
without burdening local development.

Permissions: The caller needs no special privileges. The function simply reads
environment variables and raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

import os


def _is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def get_environment() -> str:
    return (os.getenv("DOCSHARE_ENV", "dev") or "dev").strip().lower()


def ensure_secure_config_on_startup() -> None:
    """Fail fast on insecure production configuration.

    Checks (prod-like environments only):
    - Supabase Service Role key must be set and not a known dummy placeholder.
    - SUPABASE_URL must use https.
    - SUPABASE_ANON_KEY must be set (account flows use it).
    """

    if not _is_prod_like(get_environment()):
        return  # dev/test remain permissive

    srole = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "").strip()
    if not srole or srole.upper() == "DUMMY_DO_NOT_USE":
        raise SystemExit(
            "Refusing to start: SUPABASE_SERVICE_ROLE_KEY is unset or a dummy placeholder in production."
        )

    url = os.getenv("SUPABASE_URL", "").strip()
    if not url.lower().startswith("https://"):
        raise SystemExit("Refusing to start: SUPABASE_URL must be an https URL in production.")

    if not os.getenv("SUPABASE_ANON_KEY", "").strip():
        raise SystemExit("Refusing to start: SUPABASE_ANON_KEY is unset in production.")
