"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend to avoid sandbox restrictions
that can affect the Trio backend (e.g., socketpair permission errors), and
keep env-driven toggles and process-wide web state from leaking between tests.
"""
import sys
from pathlib import Path

import pytest

# Ensure `backend.*` is importable without installing the project
REPO_ROOT = Path(__file__).resolve().parents[2]
TESTS_DIR = REPO_ROOT / "backend" / "tests"
for p in (str(REPO_ROOT), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _clear_env_toggles(monkeypatch: pytest.MonkeyPatch):
    """Clear configuration toggles so each test starts from documented defaults."""
    for var in (
        "DOCSHARE_ENV",
        "DOCSHARE_TRUST_PROXY",
        "DOCUMENTS_STORAGE_BUCKET",
        "DOCUMENTS_MAX_UPLOAD_BYTES",
        "DOCUMENTS_MOBILE_MAX_UPLOAD_BYTES",
        "FINGERPRINT_STRONG_MAX_BYTES",
        "FINGERPRINT_TIMEOUT_SECONDS",
        "FINGERPRINT_WEAK_INCLUDE_CLOCK",
        "UPLOAD_MAX_RETRIES",
        "UPLOAD_BACKOFF_SECONDS",
        "RECAPTCHA_SECRET_KEY",
        "PASSWORD_RESET_REDIRECT_URL",
        "AUTO_CREATE_STORAGE_BUCKETS",
        "ALLOWED_REGISTRATION_DOMAINS",
    ):
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture(autouse=True)
def _reset_web_state():
    """Reset the injected platform and tracked upload attempts per test."""
    yield
    from backend.web import storage_wiring
    from backend.web.routes import documents

    storage_wiring.set_platform(None)
    documents.reset_attempts()
