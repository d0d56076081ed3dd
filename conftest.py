import os
import sys
from pathlib import Path

import pytest

# Default env for app settings in tests.
os.environ.setdefault("SUPABASE_URL", "https://example.supabase.co")
os.environ.setdefault("SUPABASE_ANON_KEY", "test-anon-key")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "service-role-token")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_123")

# Ensure the repo root is on sys.path so "from whatsmetrics.main import app" works in CI.
API_ROOT = Path(__file__).resolve().parent
if str(API_ROOT) not in sys.path:
    sys.path.insert(0, str(API_ROOT))

from whatsmetrics.core.settings import get_settings  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
