# ===============================================================================
# PYTEST CONFIGURATION FOR THE CODE LEDGER
# ===============================================================================
"""
Global test configuration.

Test Structure:
- tests/ mirrors apps/ structure for app-specific tests
- Naming convention: test_{app}_{feature}.py

Run specific app tests: pytest tests/promotions/
Run all tests: pytest tests/
"""

import os

import django


def pytest_configure():
    """Configure Django settings for pytest"""
    os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings.test')

    # Configure Django
    django.setup()

# ===============================================================================
# PYTEST FIXTURES
# ===============================================================================

import pytest  # noqa: E402
from django.contrib.auth import get_user_model  # noqa: E402

from apps.common.logging import clear_request_context  # noqa: E402

User = get_user_model()


@pytest.fixture(autouse=True)
def _clean_request_context():
    """Thread-local request context must not leak between tests"""
    clear_request_context()
    yield
    clear_request_context()


@pytest.fixture
def user():
    """Create test user (username is the subject id)"""
    return User.objects.create_user(username='buyer-1', password='testpass123')


@pytest.fixture
def staff_user():
    """Create staff user for code administration tests"""
    return User.objects.create_user(username='staff-1', password='testpass123', is_staff=True)


@pytest.fixture
def authenticated_client(client, user):
    """Client logged in with test user"""
    client.force_login(user)
    return client
