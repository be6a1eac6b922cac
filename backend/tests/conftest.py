"""
Shared fixtures: an in-memory marketplace with funded wallets and a fixed clock.
"""
import os
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

# Add src to path for import
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from taskblitz.config import Config  # noqa: E402
from taskblitz.ledger import InMemoryLedger  # noqa: E402
from taskblitz.models import Actor, TaskSpec  # noqa: E402
from taskblitz.repository import InMemoryRepository  # noqa: E402
from taskblitz.service import Marketplace  # noqa: E402

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def settings():
    settings = Config()
    settings.PLATFORM_FEE_PERCENTAGE = Decimal('10')
    settings.PLATFORM_WALLET_ID = ''
    settings.MINIMUM_TASK_PAYMENT = Decimal('0.10')
    settings.REJECTION_LIMIT_PERCENTAGE = 30
    settings.AUTO_APPROVAL_TIMEOUT_HOURS = 72
    settings.RESERVATION_LEASE_SECONDS = 300
    settings.DEFAULT_TASK_DURATION_DAYS = 7
    return settings


@pytest.fixture
def requester():
    return Actor('requester-1', ('requester',))


@pytest.fixture
def admin():
    return Actor('admin-1', ('admin',))


@pytest.fixture
def workers():
    return [Actor(f'worker-{i}', ('worker',)) for i in range(1, 11)]


@pytest.fixture
def worker(workers):
    return workers[0]


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def ledger(requester):
    return InMemoryLedger({requester.user_id: Decimal('1000.00')})


@pytest.fixture
def marketplace(repository, ledger, settings):
    return Marketplace(repository, ledger, settings)


@pytest.fixture
def make_task(marketplace, requester, now):
    """Create a task with sensible defaults; keyword arguments override the spec."""
    def _make(**overrides):
        fields = {
            'title': 'Label 10 images',
            'payment_per_task': Decimal('10.00'),
            'workers_needed': 2,
            'deadline': now + timedelta(days=7),
        }
        fields.update(overrides)
        return marketplace.create_task(TaskSpec(**fields), requester, now)
    return _make