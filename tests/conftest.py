import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import repositories
from models import Account
from main import limiter
from security import create_access_token, hash_password


def run_sync(coro):
    """Drive a coroutine to completion on a private loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class FakeClock:
    """Manually advanced clock for throttle tests."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float) -> None:
        self.now += timedelta(minutes=minutes)


class SequenceRandom:
    """Stands in for random.Random, handing out predetermined draws."""

    def __init__(self, values):
        self.values = list(values)

    def randint(self, a, b):
        return self.values.pop(0)


@pytest.fixture(autouse=True)
def reset_state():
    """Reset repositories and rate limits before each test."""
    repositories.reset_repositories()
    limiter.reset()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return repositories.get_store()


@pytest.fixture
def account_repo():
    return repositories.get_account_repository()


@pytest.fixture
def attempt_repo():
    return repositories.get_login_attempt_repository()


@pytest.fixture
def user_repo():
    return repositories.get_user_repository()


@pytest.fixture
def operator(user_repo):
    """An operator able to log in with password 'Secret#123'."""
    return run_sync(
        user_repo.create("operator@bank.com", "Operator", hash_password("Secret#123"))
    )


@pytest.fixture
def auth_headers(operator):
    token = create_access_token(operator.email, operator.id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_account(account_repo):
    """Insert an account directly, bypassing number generation and hashing."""
    counter = {"n": 0}

    async def _make(account_number: str, balance) -> Account:
        counter["n"] += 1
        n = counter["n"]
        return await account_repo.create({
            "account_number": account_number,
            "name": f"Holder {n}",
            "email": f"holder{n}@bank.com",
            "phone": f"0812345678{n:02d}",
            "balance": Decimal(str(balance)),
            "password_hash": "not-a-real-hash",
        })

    return _make


@pytest.fixture
def seed_account(make_account):
    """Synchronous ``make_account`` for tests driving the app through TestClient."""

    def _seed(account_number: str, balance) -> Account:
        return run_sync(make_account(account_number, balance))

    return _seed
