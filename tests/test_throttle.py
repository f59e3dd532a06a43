import asyncio
import pytest
from unittest.mock import patch

from errors import ConcurrencyConflictError, StoreUnavailableError
from models import LoginAllowed, LoginDenied, LoginLocked, LoginSucceeded
from repositories import StoreLoginAttemptRepository
from security import DECOY_PASSWORD_HASH, decode_access_token
from services import AuthenticationService, LoginThrottle
from storage import InMemoryDocumentStore

EMAIL = "x@y.com"


@pytest.fixture
def throttle(attempt_repo, clock):
    return LoginThrottle(attempt_repo, max_attempts=5, cooldown_minutes=30, clock=clock)


async def fail(throttle, times, email=EMAIL):
    return [await throttle.evaluate_login(email, False) for _ in range(times)]


class TestAttemptCounting:
    """Test counting of failed attempts below the threshold."""

    @pytest.mark.asyncio
    async def test_first_attempt_creates_record(self, throttle, attempt_repo, clock):
        """Test the first attempt creates the record."""
        outcome = await throttle.evaluate_login(EMAIL, True)

        assert outcome == LoginAllowed()
        record = await attempt_repo.get(EMAIL)
        assert record.attempts == 0
        assert record.last_login_at == clock.now

    @pytest.mark.asyncio
    async def test_failures_count_down(self, throttle):
        """Test attempts remaining after each failure."""
        outcomes = await fail(throttle, 5)

        assert [o.attempts_remaining for o in outcomes] == [4, 3, 2, 1, 0]

    @pytest.mark.asyncio
    async def test_success_resets_attempts(self, throttle, attempt_repo):
        """Test a success resets the counter."""
        await fail(throttle, 3)

        outcome = await throttle.evaluate_login(EMAIL, True)

        assert outcome == LoginAllowed()
        assert (await attempt_repo.get(EMAIL)).attempts == 0

    @pytest.mark.asyncio
    async def test_emails_are_tracked_separately(self, throttle):
        """Test each email has its own counter."""
        await fail(throttle, 5)

        assert await throttle.evaluate_login("other@y.com", True) == LoginAllowed()


class TestLockout:
    """Test behaviour once the attempt limit is reached."""

    @pytest.mark.asyncio
    async def test_correct_password_locked_within_cooldown(self, throttle, attempt_repo, clock):
        """Test the correct password is locked out within the cooldown."""
        await fail(throttle, 5)
        before = await attempt_repo.get(EMAIL)

        clock.advance(10)
        outcome = await throttle.evaluate_login(EMAIL, True)

        assert isinstance(outcome, LoginLocked)
        assert outcome.minutes_remaining == pytest.approx(20)
        # Locked attempts leave the record untouched
        assert await attempt_repo.get(EMAIL) == before

    @pytest.mark.asyncio
    async def test_wrong_password_locked_within_cooldown(self, throttle, attempt_repo, clock):
        """Test a wrong password is locked out within the cooldown."""
        await fail(throttle, 5)

        clock.advance(29)
        outcome = await throttle.evaluate_login(EMAIL, False)

        assert isinstance(outcome, LoginLocked)
        assert outcome.minutes_remaining == pytest.approx(1)
        assert (await attempt_repo.get(EMAIL)).attempts == 5

    @pytest.mark.asyncio
    async def test_cooldown_counts_from_last_failure(self, throttle, clock):
        """Test the cooldown starts at the last failure."""
        for _ in range(5):
            await throttle.evaluate_login(EMAIL, False)
            clock.advance(2)

        outcome = await throttle.evaluate_login(EMAIL, True)

        # Cooldown counts from the last recorded failure
        assert isinstance(outcome, LoginLocked)
        assert outcome.minutes_remaining == pytest.approx(28)

    @pytest.mark.asyncio
    async def test_correct_password_after_cooldown_allowed(self, throttle, attempt_repo, clock):
        """Test the correct password after the cooldown."""
        await fail(throttle, 5)

        clock.advance(30)
        outcome = await throttle.evaluate_login(EMAIL, True)

        # The expired lockout is not reported back to the caller
        assert outcome == LoginAllowed()
        record = await attempt_repo.get(EMAIL)
        assert record.attempts == 0
        assert record.last_login_at == clock.now

    @pytest.mark.asyncio
    async def test_wrong_password_after_cooldown_opens_new_window(self, throttle, attempt_repo, clock):
        """Test a wrong password after the cooldown starts a new count."""
        await fail(throttle, 5)

        clock.advance(45)
        outcome = await throttle.evaluate_login(EMAIL, False)

        assert outcome == LoginDenied(attempts_remaining=4)
        assert (await attempt_repo.get(EMAIL)).attempts == 1


class RacingLoginAttemptRepository(StoreLoginAttemptRepository):
    """Lets another writer bump the counter just before each of our writes."""

    def __init__(self, store, races):
        super().__init__(store)
        self.races = races

    async def swap(self, record, last_login_at, attempts):
        if self.races > 0:
            self.races -= 1
            await super().swap(record, last_login_at, record.attempts + 1)
        return await super().swap(record, last_login_at, attempts)


class TestConcurrency:
    """Test per-email serialization of attempt updates."""

    @pytest.mark.asyncio
    async def test_lost_race_is_retried_from_fresh_read(self, clock):
        """Test a lost write is retried from a fresh read."""
        repo = RacingLoginAttemptRepository(InMemoryDocumentStore(), races=1)
        throttle = LoginThrottle(repo, clock=clock)

        outcome = await throttle.evaluate_login(EMAIL, False)

        # Both the competing failure and ours are counted
        assert outcome == LoginDenied(attempts_remaining=3)
        assert (await repo.get(EMAIL)).attempts == 2

    @pytest.mark.asyncio
    async def test_endless_conflicts_raise(self, clock):
        """Test retries are bounded."""
        repo = RacingLoginAttemptRepository(InMemoryDocumentStore(), races=100)
        throttle = LoginThrottle(repo, max_retries=3, clock=clock)

        with pytest.raises(ConcurrencyConflictError):
            await throttle.evaluate_login(EMAIL, False)

    @pytest.mark.asyncio
    async def test_concurrent_failures_all_counted(self, throttle, attempt_repo):
        """Test concurrent failures are all counted."""
        outcomes = await asyncio.gather(
            *(throttle.evaluate_login(EMAIL, False) for _ in range(4))
        )

        assert sorted(o.attempts_remaining for o in outcomes) == [1, 2, 3, 4]
        assert (await attempt_repo.get(EMAIL)).attempts == 4

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, throttle, store):
        """Test store outages are raised."""
        store.close()

        with pytest.raises(StoreUnavailableError):
            await throttle.evaluate_login(EMAIL, True)


class TestAuthenticationService:
    """Test the full login flow on top of the throttle."""

    @pytest.fixture
    def service(self, user_repo, throttle):
        return AuthenticationService(user_repo, throttle)

    @pytest.mark.asyncio
    async def test_login_success_issues_token(self, service, operator):
        """Test successful login issues a token."""
        result = await service.login("operator@bank.com", "Secret#123")

        assert isinstance(result, LoginSucceeded)
        assert result.user_id == operator.id
        assert decode_access_token(result.token)["user_id"] == operator.id

    @pytest.mark.asyncio
    async def test_wrong_password_denied(self, service, operator):
        """Test wrong password is denied."""
        result = await service.login("operator@bank.com", "Wrong#123")

        assert result == LoginDenied(attempts_remaining=4)

    @pytest.mark.asyncio
    async def test_unknown_email_checked_against_decoy(self, service):
        """Test unknown emails still pay for a password check."""
        with patch("services.verify_password", return_value=True) as verify:
            result = await service.login("ghost@bank.com", "Whatever#1")

        verify.assert_called_once_with("Whatever#1", DECOY_PASSWORD_HASH)
        # A matching decoy still never lets an unknown email in
        assert result == LoginDenied(attempts_remaining=4)

    @pytest.mark.asyncio
    async def test_password_checked_even_when_locked(self, service, operator, clock):
        """Test the password is checked even when locked out."""
        for _ in range(5):
            await service.login("operator@bank.com", "Wrong#123")

        with patch("services.verify_password", return_value=True) as verify:
            result = await service.login("operator@bank.com", "Secret#123")

        verify.assert_called_once()
        assert isinstance(result, LoginLocked)
