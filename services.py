import asyncio
import math
import random
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, List, Optional, Tuple, Union
import structlog

from config import Settings, get_settings
from errors import (
    AccountNumberExhaustedError,
    ConcurrencyConflictError,
    DuplicateKeyError,
    EmailAlreadyTakenError,
    InvalidCredentialsError,
    NotFoundError,
    PasswordMismatchError,
    PhoneAlreadyTakenError,
)
from models import (
    Account,
    AccountNotFound,
    BalanceResult,
    BalanceUpdated,
    InsufficientFunds,
    LoginAllowed,
    LoginAttemptRecord,
    LoginDenied,
    LoginLocked,
    LoginOutcome,
    LoginResult,
    LoginSucceeded,
    TransferCompleted,
    TransferResult,
    User,
    UserPage,
)
from repositories import AccountRepository, LoginAttemptRepository, UserRepository
from security import DECOY_PASSWORD_HASH, create_access_token, hash_password, verify_password

# Configure structured logging
logger = structlog.get_logger()

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LoginThrottle:
    """Per-email login throttle.

    After ``max_attempts`` failed logins every attempt, correct password
    included, is locked out until ``cooldown_minutes`` have passed since the
    last recorded attempt. A success below the threshold resets the counter.

    Writes are compare-and-swap on the values that were read, so two
    concurrent failures for the same email cannot both count from the same
    starting point.
    """

    def __init__(
        self,
        attempt_repo: LoginAttemptRepository,
        max_attempts: int = 5,
        cooldown_minutes: float = 30,
        max_retries: int = 10,
        clock: Clock = utc_now,
    ):
        self.attempt_repo = attempt_repo
        self.max_attempts = max_attempts
        self.cooldown_minutes = cooldown_minutes
        self.max_retries = max_retries
        self.clock = clock

    async def evaluate_login(self, email: str, password_matches: bool) -> LoginOutcome:
        for _ in range(self.max_retries):
            now = self.clock()
            record = await self._load_or_create(email, now)
            elapsed_minutes = (now - record.last_login_at).total_seconds() / 60
            limit_reached = record.attempts >= self.max_attempts

            if limit_reached and elapsed_minutes < self.cooldown_minutes:
                minutes_remaining = self.cooldown_minutes - elapsed_minutes
                logger.info(
                    "Login locked out",
                    email=email,
                    attempts=record.attempts,
                    minutes_remaining=round(minutes_remaining, 2)
                )
                return LoginLocked(minutes_remaining=minutes_remaining)

            if password_matches:
                attempts = 0
                outcome = LoginAllowed()
            elif limit_reached:
                # Cooldown expired: this failure opens a new window
                attempts = 1
                outcome = LoginDenied(attempts_remaining=self.max_attempts - 1)
            else:
                attempts = record.attempts + 1
                outcome = LoginDenied(attempts_remaining=self.max_attempts - attempts)

            if await self.attempt_repo.swap(record, now, attempts):
                logger.info(
                    "Login attempt recorded",
                    email=email,
                    password_matches=password_matches,
                    attempts=attempts,
                    outcome=type(outcome).__name__
                )
                return outcome

            logger.debug("Login attempt record changed concurrently, retrying", email=email)

        raise ConcurrencyConflictError(f"Could not record login attempt for {email}")

    async def _load_or_create(self, email: str, now: datetime) -> LoginAttemptRecord:
        record = await self.attempt_repo.get(email)
        if record is not None:
            return record
        try:
            return await self.attempt_repo.create(email, now)
        except DuplicateKeyError:
            # Another request created it first
            record = await self.attempt_repo.get(email)
            if record is None:
                raise
            return record


class AuthenticationService:
    def __init__(self, user_repo: UserRepository, throttle: LoginThrottle):
        self.user_repo = user_repo
        self.throttle = throttle

    async def check_password_similarity(self, email: str, password: str) -> Optional[User]:
        """Return the user if the password matches, None otherwise.

        The bcrypt check always runs, against a decoy hash when the email is
        unknown, so response time does not reveal which emails exist.
        """
        user = await self.user_repo.get_by_email(email)
        stored_hash = user.password_hash if user else DECOY_PASSWORD_HASH
        matched = await asyncio.to_thread(verify_password, password, stored_hash)
        return user if user and matched else None

    async def login(self, email: str, password: str) -> LoginResult:
        user = await self.check_password_similarity(email, password)
        outcome = await self.throttle.evaluate_login(email, user is not None)

        if isinstance(outcome, LoginAllowed):
            if user is None:
                raise InvalidCredentialsError("Wrong email or something went wrong")
            logger.info("User successfully logged in", email=email, user_id=user.id)
            return LoginSucceeded(
                email=user.email,
                name=user.name,
                user_id=user.id,
                token=create_access_token(user.email, user.id),
            )

        if isinstance(outcome, LoginDenied):
            logger.info(
                "User failed to login",
                email=email,
                attempts_remaining=outcome.attempts_remaining
            )
        return outcome


class LedgerService:
    """Balance mutations for accounts held in the same ledger.

    Every write is conditional on the balance that was read; a lost race is
    retried from a fresh read, up to ``max_retries`` times.
    """

    def __init__(
        self,
        account_repo: AccountRepository,
        max_retries: int = 10,
        account_number_attempts: int = 20,
        rng: Optional[random.Random] = None,
    ):
        self.account_repo = account_repo
        self.max_retries = max_retries
        self.account_number_attempts = account_number_attempts
        self.rng = rng or random.SystemRandom()

    async def get_balance(self, account_number: str) -> Optional[Decimal]:
        account = await self.account_repo.get_by_account_number(account_number)
        return account.balance if account else None

    async def modify_balance(self, account_number: str, delta: Union[Decimal, int, float]) -> BalanceResult:
        """Add ``delta`` to the balance unless that would take it below zero.

        ``delta`` may be an int, float or Decimal; floats go through their
        string form so 0.1 stays 0.1.
        """
        delta = Decimal(str(delta))
        for _ in range(self.max_retries):
            account = await self.account_repo.get_by_account_number(account_number)
            if account is None:
                logger.warning("Account not found", account_number=account_number)
                return AccountNotFound(account_number=account_number)

            new_balance = account.balance + delta
            if new_balance < 0:
                logger.warning(
                    "Insufficient funds",
                    account_number=account_number,
                    current_balance=str(account.balance),
                    delta=str(delta)
                )
                return InsufficientFunds(account_number=account_number, balance=account.balance)

            if await self.account_repo.swap_balance(account.id, account.balance, new_balance):
                logger.info(
                    "Balance modified",
                    account_number=account_number,
                    delta=str(delta),
                    old_balance=str(account.balance),
                    new_balance=str(new_balance)
                )
                return BalanceUpdated(account_number=account_number, balance=new_balance)

            logger.debug("Balance changed concurrently, retrying", account_number=account_number)

        raise ConcurrencyConflictError(f"Could not update balance of {account_number}")

    async def transfer_same_ledger(
        self,
        source_account: str,
        target_account: str,
        amount: Decimal,
    ) -> TransferResult:
        amount = Decimal(str(amount))
        if amount <= 0:
            raise ValueError("Transfer amount must be positive")
        if source_account == target_account:
            raise ValueError("Source and target accounts must differ")

        for _ in range(self.max_retries):
            source = await self.account_repo.get_by_account_number(source_account)
            if source is None:
                logger.warning("Transfer source not found", account_number=source_account)
                return AccountNotFound(account_number=source_account)

            target = await self.account_repo.get_by_account_number(target_account)
            if target is None:
                logger.warning("Transfer target not found", account_number=target_account)
                return AccountNotFound(account_number=target_account)

            new_source_balance = source.balance - amount
            if new_source_balance < 0:
                logger.warning(
                    "Insufficient funds for transfer",
                    source_account=source_account,
                    current_balance=str(source.balance),
                    amount=str(amount)
                )
                return InsufficientFunds(account_number=source_account, balance=source.balance)

            new_target_balance = target.balance + amount
            if await self.account_repo.swap_balances(
                source, new_source_balance, target, new_target_balance
            ):
                logger.info(
                    "Transfer completed",
                    source_account=source_account,
                    target_account=target_account,
                    amount=str(amount)
                )
                return TransferCompleted(
                    source_account=source_account,
                    target_account=target_account,
                    amount=amount,
                    source_balance=new_source_balance,
                    target_balance=new_target_balance,
                )

            logger.debug(
                "Transfer balances changed concurrently, retrying",
                source_account=source_account,
                target_account=target_account
            )

        raise ConcurrencyConflictError(
            f"Could not transfer from {source_account} to {target_account}"
        )

    async def generate_account_number(self) -> str:
        """Draw a 10-digit account number not used by any existing account."""
        for _ in range(self.account_number_attempts):
            candidate = f"{self.rng.randint(0, 9_999_999_999):010d}"
            if await self.account_repo.get_by_account_number(candidate) is None:
                return candidate
            logger.debug("Account number already registered, drawing again")

        raise AccountNumberExhaustedError(
            f"No free account number after {self.account_number_attempts} draws"
        )


class AccountService:
    def __init__(self, account_repo: AccountRepository, ledger: LedgerService):
        self.account_repo = account_repo
        self.ledger = ledger

    async def list_accounts(self) -> List[Account]:
        return await self.account_repo.list()

    async def get_account(self, account_id: str) -> Account:
        account = await self.account_repo.get(account_id)
        if account is None:
            raise NotFoundError("Unknown user")
        return account

    async def create_account(
        self,
        name: str,
        email: str,
        phone: str,
        initial_balance: Decimal,
        password: str,
        password_confirm: str,
    ) -> Account:
        if password != password_confirm:
            raise PasswordMismatchError("Password confirmation mismatched")
        if await self.account_repo.get_by_email(email):
            raise EmailAlreadyTakenError("Email is already registered")
        if await self.account_repo.get_by_phone(phone):
            raise PhoneAlreadyTakenError("Telephone number is already registered")

        password_hash = await asyncio.to_thread(hash_password, password)

        # The unique index decides between concurrent creators
        for _ in range(self.ledger.account_number_attempts):
            account_number = await self.ledger.generate_account_number()
            try:
                account = await self.account_repo.create({
                    "account_number": account_number,
                    "name": name,
                    "email": email,
                    "phone": phone,
                    "balance": initial_balance,
                    "password_hash": password_hash,
                })
            except DuplicateKeyError as exc:
                if exc.field == "email":
                    raise EmailAlreadyTakenError("Email is already registered") from exc
                if exc.field == "phone":
                    raise PhoneAlreadyTakenError("Telephone number is already registered") from exc
                logger.warning("Account number taken concurrently, drawing again")
                continue

            logger.info("Account created", account_id=account.id, account_number=account_number)
            return account

        raise AccountNumberExhaustedError("Could not register a unique account number")

    async def delete_account(self, account_id: str) -> None:
        if not await self.account_repo.delete(account_id):
            raise NotFoundError("Unknown user")
        logger.info("Account deleted", account_id=account_id)

    async def change_password(
        self,
        account_id: str,
        password_old: str,
        password_new: str,
        password_confirm: str,
    ) -> None:
        if password_new != password_confirm:
            raise PasswordMismatchError("Password confirmation mismatched")

        account = await self.get_account(account_id)
        if not await asyncio.to_thread(verify_password, password_old, account.password_hash):
            raise InvalidCredentialsError("Wrong password")

        password_hash = await asyncio.to_thread(hash_password, password_new)
        if not await self.account_repo.update_password(account_id, password_hash):
            raise NotFoundError("Unknown user")
        logger.info("Account password changed", account_id=account_id)


USER_QUERY_FIELDS = ("id", "name", "email")


def split_query_attribute(value: str) -> Tuple[str, str]:
    """Split a ``field:value`` query parameter into its two trimmed halves."""
    field, separator, rest = value.partition(":")
    field = field.strip()
    if not separator or field not in USER_QUERY_FIELDS:
        raise ValueError(f"Expected one of {', '.join(USER_QUERY_FIELDS)} followed by ':'")
    return field, rest.strip()


class UserService:
    def __init__(self, user_repo: UserRepository):
        self.user_repo = user_repo

    async def list_users(
        self,
        page_number: int = 1,
        page_size: int = 0,
        search: Optional[str] = None,
        sort: Optional[str] = None,
    ) -> UserPage:
        """List operators matching ``search``, ordered by ``sort``, one page at a time.

        ``search`` is ``field:value`` (exact match) and ``sort`` is
        ``field:asc`` or ``field:desc``; sorting defaults to email ascending.
        A ``page_size`` of 0 puts every match on a single page.
        """
        users = await self.user_repo.list()

        if search:
            field, value = split_query_attribute(search)
            if value:
                users = [user for user in users if getattr(user, field) == value]

        sort_field, direction = split_query_attribute(sort) if sort else ("email", "asc")
        users.sort(key=lambda user: getattr(user, sort_field).lower(), reverse=direction == "desc")

        count = len(users)
        if page_size:
            total_pages = max(1, math.ceil(count / page_size))
            start = (page_number - 1) * page_size
            users = users[start:start + page_size]
        else:
            total_pages = 1

        return UserPage(
            users=users,
            count=count,
            total_pages=total_pages,
            has_previous_page=page_number > 1,
            has_next_page=page_number < total_pages,
        )

    async def get_user(self, user_id: str) -> User:
        user = await self.user_repo.get(user_id)
        if user is None:
            raise NotFoundError("Unknown user")
        return user

    async def create_user(self, name: str, email: str, password: str, password_confirm: str) -> User:
        if password != password_confirm:
            raise PasswordMismatchError("Password confirmation mismatched")

        password_hash = await asyncio.to_thread(hash_password, password)
        try:
            user = await self.user_repo.create(email, name, password_hash)
        except DuplicateKeyError as exc:
            raise EmailAlreadyTakenError("Email is already registered") from exc

        logger.info("User created", user_id=user.id, email=email)
        return user

    async def update_user(self, user_id: str, name: str, email: str) -> User:
        try:
            updated = await self.user_repo.update(user_id, name, email)
        except DuplicateKeyError as exc:
            raise EmailAlreadyTakenError("Email is already registered") from exc
        if not updated:
            raise NotFoundError("Unknown user")

        logger.info("User updated", user_id=user_id, email=email)
        return await self.get_user(user_id)

    async def change_password(
        self,
        user_id: str,
        password_old: str,
        password_new: str,
        password_confirm: str,
    ) -> None:
        if password_new != password_confirm:
            raise PasswordMismatchError("Password confirmation mismatched")

        user = await self.get_user(user_id)
        if not await asyncio.to_thread(verify_password, password_old, user.password_hash):
            raise InvalidCredentialsError("Wrong password")

        password_hash = await asyncio.to_thread(hash_password, password_new)
        if not await self.user_repo.update_password(user_id, password_hash):
            raise NotFoundError("Unknown user")
        logger.info("User password changed", user_id=user_id)

    async def delete_user(self, user_id: str) -> None:
        if not await self.user_repo.delete(user_id):
            raise NotFoundError("Unknown user")
        logger.info("User deleted", user_id=user_id)

    async def ensure_user(self, name: str, email: str, password: str) -> User:
        """Create the user unless one with that email already exists."""
        existing = await self.user_repo.get_by_email(email)
        if existing is not None:
            return existing
        return await self.create_user(name, email, password, password)


# Factory functions for dependency injection
def get_login_throttle(
    attempt_repo: LoginAttemptRepository,
    settings: Optional[Settings] = None,
    clock: Clock = utc_now,
) -> LoginThrottle:
    settings = settings or get_settings()
    return LoginThrottle(
        attempt_repo,
        max_attempts=settings.login_max_attempts,
        cooldown_minutes=settings.login_cooldown_minutes,
        max_retries=settings.cas_max_retries,
        clock=clock,
    )


def get_authentication_service(
    user_repo: UserRepository,
    attempt_repo: LoginAttemptRepository,
    settings: Optional[Settings] = None,
) -> AuthenticationService:
    return AuthenticationService(user_repo, get_login_throttle(attempt_repo, settings))


def get_ledger_service(
    account_repo: AccountRepository,
    settings: Optional[Settings] = None,
) -> LedgerService:
    settings = settings or get_settings()
    return LedgerService(
        account_repo,
        max_retries=settings.cas_max_retries,
        account_number_attempts=settings.account_number_max_attempts,
    )


def get_account_service(
    account_repo: AccountRepository,
    settings: Optional[Settings] = None,
) -> AccountService:
    return AccountService(account_repo, get_ledger_service(account_repo, settings))


def get_user_service(user_repo: UserRepository) -> UserService:
    return UserService(user_repo)
