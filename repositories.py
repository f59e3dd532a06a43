from abc import ABC, abstractmethod
from typing import Dict, List, Optional
from datetime import datetime
from decimal import Decimal

from models import Account, LoginAttemptRecord, User
from storage import ACCOUNTS, LOGIN_ATTEMPTS, USERS, DocumentStore, InMemoryDocumentStore


class AccountRepository(ABC):
    @abstractmethod
    async def get(self, account_id: str) -> Optional[Account]:
        """Get account by store id. Returns None if it doesn't exist."""
        pass

    @abstractmethod
    async def get_by_account_number(self, account_number: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def get_by_email(self, email: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def get_by_phone(self, phone: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def list(self) -> List[Account]:
        pass

    @abstractmethod
    async def create(self, fields: Dict) -> Account:
        """Insert a new account. Raises DuplicateKeyError on a unique field clash."""
        pass

    @abstractmethod
    async def swap_balance(self, account_id: str, expected: Decimal, new_balance: Decimal) -> bool:
        """Set the balance only if it still equals ``expected``."""
        pass

    @abstractmethod
    async def swap_balances(
        self,
        debit: Account,
        new_debit_balance: Decimal,
        credit: Account,
        new_credit_balance: Decimal,
    ) -> bool:
        """Set both balances in one unit, only if neither changed since read."""
        pass

    @abstractmethod
    async def update_password(self, account_id: str, password_hash: str) -> bool:
        pass

    @abstractmethod
    async def delete(self, account_id: str) -> bool:
        pass

    @abstractmethod
    async def get_accounts_count(self) -> int:
        """Get total number of accounts."""
        pass


class LoginAttemptRepository(ABC):
    @abstractmethod
    async def get(self, email: str) -> Optional[LoginAttemptRecord]:
        pass

    @abstractmethod
    async def create(self, email: str, now: datetime) -> LoginAttemptRecord:
        """Create a fresh record. Raises DuplicateKeyError if one already exists."""
        pass

    @abstractmethod
    async def swap(
        self,
        record: LoginAttemptRecord,
        last_login_at: datetime,
        attempts: int,
    ) -> bool:
        """Store new values only if the record is unchanged since ``record`` was read."""
        pass


class UserRepository(ABC):
    @abstractmethod
    async def get(self, user_id: str) -> Optional[User]:
        pass

    @abstractmethod
    async def get_by_email(self, email: str) -> Optional[User]:
        pass

    @abstractmethod
    async def list(self) -> List[User]:
        pass

    @abstractmethod
    async def create(self, email: str, name: str, password_hash: str) -> User:
        pass

    @abstractmethod
    async def update(self, user_id: str, name: str, email: str) -> bool:
        pass

    @abstractmethod
    async def update_password(self, user_id: str, password_hash: str) -> bool:
        pass

    @abstractmethod
    async def delete(self, user_id: str) -> bool:
        pass

    @abstractmethod
    async def get_users_count(self) -> int:
        pass


class StoreAccountRepository(AccountRepository):
    def __init__(self, store: DocumentStore):
        self.store = store

    @staticmethod
    def _to_account(document) -> Optional[Account]:
        return Account.from_document(document) if document is not None else None

    async def get(self, account_id: str) -> Optional[Account]:
        return self._to_account(await self.store.get(ACCOUNTS, account_id))

    async def get_by_account_number(self, account_number: str) -> Optional[Account]:
        return self._to_account(await self.store.find_one(ACCOUNTS, account_number=account_number))

    async def get_by_email(self, email: str) -> Optional[Account]:
        return self._to_account(await self.store.find_one(ACCOUNTS, email=email))

    async def get_by_phone(self, phone: str) -> Optional[Account]:
        return self._to_account(await self.store.find_one(ACCOUNTS, phone=phone))

    async def list(self) -> List[Account]:
        return [Account.from_document(document) for document in await self.store.find(ACCOUNTS)]

    async def create(self, fields: Dict) -> Account:
        return Account.from_document(await self.store.create(ACCOUNTS, fields))

    async def swap_balance(self, account_id: str, expected: Decimal, new_balance: Decimal) -> bool:
        return await self.store.update(
            ACCOUNTS, account_id, {"balance": new_balance}, expected={"balance": expected}
        )

    async def swap_balances(
        self,
        debit: Account,
        new_debit_balance: Decimal,
        credit: Account,
        new_credit_balance: Decimal,
    ) -> bool:
        return await self.store.update_many(ACCOUNTS, [
            (debit.id, {"balance": new_debit_balance}, {"balance": debit.balance}),
            (credit.id, {"balance": new_credit_balance}, {"balance": credit.balance}),
        ])

    async def update_password(self, account_id: str, password_hash: str) -> bool:
        return await self.store.update(ACCOUNTS, account_id, {"password_hash": password_hash})

    async def delete(self, account_id: str) -> bool:
        return await self.store.delete(ACCOUNTS, account_id)

    async def get_accounts_count(self) -> int:
        return await self.store.count(ACCOUNTS)


class StoreLoginAttemptRepository(LoginAttemptRepository):
    def __init__(self, store: DocumentStore):
        self.store = store

    async def get(self, email: str) -> Optional[LoginAttemptRecord]:
        document = await self.store.find_one(LOGIN_ATTEMPTS, email=email)
        return LoginAttemptRecord.from_document(document) if document is not None else None

    async def create(self, email: str, now: datetime) -> LoginAttemptRecord:
        document = await self.store.create(LOGIN_ATTEMPTS, {
            "email": email,
            "last_login_at": now,
            "attempts": 0,
        })
        return LoginAttemptRecord.from_document(document)

    async def swap(
        self,
        record: LoginAttemptRecord,
        last_login_at: datetime,
        attempts: int,
    ) -> bool:
        return await self.store.update(
            LOGIN_ATTEMPTS,
            record.id,
            {"last_login_at": last_login_at, "attempts": attempts},
            expected={"last_login_at": record.last_login_at, "attempts": record.attempts},
        )


class StoreUserRepository(UserRepository):
    def __init__(self, store: DocumentStore):
        self.store = store

    async def get(self, user_id: str) -> Optional[User]:
        document = await self.store.get(USERS, user_id)
        return User.from_document(document) if document is not None else None

    async def get_by_email(self, email: str) -> Optional[User]:
        document = await self.store.find_one(USERS, email=email)
        return User.from_document(document) if document is not None else None

    async def list(self) -> List[User]:
        return [User.from_document(document) for document in await self.store.find(USERS)]

    async def create(self, email: str, name: str, password_hash: str) -> User:
        document = await self.store.create(USERS, {
            "email": email,
            "name": name,
            "password_hash": password_hash,
        })
        return User.from_document(document)

    async def update(self, user_id: str, name: str, email: str) -> bool:
        return await self.store.update(USERS, user_id, {"name": name, "email": email})

    async def update_password(self, user_id: str, password_hash: str) -> bool:
        return await self.store.update(USERS, user_id, {"password_hash": password_hash})

    async def delete(self, user_id: str) -> bool:
        return await self.store.delete(USERS, user_id)

    async def get_users_count(self) -> int:
        return await self.store.count(USERS)


# Singleton instances sharing one store (em produção, usar dependency injection)
_store = InMemoryDocumentStore()
_account_repo = StoreAccountRepository(_store)
_login_attempt_repo = StoreLoginAttemptRepository(_store)
_user_repo = StoreUserRepository(_store)


def get_store() -> DocumentStore:
    return _store


def get_account_repository() -> AccountRepository:
    return _account_repo


def get_login_attempt_repository() -> LoginAttemptRepository:
    return _login_attempt_repo


def get_user_repository() -> UserRepository:
    return _user_repo


# Para testes
def reset_repositories():
    """Reset all repositories to an empty store (for testing only)."""
    global _store, _account_repo, _login_attempt_repo, _user_repo
    _store = InMemoryDocumentStore()
    _account_repo = StoreAccountRepository(_store)
    _login_attempt_repo = StoreLoginAttemptRepository(_store)
    _user_repo = StoreUserRepository(_store)
