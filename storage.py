"""Document store used by the repositories.

The contract mirrors a document database: records are plain dicts keyed by
an ``id`` field, looked up by arbitrary field filters, protected by unique
indexes. Writes can carry an ``expected`` precondition so callers can build
compare-and-swap loops on top of them.
"""

import asyncio
import copy
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from errors import DuplicateKeyError, StoreUnavailableError

# (key, fields to set, expected current values or None)
Change = Tuple[str, Dict[str, Any], Optional[Dict[str, Any]]]

ACCOUNTS = "accounts"
LOGIN_ATTEMPTS = "login_attempts"
USERS = "users"

DEFAULT_UNIQUE_INDEXES: Dict[str, Tuple[str, ...]] = {
    ACCOUNTS: ("account_number", "email", "phone"),
    LOGIN_ATTEMPTS: ("email",),
    USERS: ("email",),
}


class DocumentStore(ABC):
    @abstractmethod
    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        """Get a record by key. Returns None if absent."""
        pass

    @abstractmethod
    async def find_one(self, collection: str, **filters: Any) -> Optional[Dict[str, Any]]:
        """Get the first record whose fields equal the filters."""
        pass

    @abstractmethod
    async def find(self, collection: str, **filters: Any) -> List[Dict[str, Any]]:
        """Get all records whose fields equal the filters."""
        pass

    @abstractmethod
    async def create(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a record. Raises DuplicateKeyError on a unique index violation."""
        pass

    @abstractmethod
    async def update(
        self,
        collection: str,
        key: str,
        fields: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Set fields on a record.

        Returns False when the record is absent or, if ``expected`` is given,
        when any of its values no longer match the stored ones.
        """
        pass

    @abstractmethod
    async def update_many(self, collection: str, changes: Sequence[Change]) -> bool:
        """Apply several conditional updates as one unit: all or none."""
        pass

    @abstractmethod
    async def delete(self, collection: str, key: str) -> bool:
        pass

    @abstractmethod
    async def count(self, collection: str) -> int:
        pass


class InMemoryDocumentStore(DocumentStore):
    def __init__(self, unique_indexes: Optional[Dict[str, Iterable[str]]] = None):
        indexes = DEFAULT_UNIQUE_INDEXES if unique_indexes is None else unique_indexes
        self.unique_indexes: Dict[str, Tuple[str, ...]] = {
            name: tuple(fields) for name, fields in indexes.items()
        }
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self.locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.available = True

    def close(self) -> None:
        """Simulate the backing database going away."""
        self.available = False

    def _check_available(self) -> None:
        if not self.available:
            raise StoreUnavailableError("Document store is unavailable")

    @staticmethod
    def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
        return all(record.get(name) == value for name, value in filters.items())

    def _check_unique(
        self, collection: str, record: Dict[str, Any], ignore_key: Optional[str] = None
    ) -> None:
        for field in self.unique_indexes.get(collection, ()):
            value = record.get(field)
            if value is None:
                continue
            for key, existing in self.collections[collection].items():
                if key != ignore_key and existing.get(field) == value:
                    raise DuplicateKeyError(collection, field, value)

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        self._check_available()
        record = self.collections[collection].get(key)
        return copy.deepcopy(record) if record is not None else None

    async def find_one(self, collection: str, **filters: Any) -> Optional[Dict[str, Any]]:
        self._check_available()
        for record in self.collections[collection].values():
            if self._matches(record, filters):
                return copy.deepcopy(record)
        return None

    async def find(self, collection: str, **filters: Any) -> List[Dict[str, Any]]:
        self._check_available()
        return [
            copy.deepcopy(record)
            for record in self.collections[collection].values()
            if self._matches(record, filters)
        ]

    async def create(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        self._check_available()
        async with self.locks[collection]:
            stored = copy.deepcopy(record)
            stored.setdefault("id", uuid.uuid4().hex)
            if stored["id"] in self.collections[collection]:
                raise DuplicateKeyError(collection, "id", stored["id"])
            self._check_unique(collection, stored)
            self.collections[collection][stored["id"]] = stored
            return copy.deepcopy(stored)

    async def update(
        self,
        collection: str,
        key: str,
        fields: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return await self.update_many(collection, [(key, fields, expected)])

    async def update_many(self, collection: str, changes: Sequence[Change]) -> bool:
        self._check_available()
        async with self.locks[collection]:
            documents = self.collections[collection]
            staged: Dict[str, Dict[str, Any]] = {}

            # Validate every precondition before touching anything
            for key, fields, expected in changes:
                current = staged.get(key, documents.get(key))
                if current is None:
                    return False
                if expected and not self._matches(current, expected):
                    return False
                updated = {**current, **copy.deepcopy(fields), "id": key}
                self._check_unique(collection, updated, ignore_key=key)
                staged[key] = updated

            documents.update(staged)
            return True

    async def delete(self, collection: str, key: str) -> bool:
        self._check_available()
        async with self.locks[collection]:
            return self.collections[collection].pop(key, None) is not None

    async def count(self, collection: str) -> int:
        self._check_available()
        return len(self.collections[collection])
