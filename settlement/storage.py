"""
In-memory document store.

Stands in for the hosted realtime database: values live in a tree addressed
by slash-separated paths, and every settlement is committed as one
multi-path batch whose compare-and-set expectations are checked and applied
under a single lock.
"""

import copy
import itertools
import time
from datetime import datetime, timezone
from decimal import Decimal
from threading import RLock
from typing import Any, Optional
from uuid import uuid4


class WriteConflictError(Exception):
    """Raised when a batch expectation no longer holds at commit time."""

    def __init__(self, path: str, expected: Any, actual: Any):
        super().__init__(f"Conflict at {path}: expected {expected!r}, found {actual!r}")
        self.path = path
        self.expected = expected
        self.actual = actual


_MISSING = object()


def _split(path: str) -> list[str]:
    return [part for part in path.strip("/").split("/") if part]


class WriteBatch:
    """Collects absolute-path updates plus the values they were computed from."""

    def __init__(self):
        self.updates: dict[str, Any] = {}
        self.expectations: dict[str, Any] = {}

    def update(self, path: str, value: Any) -> None:
        self.updates["/".join(_split(path))] = value

    def expect(self, path: str, value: Any) -> None:
        key = "/".join(_split(path))
        # the first read wins; later reads in the same batch see staged values
        self.expectations.setdefault(key, value)

    def push(self, storage: "InMemoryStorage", collection: str, value: Any) -> str:
        key = storage.push_key()
        self.update(f"{collection}/{key}", value)
        return key

    def read(self, storage: "InMemoryStorage", path: str) -> Any:
        key = "/".join(_split(path))
        if key in self.updates:
            return copy.deepcopy(self.updates[key])
        return storage.get(key)

    @property
    def is_empty(self) -> bool:
        return not self.updates


class InMemoryStorage:
    def __init__(self, seed: bool = False):
        self._root: dict[str, Any] = {}
        self._lock = RLock()
        self._counter = itertools.count()
        if seed:
            self._seed_data()

    def _seed_data(self):
        self.put_package("starter", name="Starter Bundle", price=Decimal("2500"), commission_percent=Decimal("50"))
        self.put_package("pro", name="Pro Bundle", price=Decimal("5000"), commission_percent=Decimal("58"))
        self.put_package("elite", name="Elite Bundle", price=Decimal("10000"), commission_percent=Decimal("60"))

    # -- reads -------------------------------------------------------------

    def _lookup(self, parts: list[str]) -> Any:
        node: Any = self._root
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return _MISSING
            node = node[part]
        return node

    def get(self, path: str) -> Any:
        with self._lock:
            value = self._lookup(_split(path))
            return None if value is _MISSING else copy.deepcopy(value)

    def children(self, path: str) -> dict[str, Any]:
        value = self.get(path)
        return value if isinstance(value, dict) else {}

    def push_key(self) -> str:
        # lexicographic order follows creation order
        return f"{time.time_ns():020d}-{next(self._counter):06d}-{uuid4().hex[:8]}"

    # -- writes ------------------------------------------------------------

    def _set(self, parts: list[str], value: Any) -> None:
        if not parts:
            raise ValueError("Cannot write to the root path")
        node = self._root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        if value is None:
            node.pop(parts[-1], None)
        else:
            node[parts[-1]] = copy.deepcopy(value)

    def commit(self, batch: WriteBatch) -> None:
        with self._lock:
            for path, expected in batch.expectations.items():
                actual = self._lookup(_split(path))
                actual = None if actual is _MISSING else actual
                if actual != expected:
                    raise WriteConflictError(path, expected, actual)
            for path, value in batch.updates.items():
                self._set(_split(path), value)

    def set(self, path: str, value: Any) -> None:
        with self._lock:
            self._set(_split(path), value)

    # -- seeding helpers ---------------------------------------------------

    def put_user(self, user_id: str, **fields) -> dict:
        data = {
            "id": user_id,
            "name": fields.pop("name", user_id),
            "email": fields.pop("email", f"{user_id}@example.com"),
            "status": fields.pop("status", "active"),
            "balance": Decimal("0"),
            "total_earnings": Decimal("0"),
            "daily_earnings": Decimal("0"),
            "weekly_earnings": Decimal("0"),
            "monthly_earnings": Decimal("0"),
        }
        data.update(fields)
        self.set(f"users/{user_id}", data)
        return data

    def put_package(self, package_id: str, **fields) -> dict:
        data = {"id": package_id, "name": fields.pop("name", package_id), "price": Decimal("0")}
        data.update(fields)
        self.set(f"packages/{package_id}", data)
        return data

    def put_order(self, order_id: str, user_id: str, package_id: str, **fields) -> dict:
        data = {
            "id": order_id,
            "user_id": user_id,
            "package_id": package_id,
            "status": "Pending Approval",
            "created_at": datetime.now(timezone.utc),
        }
        data.update(fields)
        self.set(f"orders/{order_id}", data)
        return data

    def put_withdrawal(self, request_id: str, user_id: str, amount: Decimal, **fields) -> dict:
        data = {
            "id": request_id,
            "user_id": user_id,
            "amount": amount,
            "status": "Pending",
            "requested_at": datetime.now(timezone.utc),
        }
        data.update(fields)
        self.set(f"withdrawalRequests/{request_id}", data)
        return data

    def put_referral(self, referrer_id: str, **fields) -> str:
        key = self.push_key()
        self.set(f"users/{referrer_id}/referrals/{key}", dict(fields))
        return key
