"""
backend/tests/conftest.py

Purpose:
    Shared pytest bootstrap: import paths, an in-memory MongoDB double that
    understands the query/update subset the services use, and a scripted
    fixture result gateway.
"""

from __future__ import annotations

import copy
import sys
from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace

import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

_THIS_FILE = Path(__file__).resolve()
_BACKEND_DIR = _THIS_FILE.parents[1]

if str(_BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(_BACKEND_DIR))

import betsettle.database as _db  # noqa: E402
from betsettle.models.fixture import FixtureResult  # noqa: E402
from betsettle.providers.base import BaseResultGateway  # noqa: E402
from betsettle.services import admission_service, fixture_result_service  # noqa: E402
from betsettle.services.errors import TransientFetchFailure  # noqa: E402
from betsettle.utils import utcnow  # noqa: E402


# ---------- In-memory MongoDB double ----------

def _resolve(doc, path: str) -> list:
    """All values at a dotted path, descending into arrays like MongoDB does."""
    values = [doc]
    for part in path.split("."):
        found = []
        for value in values:
            if isinstance(value, dict):
                if part in value:
                    found.append(value[part])
            elif isinstance(value, list):
                for item in value:
                    if isinstance(item, dict) and part in item:
                        found.append(item[part])
        values = found
    return values


def _equals(candidates: list, expected) -> bool:
    if expected is None:
        return not candidates or any(c is None for c in candidates)
    return any(
        c == expected or (isinstance(c, list) and expected in c)
        for c in candidates
    )


def _flatten(candidates: list) -> list:
    flat = []
    for c in candidates:
        if isinstance(c, list):
            flat.extend(c)
        else:
            flat.append(c)
    return flat


def _compare(value, op: str, arg) -> bool:
    if value is None or arg is None:
        return False
    try:
        if op == "$gt":
            return value > arg
        if op == "$gte":
            return value >= arg
        if op == "$lt":
            return value < arg
        return value <= arg
    except TypeError:
        return False


def _is_operator_dict(cond) -> bool:
    return isinstance(cond, dict) and bool(cond) and all(str(k).startswith("$") for k in cond)


def _match_condition(candidates: list, cond) -> bool:
    if not _is_operator_dict(cond):
        return _equals(candidates, cond)
    for op, arg in cond.items():
        if op == "$ne":
            ok = not _equals(candidates, arg)
        elif op == "$in":
            ok = any(_equals(candidates, a) for a in arg)
        elif op == "$nin":
            ok = not any(_equals(candidates, a) for a in arg)
        elif op == "$exists":
            ok = bool(candidates) == bool(arg)
        elif op in ("$gt", "$gte", "$lt", "$lte"):
            ok = any(_compare(c, op, arg) for c in _flatten(candidates))
        else:
            raise NotImplementedError(f"query operator {op}")
        if not ok:
            return False
    return True


def matches(doc: dict, query: dict) -> bool:
    for key, cond in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in cond):
                return False
        elif key == "$and":
            if not all(matches(doc, sub) for sub in cond):
                return False
        elif not _match_condition(_resolve(doc, key), cond):
            return False
    return True


def _get_path(doc: dict, path: str, default=None):
    current = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def _set_path(doc: dict, path: str, value) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def _apply_update(doc: dict, update: dict, *, inserting: bool) -> None:
    for op, fields in update.items():
        for path, value in fields.items():
            if op == "$set":
                _set_path(doc, path, copy.deepcopy(value))
            elif op == "$setOnInsert":
                if inserting:
                    _set_path(doc, path, copy.deepcopy(value))
            elif op == "$inc":
                _set_path(doc, path, _get_path(doc, path, 0) + value)
            elif op == "$push":
                items = list(_get_path(doc, path, None) or [])
                items.append(copy.deepcopy(value))
                _set_path(doc, path, items)
            elif op == "$pull":
                drop = value["$in"] if _is_operator_dict(value) else [value]
                items = _get_path(doc, path, None)
                if isinstance(items, list):
                    _set_path(doc, path, [i for i in items if i not in drop])
            else:
                raise NotImplementedError(f"update operator {op}")


def _seed_from_query(query: dict) -> dict:
    doc: dict = {}
    for key, cond in query.items():
        if key.startswith("$") or _is_operator_dict(cond):
            continue
        _set_path(doc, key, copy.deepcopy(cond))
    return doc


def _sort_key(value):
    return (value is None, value)


class FakeCursor:
    def __init__(self, docs: list[dict]):
        self._docs = docs
        self._skip = 0
        self._limit = 0

    def sort(self, key, direction=1):
        specs = key if isinstance(key, list) else [(key, direction)]
        for field, order in reversed(specs):
            self._docs.sort(key=lambda d: _sort_key(_get_path(d, field)), reverse=order < 0)
        return self

    def skip(self, n: int):
        self._skip = n
        return self

    def limit(self, n: int):
        self._limit = n
        return self

    def _window(self) -> list[dict]:
        docs = self._docs[self._skip:]
        if self._limit:
            docs = docs[:self._limit]
        return [copy.deepcopy(d) for d in docs]

    async def to_list(self, length=None):
        docs = self._window()
        return docs if length is None else docs[:length]

    def __aiter__(self):
        self._iter = iter(self._window())
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    def __init__(self, name: str):
        self.name = name
        self.docs: list[dict] = []
        self.fail_next_insert: Exception | None = None

    def _find(self, query: dict) -> list[dict]:
        return [d for d in self.docs if matches(d, query)]

    async def create_index(self, *_args, **_kwargs):
        return "fake_index"

    async def insert_one(self, doc: dict):
        if self.fail_next_insert is not None:
            exc, self.fail_next_insert = self.fail_next_insert, None
            raise exc
        if "_id" not in doc:
            doc["_id"] = ObjectId()
        if any(d["_id"] == doc["_id"] for d in self.docs):
            raise DuplicateKeyError(f"E11000 duplicate key in {self.name}: _id {doc['_id']}")
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=doc["_id"])

    async def find_one(self, query: dict | None = None, projection=None, **_kwargs):
        found = self._find(query or {})
        return copy.deepcopy(found[0]) if found else None

    def find(self, query: dict | None = None, projection=None, **_kwargs):
        return FakeCursor(self._find(query or {}))

    async def count_documents(self, query: dict, **_kwargs) -> int:
        return len(self._find(query))

    async def update_one(self, query: dict, update: dict, upsert: bool = False, **_kwargs):
        found = self._find(query)
        if found:
            doc = found[0]
            before = copy.deepcopy(doc)
            _apply_update(doc, update, inserting=False)
            return SimpleNamespace(matched_count=1, modified_count=int(doc != before), upserted_id=None)
        if not upsert:
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)
        doc = _seed_from_query(query)
        _apply_update(doc, update, inserting=True)
        doc.setdefault("_id", ObjectId())
        self.docs.append(doc)
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=doc["_id"])

    async def find_one_and_update(
        self, query: dict, update: dict, projection=None, return_document=False, upsert=False, **_kwargs,
    ):
        found = self._find(query)
        if not found:
            if not upsert:
                return None
            doc = _seed_from_query(query)
            _apply_update(doc, update, inserting=True)
            doc.setdefault("_id", ObjectId())
            self.docs.append(doc)
            return copy.deepcopy(doc) if return_document else None
        doc = found[0]
        before = copy.deepcopy(doc)
        _apply_update(doc, update, inserting=False)
        return copy.deepcopy(doc if return_document else before)


class FakeDB:
    def __init__(self):
        self._collections: dict[str, FakeCollection] = {}

    def __getattr__(self, name: str) -> FakeCollection:
        if name.startswith("_"):
            raise AttributeError(name)
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getitem__(self, name: str) -> FakeCollection:
        return getattr(self, name)

    async def command(self, name: str):
        return {"ok": 1.0}


# ---------- Scripted result gateway ----------

class ScriptedGateway(BaseResultGateway):
    """Returns queued results per fixture; an Exception in the queue is raised instead."""

    name = "scripted"

    def __init__(self, results: dict | None = None):
        self.results: dict[str, list] = {}
        self.calls: list[str] = []
        for fixture_id, outcome in (results or {}).items():
            self.set(fixture_id, outcome)

    def set(self, fixture_id, *outcomes) -> None:
        self.results[str(fixture_id)] = list(outcomes)

    async def get_result(self, fixture_id: str) -> FixtureResult:
        fixture_id = str(fixture_id)
        self.calls.append(fixture_id)
        queue = self.results.get(fixture_id)
        if not queue:
            raise TransientFetchFailure(f"No scripted result for fixture {fixture_id}")
        outcome = queue[0] if len(queue) == 1 else queue.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def finished(fixture_id, home: int, away: int, **kwargs) -> FixtureResult:
    return FixtureResult(
        fixture_id=str(fixture_id), finished=True, state="FT",
        home_goals=home, away_goals=away, **kwargs,
    )


def not_finished(fixture_id) -> FixtureResult:
    return FixtureResult(fixture_id=str(fixture_id), finished=False, state="NS")


def leg(fixture_id, market_id="1X2", selector="Home", odds=2.0) -> dict:
    return {
        "fixture_id": str(fixture_id),
        "market_id": market_id,
        "outcome_selector": selector,
        "odds": odds,
    }


def resolves_soon():
    return utcnow() + timedelta(minutes=5)


# ---------- Fixtures ----------

@pytest.fixture
def fake_db(monkeypatch):
    db = FakeDB()
    monkeypatch.setattr(_db, "db", db, raising=False)
    return db


@pytest.fixture
def gateway():
    scripted = ScriptedGateway()
    fixture_result_service.set_gateway(scripted)
    yield scripted
    fixture_result_service.set_gateway(None)


@pytest.fixture(autouse=True)
def _fresh_owner_locks():
    # asyncio locks bind to the loop of the test that first contends on them
    admission_service._owner_locks.clear()
    admission_service._owner_lock_users.clear()
    yield
    admission_service._owner_locks.clear()
    admission_service._owner_lock_users.clear()
