"""Data store gateway contract and the in-memory reference gateway."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Protocol, Sequence, Tuple, Union

from .errors import InvalidPayload, MediaUploadFailed, NotFound, PermissionDenied, StoreUnavailable
from .hub import ChangeCallback, FeedHub, FeedSubscription
from .models import ChangeEvent, EventKind, now_iso

COLLECTIONS = (
    "messages",
    "presence",
    "profiles",
    "tasks",
    "notifications",
    "applications",
    "ratings",
)
PRIMARY_KEYS = {"presence": "user_id"}


@dataclass(frozen=True)
class Eq:
    field: str
    value: Any

    def matches(self, row: Mapping[str, Any]) -> bool:
        return row.get(self.field) == self.value

    def to_dict(self) -> Dict[str, Any]:
        return {"op": "eq", "field": self.field, "value": self.value}


@dataclass(frozen=True)
class In:
    field: str
    values: Tuple[Any, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", tuple(self.values))

    def matches(self, row: Mapping[str, Any]) -> bool:
        return row.get(self.field) in self.values

    def to_dict(self) -> Dict[str, Any]:
        return {"op": "in", "field": self.field, "values": list(self.values)}


@dataclass(frozen=True)
class NotTrue:
    """Matches rows where ``field`` is false or unset."""

    field: str

    def matches(self, row: Mapping[str, Any]) -> bool:
        return row.get(self.field) is not True

    def to_dict(self) -> Dict[str, Any]:
        return {"op": "not_true", "field": self.field}


@dataclass(frozen=True, init=False)
class And:
    clauses: Tuple["Filter", ...]

    def __init__(self, *clauses: "Filter") -> None:
        object.__setattr__(self, "clauses", tuple(clauses))

    def matches(self, row: Mapping[str, Any]) -> bool:
        return all(clause.matches(row) for clause in self.clauses)

    def to_dict(self) -> Dict[str, Any]:
        return {"op": "and", "clauses": [clause.to_dict() for clause in self.clauses]}


@dataclass(frozen=True, init=False)
class Or:
    clauses: Tuple["Filter", ...]

    def __init__(self, *clauses: "Filter") -> None:
        object.__setattr__(self, "clauses", tuple(clauses))

    def matches(self, row: Mapping[str, Any]) -> bool:
        return any(clause.matches(row) for clause in self.clauses)

    def to_dict(self) -> Dict[str, Any]:
        return {"op": "or", "clauses": [clause.to_dict() for clause in self.clauses]}


Filter = Union[Eq, In, NotTrue, And, Or]


def filter_from_dict(payload: Any) -> Filter:
    if not isinstance(payload, dict):
        raise InvalidPayload("filter must be an object")
    op = payload.get("op")
    if op in ("and", "or"):
        clauses = payload.get("clauses")
        if not isinstance(clauses, list) or not clauses:
            raise InvalidPayload(f"{op} requires clauses")
        parsed = [filter_from_dict(clause) for clause in clauses]
        return And(*parsed) if op == "and" else Or(*parsed)
    field = payload.get("field")
    if not isinstance(field, str) or not field:
        raise InvalidPayload("filter field required")
    if op == "eq":
        return Eq(field, payload.get("value"))
    if op == "in":
        values = payload.get("values")
        if not isinstance(values, list):
            raise InvalidPayload("in requires values")
        return In(field, tuple(values))
    if op == "not_true":
        return NotTrue(field)
    raise InvalidPayload(f"unsupported filter op: {op!r}")


def pair_filter(user_a: str, user_b: str) -> Or:
    """Rows exchanged between ``user_a`` and ``user_b`` in either direction."""

    return Or(
        And(Eq("sender_id", user_a), Eq("receiver_id", user_b)),
        And(Eq("sender_id", user_b), Eq("receiver_id", user_a)),
    )


@dataclass(frozen=True)
class Order:
    field: str
    ascending: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "ascending": self.ascending}

    @classmethod
    def from_dict(cls, payload: Any) -> "Order":
        if not isinstance(payload, dict) or not isinstance(payload.get("field"), str):
            raise InvalidPayload("order requires field")
        return cls(field=payload["field"], ascending=bool(payload.get("ascending", True)))


class DataStore(Protocol):
    async def select(
        self,
        collection: str,
        where: Filter | None = None,
        order: Order | None = None,
        limit: int | None = None,
    ) -> List[Dict[str, Any]]: ...

    async def select_one(self, collection: str, where: Filter) -> Dict[str, Any]: ...

    async def insert(self, collection: str, rows: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]: ...

    async def update(self, collection: str, values: Mapping[str, Any], where: Filter) -> List[Dict[str, Any]]: ...

    async def delete(self, collection: str, where: Filter) -> List[Dict[str, Any]]: ...

    async def upsert(
        self, collection: str, rows: Sequence[Mapping[str, Any]], on: str | None = None
    ) -> List[Dict[str, Any]]: ...

    async def subscribe(self, collection: str, where: Filter | None, callback: ChangeCallback) -> FeedSubscription: ...

    async def unsubscribe(self, subscription: FeedSubscription) -> None: ...

    async def upload(self, bucket: str, path: str, data: bytes) -> str: ...

    async def close(self) -> None: ...


def _sort_key(value: Any) -> tuple:
    return (value is None, value)


class InMemoryStore:
    """Process-local gateway with a change feed, used by tests, the CLI and the HTTP app."""

    def __init__(
        self,
        collections: Iterable[str] = COLLECTIONS,
        *,
        read_only: Iterable[str] = (),
        public_url: str = "memory://storage",
        now_func: Callable[[], str] = now_iso,
    ) -> None:
        self._tables: Dict[str, List[Dict[str, Any]]] = {name: [] for name in collections}
        self._read_only = set(read_only)
        self._objects: Dict[Tuple[str, str], bytes] = {}
        self._public_url = public_url.rstrip("/")
        self._now = now_func
        self.hub = FeedHub()

    def _table(self, collection: str) -> List[Dict[str, Any]]:
        try:
            return self._tables[collection]
        except KeyError:
            raise StoreUnavailable(f'relation "{collection}" does not exist') from None

    def _writable(self, collection: str) -> List[Dict[str, Any]]:
        table = self._table(collection)
        if collection in self._read_only:
            raise PermissionDenied(f"writes to {collection} are not permitted")
        return table

    def _with_defaults(self, collection: str, row: Mapping[str, Any]) -> Dict[str, Any]:
        prepared = dict(row)
        pk = PRIMARY_KEYS.get(collection, "id")
        if pk == "id" and not prepared.get("id"):
            prepared["id"] = str(uuid.uuid4())
            prepared.setdefault("created_at", self._now())
        if not prepared.get(pk):
            raise StoreUnavailable(f"{collection}.{pk} must not be null")
        return prepared

    def _emit(self, kind: EventKind, collection: str, row: Dict[str, Any], old: Dict[str, Any] | None = None) -> None:
        self.hub.broadcast(ChangeEvent(kind=kind, collection=collection, row=dict(row), old=old))

    def snapshot(self, collection: str) -> List[Dict[str, Any]]:
        return [dict(row) for row in self._table(collection)]

    async def select(
        self,
        collection: str,
        where: Filter | None = None,
        order: Order | None = None,
        limit: int | None = None,
    ) -> List[Dict[str, Any]]:
        rows = [dict(row) for row in self._table(collection) if where is None or where.matches(row)]
        if order is not None:
            rows.sort(key=lambda row: _sort_key(row.get(order.field)), reverse=not order.ascending)
        if limit is not None:
            rows = rows[: max(limit, 0)]
        return rows

    async def select_one(self, collection: str, where: Filter) -> Dict[str, Any]:
        rows = await self.select(collection, where, limit=1)
        if not rows:
            raise NotFound(f"no {collection} row matches")
        return rows[0]

    async def insert(self, collection: str, rows: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        table = self._writable(collection)
        pk = PRIMARY_KEYS.get(collection, "id")
        prepared = [self._with_defaults(collection, row) for row in rows]
        existing = {row.get(pk) for row in table}
        for row in prepared:
            if row[pk] in existing:
                raise StoreUnavailable(f"duplicate key {pk}={row[pk]!r} in {collection}")
            existing.add(row[pk])
        for row in prepared:
            table.append(row)
            self._emit(EventKind.INSERT, collection, row)
        return [dict(row) for row in prepared]

    async def update(self, collection: str, values: Mapping[str, Any], where: Filter) -> List[Dict[str, Any]]:
        table = self._writable(collection)
        updated: List[Dict[str, Any]] = []
        for row in table:
            if not where.matches(row):
                continue
            old = dict(row)
            row.update(values)
            updated.append(dict(row))
            self._emit(EventKind.UPDATE, collection, row, old)
        return updated

    async def delete(self, collection: str, where: Filter) -> List[Dict[str, Any]]:
        table = self._writable(collection)
        removed = [row for row in table if where.matches(row)]
        table[:] = [row for row in table if not where.matches(row)]
        for row in removed:
            self._emit(EventKind.DELETE, collection, row, dict(row))
        return [dict(row) for row in removed]

    async def upsert(
        self, collection: str, rows: Sequence[Mapping[str, Any]], on: str | None = None
    ) -> List[Dict[str, Any]]:
        table = self._writable(collection)
        key = on or PRIMARY_KEYS.get(collection, "id")
        written: List[Dict[str, Any]] = []
        for incoming in rows:
            current = next((row for row in table if incoming.get(key) is not None and row.get(key) == incoming.get(key)), None)
            if current is None:
                row = self._with_defaults(collection, incoming)
                table.append(row)
                self._emit(EventKind.INSERT, collection, row)
            else:
                old = dict(current)
                current.update(incoming)
                row = current
                self._emit(EventKind.UPDATE, collection, row, old)
            written.append(dict(row))
        return written

    async def subscribe(self, collection: str, where: Filter | None, callback: ChangeCallback) -> FeedSubscription:
        self._table(collection)
        return self.hub.subscribe(collection, where, callback)

    async def unsubscribe(self, subscription: FeedSubscription) -> None:
        self.hub.unsubscribe(subscription)

    async def upload(self, bucket: str, path: str, data: bytes) -> str:
        parts = path.split("/")
        if not bucket or not path or any(part in ("", ".", "..") for part in parts):
            raise MediaUploadFailed(f"invalid object path: {path!r}")
        if not isinstance(data, (bytes, bytearray)):
            raise MediaUploadFailed("upload payload must be bytes")
        self._objects[(bucket, path)] = bytes(data)
        return f"{self._public_url}/{bucket}/{path}"

    async def download(self, bucket: str, path: str) -> bytes:
        try:
            return self._objects[(bucket, path)]
        except KeyError:
            raise NotFound(f"no object {bucket}/{path}") from None

    async def close(self) -> None:
        return None
