"""Adapter boundary between the sync core and a managed document backend.

Concrete bindings implement :class:`RemoteDocumentSource`. Live channels
deliver the current state once right after they open and then once per
change, in the order the backend emits them. Callbacks run on the event
loop thread.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence, runtime_checkable


class _ServerTimestamp:
	"""Placeholder replaced by the backend's clock when a write lands."""

	_instance: Optional["_ServerTimestamp"] = None

	def __new__(cls) -> "_ServerTimestamp":
		if cls._instance is None:
			cls._instance = super().__new__(cls)
		return cls._instance

	def __repr__(self) -> str:
		return "SERVER_TIMESTAMP"

	# Bindings deep-copy incoming fields; the sentinel must survive by identity
	def __copy__(self) -> "_ServerTimestamp":
		return self

	def __deepcopy__(self, memo: dict) -> "_ServerTimestamp":
		return self


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass(frozen=True, slots=True)
class RawDocument:
	"""A document as returned by the backend; ``data is None`` means not found."""

	collection: str
	id: str
	data: Optional[Mapping[str, Any]] = None

	@property
	def exists(self) -> bool:
		return self.data is not None

	def get(self, name: str, default: Any = None) -> Any:
		if self.data is None:
			return default
		return self.data.get(name, default)


@dataclass(frozen=True, slots=True)
class FieldFilter:
	"""Equality filter on one document field."""

	field: str
	value: Any

	def matches(self, data: Mapping[str, Any]) -> bool:
		return data.get(self.field) == self.value


@dataclass(frozen=True, slots=True)
class OrderBy:
	field: str
	descending: bool = False


@dataclass(frozen=True, slots=True)
class BlobRef:
	"""Reference to a stored blob. ``generation`` changes on every overwrite."""

	path: str
	size_bytes: int
	generation: str = ""

	@property
	def name(self) -> str:
		return self.path.rsplit("/", 1)[-1]


DocumentCallback = Callable[[RawDocument], None]
QueryCallback = Callable[[list[RawDocument]], None]
ErrorCallback = Callable[[Exception], None]
ProgressCallback = Callable[[int, int], None]


@runtime_checkable
class ListenerChannel(Protocol):
	"""Open change channel; ``close`` may be called any number of times."""

	def close(self) -> None: ...

	@property
	def closed(self) -> bool: ...


@runtime_checkable
class RemoteDocumentSource(Protocol):
	async def get_document(self, collection: str, doc_id: str) -> RawDocument: ...

	async def query_collection(
		self,
		collection: str,
		filters: Sequence[FieldFilter] = (),
		order_by: Optional[OrderBy] = None,
	) -> list[RawDocument]: ...

	def subscribe_document(
		self,
		collection: str,
		doc_id: str,
		on_next: DocumentCallback,
		on_error: ErrorCallback,
	) -> ListenerChannel: ...

	def subscribe_collection(
		self,
		collection: str,
		filters: Sequence[FieldFilter],
		order_by: Optional[OrderBy],
		on_next: QueryCallback,
		on_error: ErrorCallback,
	) -> ListenerChannel: ...

	async def merge_document(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None: ...

	async def add_document(self, collection: str, fields: Mapping[str, Any]) -> str: ...

	async def upload_blob(
		self,
		path: str,
		data: bytes,
		on_progress: Optional[ProgressCallback] = None,
	) -> BlobRef: ...

	async def resolve_download_url(self, ref: BlobRef) -> str: ...


@runtime_checkable
class AuthProvider(Protocol):
	def current_principal_id(self) -> Optional[str]: ...

	def current_principal_display_name(self) -> Optional[str]: ...


@dataclass(slots=True)
class StaticAuth:
	"""Auth collaborator holding a fixed principal, for local runs and tests."""

	principal_id: Optional[str] = None
	display_name: Optional[str] = None

	def current_principal_id(self) -> Optional[str]:
		return self.principal_id

	def current_principal_display_name(self) -> Optional[str]:
		return self.display_name

	def sign_in(self, principal_id: str, display_name: Optional[str] = None) -> None:
		self.principal_id = principal_id
		self.display_name = display_name

	def sign_out(self) -> None:
		self.principal_id = None
		self.display_name = None


def apply_merge(current: Optional[Mapping[str, Any]], fields: Mapping[str, Any], now: Any) -> dict[str, Any]:
	"""Shallow merge used by bindings that emulate set-with-merge."""
	merged = dict(current or {})
	for key, value in fields.items():
		merged[key] = now if value is SERVER_TIMESTAMP else value
	return merged


def sort_documents(docs: list[RawDocument], order_by: Optional[OrderBy]) -> list[RawDocument]:
	"""Order documents by one field. Missing values rank lowest: first when
	ascending, last when descending. Documents lacking the field stay in the result.
	"""
	if order_by is None:
		return sorted(docs, key=lambda doc: doc.id)

	def _key(doc: RawDocument) -> tuple[int, Any]:
		value = doc.get(order_by.field)
		return (0, "") if value is None else (1, value)

	return sorted(docs, key=_key, reverse=order_by.descending)
