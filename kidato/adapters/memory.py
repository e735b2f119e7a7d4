"""In-memory document source used in tests and local dev."""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Sequence
from urllib.parse import quote

import ulid

from kidato.adapters.base import (
	BlobRef,
	DocumentCallback,
	ErrorCallback,
	FieldFilter,
	OrderBy,
	ProgressCallback,
	QueryCallback,
	RawDocument,
	apply_merge,
	sort_documents,
)
from kidato.settings import settings

logger = logging.getLogger(__name__)


class BackendUnavailable(ConnectionError):
	"""Injected failure standing in for a network or backend error."""


@dataclass
class _Listener:
	collection: str
	doc_id: Optional[str]
	filters: tuple[FieldFilter, ...]
	order_by: Optional[OrderBy]
	on_next: Callable[[Any], None]
	on_error: ErrorCallback
	channel: "MemoryChannel"


class MemoryChannel:
	def __init__(self, source: "InMemoryDocumentSource", target: str):
		self._source = source
		self.target = target
		self._closed = False

	@property
	def closed(self) -> bool:
		return self._closed

	def close(self) -> None:
		if self._closed:
			return
		self._closed = True
		self._source._detach(self)


class InMemoryDocumentSource:
	"""Dict-backed stand-in for the managed backend.

	Deliveries are scheduled on the running loop rather than invoked inline,
	so callers observe the same asynchrony as with a networked backend;
	``drain()`` waits until every scheduled delivery has run.
	"""

	def __init__(
		self,
		*,
		download_base_url: Optional[str] = None,
		chunk_size: Optional[int] = None,
		clock: Optional[Callable[[], datetime]] = None,
	):
		self.download_base_url = (download_base_url or settings.download_base_url).rstrip("/")
		self.chunk_size = chunk_size or settings.upload_chunk_size
		self._clock = clock or (lambda: datetime.now(timezone.utc))
		self._collections: dict[str, dict[str, dict[str, Any]]] = {}
		self._blobs: dict[str, tuple[bytes, str]] = {}
		self._listeners: list[_Listener] = []
		self._failures: dict[str, list[str]] = {}
		self._pending = 0
		self.calls: Counter[str] = Counter()
		self.channels_opened: Counter[str] = Counter()

	# --- Test and seeding helpers ---
	def seed(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
		"""Store a document directly, without notifying listeners."""
		self._collections.setdefault(collection, {})[doc_id] = copy.deepcopy(dict(data))

	def document(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
		data = self._collections.get(collection, {}).get(doc_id)
		return copy.deepcopy(data) if data is not None else None

	def documents(self, collection: str) -> dict[str, dict[str, Any]]:
		return copy.deepcopy(self._collections.get(collection, {}))

	def blob(self, path: str) -> Optional[bytes]:
		entry = self._blobs.get(path)
		return entry[0] if entry else None

	def fail_next(self, operation: str, message: str = "backend unavailable") -> None:
		"""Make the next call to ``operation`` raise :class:`BackendUnavailable`."""
		self._failures.setdefault(operation, []).append(message)

	def emit_error(self, collection: str, message: str = "listen stream closed") -> None:
		"""Report a transport error on every open channel watching ``collection``."""
		loop = asyncio.get_running_loop()
		error = BackendUnavailable(message)
		for listener in list(self._listeners):
			if listener.collection == collection:
				self._pending += 1
				loop.call_soon(self._deliver_error, listener, error)

	def open_channels(self, target: Optional[str] = None) -> int:
		return sum(1 for item in self._listeners if target is None or item.channel.target == target)

	async def drain(self) -> None:
		while self._pending:
			await asyncio.sleep(0)

	def _maybe_fail(self, operation: str) -> None:
		self.calls[operation] += 1
		queued = self._failures.get(operation)
		if queued:
			raise BackendUnavailable(queued.pop(0))

	# --- Reads ---
	async def get_document(self, collection: str, doc_id: str) -> RawDocument:
		self._maybe_fail("get_document")
		await asyncio.sleep(0)
		return self._snapshot_document(collection, doc_id)

	async def query_collection(
		self,
		collection: str,
		filters: Sequence[FieldFilter] = (),
		order_by: Optional[OrderBy] = None,
	) -> list[RawDocument]:
		self._maybe_fail("query_collection")
		await asyncio.sleep(0)
		return self._snapshot_query(collection, tuple(filters), order_by)

	def _snapshot_document(self, collection: str, doc_id: str) -> RawDocument:
		data = self._collections.get(collection, {}).get(doc_id)
		return RawDocument(collection, doc_id, copy.deepcopy(data) if data is not None else None)

	def _snapshot_query(
		self,
		collection: str,
		filters: tuple[FieldFilter, ...],
		order_by: Optional[OrderBy],
	) -> list[RawDocument]:
		docs = [
			RawDocument(collection, doc_id, copy.deepcopy(data))
			for doc_id, data in self._collections.get(collection, {}).items()
			if all(item.matches(data) for item in filters)
		]
		return sort_documents(docs, order_by)

	# --- Live channels ---
	def subscribe_document(
		self,
		collection: str,
		doc_id: str,
		on_next: DocumentCallback,
		on_error: ErrorCallback,
	) -> MemoryChannel:
		target = f"{collection}/{doc_id}"
		return self._attach(target, collection, doc_id, (), None, on_next, on_error)

	def subscribe_collection(
		self,
		collection: str,
		filters: Sequence[FieldFilter],
		order_by: Optional[OrderBy],
		on_next: QueryCallback,
		on_error: ErrorCallback,
	) -> MemoryChannel:
		return self._attach(collection, collection, None, tuple(filters), order_by, on_next, on_error)

	def _attach(
		self,
		target: str,
		collection: str,
		doc_id: Optional[str],
		filters: tuple[FieldFilter, ...],
		order_by: Optional[OrderBy],
		on_next: Callable[[Any], None],
		on_error: ErrorCallback,
	) -> MemoryChannel:
		self._maybe_fail("subscribe")
		channel = MemoryChannel(self, target)
		listener = _Listener(collection, doc_id, filters, order_by, on_next, on_error, channel)
		self._listeners.append(listener)
		self.channels_opened[target] += 1
		self._schedule(listener)
		return channel

	def _detach(self, channel: MemoryChannel) -> None:
		self._listeners = [item for item in self._listeners if item.channel is not channel]

	def _schedule(self, listener: _Listener) -> None:
		if listener.doc_id is not None:
			payload: Any = self._snapshot_document(listener.collection, listener.doc_id)
		else:
			payload = self._snapshot_query(listener.collection, listener.filters, listener.order_by)
		self._pending += 1
		asyncio.get_running_loop().call_soon(self._deliver, listener, payload)

	def _deliver(self, listener: _Listener, payload: Any) -> None:
		self._pending -= 1
		if listener.channel.closed:
			return
		listener.on_next(payload)

	def _deliver_error(self, listener: _Listener, error: Exception) -> None:
		self._pending -= 1
		if listener.channel.closed:
			return
		listener.on_error(error)

	def _notify(self, collection: str, doc_id: str) -> None:
		for listener in list(self._listeners):
			if listener.collection != collection:
				continue
			if listener.doc_id is not None and listener.doc_id != doc_id:
				continue
			self._schedule(listener)

	# --- Writes ---
	async def merge_document(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None:
		self._maybe_fail("merge_document")
		await asyncio.sleep(0)
		docs = self._collections.setdefault(collection, {})
		docs[doc_id] = apply_merge(docs.get(doc_id), copy.deepcopy(dict(fields)), self._clock())
		self._notify(collection, doc_id)

	async def add_document(self, collection: str, fields: Mapping[str, Any]) -> str:
		self._maybe_fail("add_document")
		await asyncio.sleep(0)
		doc_id = ulid.new().str
		self._collections.setdefault(collection, {})[doc_id] = apply_merge(
			None, copy.deepcopy(dict(fields)), self._clock()
		)
		self._notify(collection, doc_id)
		return doc_id

	# --- Blobs ---
	async def upload_blob(
		self,
		path: str,
		data: bytes,
		on_progress: Optional[ProgressCallback] = None,
	) -> BlobRef:
		self._maybe_fail("upload_blob")
		total = len(data)
		transferred = 0
		while transferred < total:
			transferred = min(total, transferred + self.chunk_size)
			if on_progress is not None:
				on_progress(transferred, total)
			await asyncio.sleep(0)
		generation = ulid.new().str
		self._blobs[path] = (bytes(data), generation)
		logger.debug("blob stored", extra={"path": path, "size_bytes": total})
		return BlobRef(path=path, size_bytes=total, generation=generation)

	async def resolve_download_url(self, ref: BlobRef) -> str:
		self._maybe_fail("resolve_download_url")
		await asyncio.sleep(0)
		entry = self._blobs.get(ref.path)
		if entry is None:
			raise FileNotFoundError(f"Object does not exist at location: {ref.path}")
		_, generation = entry
		return f"{self.download_base_url}/{quote(ref.path, safe='')}?alt=media&token={generation}"
