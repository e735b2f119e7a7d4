"""Redis-backed document source.

Documents are hashes under ``{prefix}:doc:{collection}:{id}`` holding one
JSON-encoded value per field, so a merge is a single HSET. Each
collection keeps its ids in a set, and every write publishes the changed
id on ``{prefix}:changes:{collection}``. Live channels are asyncio tasks
that subscribe to that pub/sub channel and re-read the target on every
notification. Blobs are uploaded chunk by chunk into a staging list that
is renamed over the previous blob once complete.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence
from urllib.parse import quote

import redis.asyncio as redis
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
from kidato.infra.redis import redis_client
from kidato.settings import settings

logger = logging.getLogger(__name__)


def _text(value: Any) -> str:
	if isinstance(value, (bytes, bytearray)):
		return bytes(value).decode("utf-8")
	return str(value)


def _encode_value(value: Any) -> Any:
	if isinstance(value, datetime):
		return value.isoformat()
	raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class RedisChannel:
	def __init__(self, target: str):
		self.target = target
		self._closed = False
		self._task: Optional[asyncio.Task] = None

	@property
	def closed(self) -> bool:
		return self._closed

	def close(self) -> None:
		if self._closed:
			return
		self._closed = True
		if self._task is not None and not self._task.done():
			self._task.cancel()


class RedisDocumentSource:
	def __init__(
		self,
		client: Optional[redis.Redis] = None,
		*,
		prefix: Optional[str] = None,
		download_base_url: Optional[str] = None,
		chunk_size: Optional[int] = None,
		poll_interval: Optional[float] = None,
		error_backoff: Optional[float] = None,
	):
		self._client = client if client is not None else redis_client
		self.prefix = prefix or settings.redis_key_prefix
		self.download_base_url = (download_base_url or settings.download_base_url).rstrip("/")
		self.chunk_size = chunk_size or settings.upload_chunk_size
		self.poll_interval = poll_interval if poll_interval is not None else settings.redis_poll_interval_seconds
		self.error_backoff = error_backoff if error_backoff is not None else settings.redis_error_backoff_seconds
		self._channels: set[RedisChannel] = set()

	# --- Key layout ---
	def _doc_key(self, collection: str, doc_id: str) -> str:
		return f"{self.prefix}:doc:{collection}:{doc_id}"

	def _ids_key(self, collection: str) -> str:
		return f"{self.prefix}:ids:{collection}"

	def _changes_key(self, collection: str) -> str:
		return f"{self.prefix}:changes:{collection}"

	def _blob_key(self, path: str) -> str:
		return f"{self.prefix}:blob:{path}"

	def _blob_meta_key(self, path: str) -> str:
		return f"{self.prefix}:blobmeta:{path}"

	@staticmethod
	def _now() -> str:
		return datetime.now(timezone.utc).isoformat()

	@staticmethod
	def _decode_fields(raw: Mapping[Any, Any]) -> dict[str, Any]:
		return {_text(name): json.loads(_text(value)) for name, value in raw.items()}

	# --- Reads ---
	async def get_document(self, collection: str, doc_id: str) -> RawDocument:
		async with self._client.pipeline(transaction=False) as pipe:
			pipe.hgetall(self._doc_key(collection, doc_id))
			pipe.sismember(self._ids_key(collection), doc_id)
			raw, known = await pipe.execute()
		if not raw and not known:
			return RawDocument(collection, doc_id, None)
		return RawDocument(collection, doc_id, self._decode_fields(raw or {}))

	async def query_collection(
		self,
		collection: str,
		filters: Sequence[FieldFilter] = (),
		order_by: Optional[OrderBy] = None,
	) -> list[RawDocument]:
		ids = sorted(_text(item) for item in await self._client.smembers(self._ids_key(collection)))
		if not ids:
			return []
		async with self._client.pipeline(transaction=False) as pipe:
			for doc_id in ids:
				pipe.hgetall(self._doc_key(collection, doc_id))
			values = await pipe.execute()
		docs: list[RawDocument] = []
		for doc_id, raw in zip(ids, values):
			data = self._decode_fields(raw or {})
			if all(item.matches(data) for item in filters):
				docs.append(RawDocument(collection, doc_id, data))
		return sort_documents(docs, order_by)

	# --- Writes ---
	async def _store(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None:
		# One hash field per document field, so HSET merges without a read
		encoded = {
			name: json.dumps(value, default=_encode_value)
			for name, value in apply_merge(None, fields, self._now()).items()
		}
		async with self._client.pipeline(transaction=True) as pipe:
			if encoded:
				pipe.hset(self._doc_key(collection, doc_id), mapping=encoded)
			pipe.sadd(self._ids_key(collection), doc_id)
			await pipe.execute()
		await self._client.publish(self._changes_key(collection), doc_id)

	async def merge_document(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None:
		await self._store(collection, doc_id, fields)

	async def add_document(self, collection: str, fields: Mapping[str, Any]) -> str:
		doc_id = ulid.new().str
		await self._store(collection, doc_id, fields)
		return doc_id
	# --- Blobs ---
	async def upload_blob(
		self,
		path: str,
		data: bytes,
		on_progress: Optional[ProgressCallback] = None,
	) -> BlobRef:
		generation = ulid.new().str
		staging = f"{self._blob_key(path)}:upload:{generation}"
		total = len(data)
		transferred = 0
		await self._client.delete(staging)
		while transferred < total:
			chunk = data[transferred : transferred + self.chunk_size]
			await self._client.rpush(staging, base64.b64encode(chunk).decode("ascii"))
			transferred += len(chunk)
			if on_progress is not None:
				on_progress(transferred, total)
		async with self._client.pipeline(transaction=True) as pipe:
			if total:
				pipe.rename(staging, self._blob_key(path))
			else:
				pipe.delete(self._blob_key(path))
			pipe.hset(self._blob_meta_key(path), mapping={"generation": generation, "size": total})
			await pipe.execute()
		return BlobRef(path=path, size_bytes=total, generation=generation)

	async def read_blob(self, path: str) -> Optional[bytes]:
		meta = await self._client.hgetall(self._blob_meta_key(path))
		if not meta:
			return None
		chunks = await self._client.lrange(self._blob_key(path), 0, -1)
		return b"".join(base64.b64decode(_text(chunk)) for chunk in chunks)

	async def resolve_download_url(self, ref: BlobRef) -> str:
		generation = await self._client.hget(self._blob_meta_key(ref.path), "generation")
		if generation is None:
			raise FileNotFoundError(f"Object does not exist at location: {ref.path}")
		return f"{self.download_base_url}/{quote(ref.path, safe='')}?alt=media&token={_text(generation)}"

	# --- Live channels ---
	def subscribe_document(
		self,
		collection: str,
		doc_id: str,
		on_next: DocumentCallback,
		on_error: ErrorCallback,
	) -> RedisChannel:
		async def _fetch() -> RawDocument:
			return await self.get_document(collection, doc_id)

		return self._open(f"{collection}/{doc_id}", collection, doc_id, _fetch, on_next, on_error)

	def subscribe_collection(
		self,
		collection: str,
		filters: Sequence[FieldFilter],
		order_by: Optional[OrderBy],
		on_next: QueryCallback,
		on_error: ErrorCallback,
	) -> RedisChannel:
		frozen_filters = tuple(filters)

		async def _fetch() -> list[RawDocument]:
			return await self.query_collection(collection, frozen_filters, order_by)

		return self._open(collection, collection, None, _fetch, on_next, on_error)

	def _open(
		self,
		target: str,
		collection: str,
		doc_id: Optional[str],
		fetch: Callable[[], Awaitable[Any]],
		on_next: Callable[[Any], None],
		on_error: ErrorCallback,
	) -> RedisChannel:
		channel = RedisChannel(target)
		channel._task = asyncio.create_task(
			self._listen(channel, collection, doc_id, fetch, on_next, on_error),
			name=f"redis-listen:{target}",
		)
		self._channels.add(channel)
		channel._task.add_done_callback(lambda _task: self._channels.discard(channel))
		return channel

	async def _listen(
		self,
		channel: RedisChannel,
		collection: str,
		doc_id: Optional[str],
		fetch: Callable[[], Awaitable[Any]],
		on_next: Callable[[Any], None],
		on_error: ErrorCallback,
	) -> None:
		pubsub = self._client.pubsub()
		subscribed = False
		try:
			while not channel.closed:
				try:
					if not subscribed:
						await pubsub.subscribe(self._changes_key(collection))
						subscribed = True
					else:
						message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=self.poll_interval)
						if message is None or message.get("type") != "message":
							continue
						if doc_id is not None and _text(message["data"]) != doc_id:
							continue
					payload = await fetch()
					if not channel.closed:
						on_next(payload)
				except Exception as exc:
					# Bad documents and failing callbacks must not end the channel
					logger.warning(
						"redis listener error",
						extra={"target": channel.target, "error": str(exc) or type(exc).__name__},
					)
					self._report_error(channel, on_error, exc)
					await asyncio.sleep(self.error_backoff)
		finally:
			await pubsub.aclose()

	@staticmethod
	def _report_error(channel: RedisChannel, on_error: ErrorCallback, exc: Exception) -> None:
		if channel.closed:
			return
		try:
			on_error(exc)
		except Exception:
			logger.exception("listener error callback failed", extra={"target": channel.target})

	async def close(self) -> None:
		"""Cancel every live channel task opened by this source."""
		channels = list(self._channels)
		for channel in channels:
			channel.close()
		tasks = [channel._task for channel in channels if channel._task is not None]
		if tasks:
			await asyncio.gather(*tasks, return_exceptions=True)
