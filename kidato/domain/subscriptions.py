"""Live subscription bookkeeping: at most one open channel per logical key."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from kidato.adapters.base import FieldFilter, ListenerChannel, OrderBy, RemoteDocumentSource
from kidato.domain.errors import TransportError
from kidato.domain.state import ErrorChannel
from kidato.obs import metrics as obs_metrics
from kidato.obs.logging import bind_context, reset_context
from kidato.settings import settings

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[Any], None]
SubscriptionErrorCallback = Callable[[TransportError], None]


@dataclass(frozen=True, slots=True)
class SubscriptionKey:
	"""Logical identity of a live channel and the target it watches."""

	name: str
	kind: str
	collection: str
	doc_id: Optional[str] = None
	filters: tuple[FieldFilter, ...] = ()
	order_by: Optional[OrderBy] = None

	@classmethod
	def profile(cls, principal_id: str, collection: Optional[str] = None) -> "SubscriptionKey":
		return cls(
			name=f"profile:{principal_id}",
			kind="profile",
			collection=collection or settings.users_collection,
			doc_id=principal_id,
		)

	@classmethod
	def files(cls, collection: Optional[str] = None) -> "SubscriptionKey":
		return cls(
			name="files",
			kind="files",
			collection=collection or settings.files_collection,
			order_by=OrderBy("uploadedAt", descending=True),
		)


@dataclass(eq=False)
class SubscriptionHandle:
	key: SubscriptionKey
	channel: Optional[ListenerChannel] = field(default=None, repr=False)
	active: bool = True


class SubscriptionManager:
	"""Opens, deduplicates and tears down live channels.

	Transport errors are reported on the error channel under the key name and
	passed to the caller; the channel stays open and nothing is retried.
	"""

	def __init__(self, source: RemoteDocumentSource, errors: Optional[ErrorChannel] = None):
		self._source = source
		self._errors = errors or ErrorChannel()
		self._handles: dict[SubscriptionKey, SubscriptionHandle] = {}

	@property
	def errors(self) -> ErrorChannel:
		return self._errors

	def active(self, key: SubscriptionKey) -> Optional[SubscriptionHandle]:
		return self._handles.get(key)

	def subscribe(
		self,
		key: SubscriptionKey,
		on_snapshot: SnapshotCallback,
		on_error: Optional[SubscriptionErrorCallback] = None,
	) -> SubscriptionHandle:
		existing = self._handles.get(key)
		if existing is not None and existing.active:
			obs_metrics.subscription_duplicate(key.kind)
			return existing

		handle = SubscriptionHandle(key)
		self._handles[key] = handle

		def _next(payload: Any) -> None:
			if not handle.active:
				return
			tokens = bind_context(subscription_key=key.name)
			try:
				obs_metrics.snapshot_delivered(key.kind)
				self._errors.clear(key.name)
				on_snapshot(payload)
			except Exception as exc:
				logger.exception("snapshot handler failed", extra={"key": key.name})
				self._errors.report(key.name, str(exc) or "Failed to apply snapshot")
			finally:
				reset_context(tokens)

		def _error(exc: Exception) -> None:
			if not handle.active:
				return
			error = TransportError.wrap(exc, "Listener error")
			obs_metrics.subscription_error(key.kind)
			logger.warning("listener error", extra={"key": key.name, "error": error.message})
			self._errors.report(key.name, error.message)
			if on_error is not None:
				on_error(error)

		try:
			if key.doc_id is not None:
				channel = self._source.subscribe_document(key.collection, key.doc_id, _next, _error)
			else:
				channel = self._source.subscribe_collection(
					key.collection, key.filters, key.order_by, _next, _error
				)
		except Exception as exc:
			handle.active = False
			self._handles.pop(key, None)
			error = TransportError.wrap(exc, "Failed to open listener")
			self._errors.report(key.name, error.message)
			raise error

		handle.channel = channel
		obs_metrics.subscription_opened(key.kind)
		logger.debug("subscription opened", extra={"key": key.name})
		return handle

	def unsubscribe(self, handle: SubscriptionHandle) -> None:
		if not handle.active:
			return
		handle.active = False
		if handle.channel is not None:
			handle.channel.close()
		if self._handles.get(handle.key) is handle:
			del self._handles[handle.key]
		obs_metrics.subscription_closed(handle.key.kind)
		logger.debug("subscription closed", extra={"key": handle.key.name})

	def unsubscribe_all(self) -> None:
		for handle in list(self._handles.values()):
			self.unsubscribe(handle)
