"""Observable local state mirrored from the backend.

Only live deliveries and the write coordinator mutate :class:`SyncState`;
everything else reads values or registers watchers.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Callable, Generic, Optional, Sequence, TypeVar

from kidato.domain.models import DEFAULT_ROLE, EMPTY_PROFILE, FileRecord, Profile
from kidato.domain.views import DerivedViewEngine, GroupedFiles

logger = logging.getLogger(__name__)

T = TypeVar("T")

Watcher = Callable[[T], None]


class Observable(Generic[T]):
	"""Holds one value and notifies watchers when it changes."""

	def __init__(self, initial: T):
		self._value = initial
		self._watchers: list[Watcher] = []

	@property
	def value(self) -> T:
		return self._value

	def set(self, value: T) -> bool:
		if value == self._value:
			return False
		self._value = value
		for watcher in list(self._watchers):
			try:
				watcher(value)
			except Exception:
				logger.exception("state watcher failed")
		return True

	def watch(self, callback: Watcher, *, emit_current: bool = True) -> Callable[[], None]:
		self._watchers.append(callback)
		if emit_current:
			callback(self._value)

		def _unwatch() -> None:
			if callback in self._watchers:
				self._watchers.remove(callback)

		return _unwatch


class ErrorChannel:
	"""Last failure message per context; latest wins, success clears it."""

	def __init__(self) -> None:
		self._contexts: dict[str, Observable[Optional[str]]] = {}

	def channel(self, context: str) -> Observable[Optional[str]]:
		observable = self._contexts.get(context)
		if observable is None:
			observable = Observable(None)
			self._contexts[context] = observable
		return observable

	def report(self, context: str, message: str) -> None:
		self.channel(context).set(message)

	def clear(self, context: str) -> None:
		if context in self._contexts:
			self._contexts[context].set(None)

	def get(self, context: str) -> Optional[str]:
		observable = self._contexts.get(context)
		return observable.value if observable else None

	def active(self) -> dict[str, str]:
		return {
			context: observable.value
			for context, observable in self._contexts.items()
			if observable.value is not None
		}

	def reset(self) -> None:
		for observable in self._contexts.values():
			observable.set(None)


class SyncState:
	def __init__(self, views: Optional[DerivedViewEngine] = None):
		self.views = views or DerivedViewEngine()
		self.profile: Observable[Profile] = Observable(EMPTY_PROFILE)
		self.profile_completed: Observable[bool] = Observable(False)
		self.profile_name: Observable[Optional[str]] = Observable(None)
		self.role: Observable[str] = Observable(DEFAULT_ROLE)
		self.files: Observable[tuple[FileRecord, ...]] = Observable(())
		self.grouped_by_course: Observable[GroupedFiles] = Observable({})
		self.errors = ErrorChannel()
		self._fallback_name: Optional[str] = None

	def set_fallback_name(self, name: Optional[str]) -> None:
		"""Name shown when the profile document has none.

		Sessions pass the auth display name. Auth providers here expose no
		e-mail, so there is no further fallback before the name is unset.
		"""
		self._fallback_name = name or None
		self._publish_profile(self.profile.value)

	def _publish_profile(self, snapshot: Profile) -> None:
		self.profile.set(snapshot)
		self.profile_completed.set(snapshot.profile_completed)
		self.profile_name.set(snapshot.name or self._fallback_name)
		self.role.set(snapshot.role)

	def apply_profile(self, snapshot: Profile) -> None:
		"""Replace the profile with an authoritative snapshot."""
		self._publish_profile(snapshot)

	def patch_profile(self, **changes: Any) -> Profile:
		"""Merge locally confirmed fields into the current profile."""
		patched = dataclasses.replace(self.profile.value, **changes)
		self._publish_profile(patched)
		return patched

	def apply_files(self, records: Sequence[FileRecord]) -> None:
		"""Replace the file list wholesale and refresh the grouped view."""
		self.files.set(tuple(records))
		self.grouped_by_course.set(self.views.grouped(self.files.value))

	def add_file(self, record: FileRecord) -> bool:
		"""Insert a just-written record at the head; no-op if already delivered."""
		current = self.files.value
		if any(item.id == record.id for item in current):
			return False
		self.apply_files((record,) + current)
		return True

	def reset(self) -> None:
		self._fallback_name = None
		self._publish_profile(EMPTY_PROFILE)
		self.apply_files(())
		self.errors.reset()
