"""Error taxonomy shared by the sync core."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
	from kidato.adapters.base import BlobRef


class SyncError(Exception):
	"""Base class for failures surfaced by the sync core."""

	def __init__(self, message: str):
		super().__init__(message)
		self.message = message


class ValidationError(SyncError):
	"""Raised before any network call when local input is rejected."""


class NotAuthenticated(SyncError):
	"""Raised when a write is attempted without a current principal."""

	def __init__(self, message: str = "Not logged in"):
		super().__init__(message)


class TransportError(SyncError):
	"""Raised when the backend or the network fails."""

	@classmethod
	def wrap(cls, exc: BaseException, fallback: str) -> "TransportError":
		if isinstance(exc, TransportError):
			return exc
		text = str(exc).strip()
		error = cls(text or fallback)
		error.__cause__ = exc
		return error


class UploadFailed(TransportError):
	"""Raised when any stage of the upload pipeline fails.

	``stage`` is one of ``upload``, ``resolve_url`` or ``metadata``.
	"""

	def __init__(self, message: str, *, stage: str):
		super().__init__(message)
		self.stage = stage


class PartialWriteFailure(UploadFailed):
	"""The blob was stored but its metadata document was not written.

	The blob is left in place; nothing compensates for it.
	"""

	def __init__(self, message: str, *, blob: "BlobRef", download_url: Optional[str] = None):
		super().__init__(message, stage="metadata")
		self.blob = blob
		self.download_url = download_url
