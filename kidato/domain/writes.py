"""Coordinated writes: profile saves, file uploads and profile backfills.

Every public write validates its input before touching the network and ends
in exactly one outcome: it returns the confirmed value or raises a
:class:`~kidato.domain.errors.SyncError`. Confirmed writes are applied to
local state immediately; the live channel for the same document delivers the
authoritative version later and overwrites it with equal values.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, Callable, Optional

from kidato.adapters.base import SERVER_TIMESTAMP, AuthProvider, RemoteDocumentSource
from kidato.domain.errors import (
	NotAuthenticated,
	PartialWriteFailure,
	SyncError,
	TransportError,
	UploadFailed,
	ValidationError,
)
from kidato.domain.models import (
	FILE_KINDS,
	FileRecord,
	Profile,
	ProfileForm,
	UploadRequest,
	normalise_course_code,
)
from kidato.domain.projector import BackfillIntent, profile_fields
from kidato.domain.state import SyncState
from kidato.obs import metrics as obs_metrics
from kidato.obs.logging import bind_context, reset_context
from kidato.settings import settings

logger = logging.getLogger(__name__)

PROFILE_CONTEXT = "profile"
UPLOAD_CONTEXT = "upload"
AUTH_CONTEXT = "auth"

DEFAULT_BLOB_NAME = "file"
UNKNOWN_UPLOADER = "Unknown"

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")

ProgressListener = Callable[[int], None]


def safe_title(title: str) -> str:
	return title.strip() or DEFAULT_BLOB_NAME


def storage_path_for(principal_id: str, title: str) -> str:
	"""Blob path for an upload. Re-using a title overwrites the earlier blob."""
	return f"files/{principal_id}/{_UNSAFE_NAME_CHARS.sub('_', safe_title(title))}"


def _progress_reporter(listener: Optional[ProgressListener]) -> Callable[[int, int], None]:
	last = -1

	def _report(transferred: int, total: int) -> None:
		nonlocal last
		if listener is None:
			return
		pct = int(100 * transferred / total) if total > 0 else 100
		pct = max(0, min(100, pct))
		if pct <= last:
			return
		last = pct
		listener(pct)

	return _report


class WriteCoordinator:
	def __init__(
		self,
		source: RemoteDocumentSource,
		auth: AuthProvider,
		state: SyncState,
		*,
		users_collection: Optional[str] = None,
		files_collection: Optional[str] = None,
		default_role: Optional[str] = None,
	):
		self._source = source
		self._auth = auth
		self._state = state
		self.users_collection = users_collection or settings.users_collection
		self.files_collection = files_collection or settings.files_collection
		self.default_role = default_role or settings.default_role
		self._backfills: dict[tuple[str, str], asyncio.Task] = {}

	def _require_principal(self, context: str) -> str:
		principal_id = self._auth.current_principal_id()
		if not principal_id:
			error = NotAuthenticated()
			self._state.errors.report(context, error.message)
			raise error
		return principal_id

	def _reject(self, context: str, message: str) -> ValidationError:
		self._state.errors.report(context, message)
		return ValidationError(message)

	def _failed(self, context: str, operation: str, error: SyncError, started: float) -> SyncError:
		self._state.errors.report(context, error.message)
		obs_metrics.write_outcome(operation, "failure", time.perf_counter() - started)
		logger.warning("write failed", extra={"write": operation, "error": error.message})
		return error

	def _succeeded(self, context: str, operation: str, started: float) -> None:
		self._state.errors.clear(context)
		obs_metrics.write_outcome(operation, "success", time.perf_counter() - started)

	# --- Profile ---
	async def ensure_profile(self) -> bool:
		"""Create the principal's profile document with defaults if it does not exist."""
		principal_id = self._require_principal(AUTH_CONTEXT)
		started = time.perf_counter()
		try:
			raw = await self._source.get_document(self.users_collection, principal_id)
			created = not raw.exists
			if created:
				defaults = profile_fields(
					Profile(
						uid=principal_id,
						name=(self._auth.current_principal_display_name() or "").strip(),
						role=self.default_role,
					)
				)
				defaults["createdAt"] = SERVER_TIMESTAMP
				await self._source.merge_document(self.users_collection, principal_id, defaults)
		except Exception as exc:
			error = TransportError.wrap(exc, "Failed to create profile")
			raise self._failed(AUTH_CONTEXT, "ensure_profile", error, started) from exc
		self._succeeded(AUTH_CONTEXT, "ensure_profile", started)
		if created:
			logger.info("profile created", extra={"uid": principal_id})
		return created

	def _validate_profile(self, form: ProfileForm) -> None:
		if (
			not form.name.strip()
			or not form.reg_no.strip()
			or not form.school_id.strip()
			or not form.course_id.strip()
			or form.year <= 0
			or form.semester <= 0
		):
			raise self._reject(PROFILE_CONTEXT, "Please fill in all fields.")

	async def save_profile(self, form: ProfileForm) -> Profile:
		principal_id = self._require_principal(PROFILE_CONTEXT)
		self._validate_profile(form)
		current = self._state.profile.value
		profile = Profile(
			uid=principal_id,
			name=form.name.strip(),
			reg_no=form.reg_no.strip(),
			school_id=form.school_id.strip(),
			course_id=form.course_id.strip(),
			year=form.year,
			semester=form.semester,
			role=current.role if current.uid == principal_id else self.default_role,
		)
		fields = profile_fields(profile)
		del fields["role"]
		fields["updatedAt"] = SERVER_TIMESTAMP

		tokens = bind_context(principal_id=principal_id, operation="save_profile")
		started = time.perf_counter()
		try:
			try:
				await self._source.merge_document(self.users_collection, principal_id, fields)
			except Exception as exc:
				error = TransportError.wrap(exc, "Failed to save profile.")
				raise self._failed(PROFILE_CONTEXT, "save_profile", error, started) from exc
			self._succeeded(PROFILE_CONTEXT, "save_profile", started)
			return self._state.patch_profile(
				uid=principal_id,
				name=profile.name,
				reg_no=profile.reg_no,
				school_id=profile.school_id,
				course_id=profile.course_id,
				year=profile.year,
				semester=profile.semester,
			)
		finally:
			reset_context(tokens)

	# --- Backfill ---
	def persist_backfill(self, intent: BackfillIntent) -> Optional[asyncio.Task]:
		"""Persist missing fields in the background; one write in flight per document."""
		key = (intent.collection, intent.doc_id)
		if key in self._backfills or not intent.fields:
			return None
		task = asyncio.create_task(
			self._run_backfill(intent), name=f"backfill:{intent.collection}/{intent.doc_id}"
		)
		self._backfills[key] = task
		task.add_done_callback(lambda _task: self._backfills.pop(key, None))
		return task

	async def _run_backfill(self, intent: BackfillIntent) -> None:
		try:
			await self._source.merge_document(intent.collection, intent.doc_id, dict(intent.fields))
		except Exception as exc:
			error = TransportError.wrap(exc, "Failed to update profile defaults")
			logger.exception(
				"backfill failed",
				extra={"doc": f"{intent.collection}/{intent.doc_id}", "fields": sorted(intent.fields)},
			)
			obs_metrics.inc_backfill("failure")
			self._state.errors.report(PROFILE_CONTEXT, error.message)
			return
		obs_metrics.inc_backfill("success")
		logger.info(
			"backfill persisted",
			extra={"doc": f"{intent.collection}/{intent.doc_id}", "fields": sorted(intent.fields)},
		)

	async def wait_idle(self) -> None:
		while self._backfills:
			await asyncio.gather(*list(self._backfills.values()), return_exceptions=True)

	# --- Upload ---
	def _validate_upload(self, request: UploadRequest, data: bytes) -> None:
		if not data:
			raise self._reject(UPLOAD_CONTEXT, "Pick a file first.")
		if not normalise_course_code(request.course_code):
			raise self._reject(UPLOAD_CONTEXT, "Course code is required.")
		if request.kind not in FILE_KINDS:
			raise self._reject(UPLOAD_CONTEXT, f"Unknown file type: {request.kind}")

	def _uploader_name(self) -> str:
		return (
			self._state.profile_name.value
			or self._auth.current_principal_display_name()
			or UNKNOWN_UPLOADER
		)

	async def upload_file(
		self,
		request: UploadRequest,
		data: bytes,
		on_progress: Optional[ProgressListener] = None,
	) -> FileRecord:
		"""Store the blob, resolve its URL, then write the metadata document."""
		principal_id = self._require_principal(UPLOAD_CONTEXT)
		self._validate_upload(request, data)
		title = safe_title(request.title)
		course_code = normalise_course_code(request.course_code)
		path = storage_path_for(principal_id, request.title)

		tokens = bind_context(principal_id=principal_id, operation="upload_file")
		started = time.perf_counter()
		try:
			try:
				ref = await self._source.upload_blob(path, data, _progress_reporter(on_progress))
			except Exception as exc:
				error = UploadFailed(str(exc).strip() or "Upload failed", stage="upload")
				raise self._failed(UPLOAD_CONTEXT, "upload_file", error, started) from exc
			obs_metrics.inc_upload_bytes(ref.size_bytes)

			try:
				url = await self._source.resolve_download_url(ref)
			except Exception as exc:
				error = UploadFailed(str(exc).strip() or "Failed to get download URL", stage="resolve_url")
				raise self._failed(UPLOAD_CONTEXT, "upload_file", error, started) from exc

			uploader_name = self._uploader_name()
			meta: dict[str, Any] = {
				"title": title,
				"type": request.kind,
				"courseCode": course_code,
				"unitName": request.unit_name.strip(),
				"storagePath": path,
				"downloadUrl": url,
				"fileName": ref.name,
				"sizeBytes": ref.size_bytes,
				"uploadedByUid": principal_id,
				"uploadedByName": uploader_name,
				"uploadedAt": SERVER_TIMESTAMP,
			}
			try:
				doc_id = await self._source.add_document(self.files_collection, meta)
			except Exception as exc:
				obs_metrics.inc_orphaned_blob()
				logger.error("metadata write failed after upload", extra={"path": path})
				error = PartialWriteFailure(
					str(exc).strip() or "Failed to save metadata", blob=ref, download_url=url
				)
				raise self._failed(UPLOAD_CONTEXT, "upload_file", error, started) from exc

			self._succeeded(UPLOAD_CONTEXT, "upload_file", started)
			record = FileRecord(
				id=doc_id,
				title=title,
				kind=request.kind,
				course_code=course_code,
				unit_name=request.unit_name.strip(),
				download_url=url,
				uploaded_by_name=uploader_name,
				uploaded_by_uid=principal_id,
				size_bytes=ref.size_bytes,
				storage_path=path,
			)
			self._state.add_file(record)
			logger.info("file uploaded", extra={"file_id": doc_id, "path": path, "size_bytes": ref.size_bytes})
			return record
		finally:
			reset_context(tokens)
