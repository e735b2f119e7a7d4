"""Per-principal wiring of subscriptions, projections, state and writes."""

from __future__ import annotations

import logging
from typing import Optional

from kidato.adapters.base import AuthProvider, RawDocument, RemoteDocumentSource
from kidato.domain.catalog import CatalogService
from kidato.domain.errors import NotAuthenticated
from kidato.domain.models import FileRecord, Profile, ProfileForm, UploadRequest
from kidato.domain.projector import project_files, project_profile
from kidato.domain.state import SyncState
from kidato.domain.subscriptions import SubscriptionHandle, SubscriptionKey, SubscriptionManager
from kidato.domain.writes import ProgressListener, WriteCoordinator
from kidato.obs.logging import bind_context, reset_context
from kidato.settings import settings

logger = logging.getLogger(__name__)


class SyncSession:
	"""Everything one signed-in principal needs, started and stopped together.

	``start`` makes sure the profile document exists and opens the profile
	channel. The file list is opened separately with
	``start_listening_files``, since only some screens need it. ``stop``
	closes every channel and clears local state, as on logout.
	"""

	def __init__(
		self,
		source: RemoteDocumentSource,
		auth: AuthProvider,
		state: Optional[SyncState] = None,
		*,
		users_collection: Optional[str] = None,
		files_collection: Optional[str] = None,
	):
		self.source = source
		self.auth = auth
		self.state = state or SyncState()
		self.users_collection = users_collection or settings.users_collection
		self.files_collection = files_collection or settings.files_collection
		self.subscriptions = SubscriptionManager(source, self.state.errors)
		self.writes = WriteCoordinator(
			source,
			auth,
			self.state,
			users_collection=self.users_collection,
			files_collection=self.files_collection,
		)
		self.catalog = CatalogService(source, self.state.errors)

	def _principal(self) -> str:
		principal_id = self.auth.current_principal_id()
		if not principal_id:
			raise NotAuthenticated()
		return principal_id

	async def start(self) -> SubscriptionHandle:
		principal_id = self._principal()
		tokens = bind_context(principal_id=principal_id, operation="start")
		try:
			await self.writes.ensure_profile()
			handle = self.observe_profile()
		finally:
			reset_context(tokens)
		logger.info("session started")
		return handle

	def observe_profile(self) -> SubscriptionHandle:
		principal_id = self._principal()
		self.state.set_fallback_name(self.auth.current_principal_display_name())
		key = SubscriptionKey.profile(principal_id, self.users_collection)
		return self.subscriptions.subscribe(key, self._on_profile)

	def _on_profile(self, raw: RawDocument) -> None:
		projection = project_profile(raw)
		self.state.apply_profile(projection.snapshot)
		if projection.backfill is not None:
			self.writes.persist_backfill(projection.backfill)

	def start_listening_files(self) -> SubscriptionHandle:
		key = SubscriptionKey.files(self.files_collection)
		return self.subscriptions.subscribe(key, self._on_files)

	def _on_files(self, raws: list[RawDocument]) -> None:
		self.state.apply_files(project_files(raws))

	async def save_profile(self, form: ProfileForm) -> Profile:
		return await self.writes.save_profile(form)

	async def upload_file(
		self,
		request: UploadRequest,
		data: bytes,
		on_progress: Optional[ProgressListener] = None,
	) -> FileRecord:
		return await self.writes.upload_file(request, data, on_progress)

	async def stop(self) -> None:
		self.subscriptions.unsubscribe_all()
		await self.writes.wait_idle()
		self.state.reset()
		logger.info("session stopped")
