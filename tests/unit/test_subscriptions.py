from unittest.mock import MagicMock

import pytest

from kidato.adapters.base import OrderBy
from kidato.adapters.memory import BackendUnavailable
from kidato.domain.errors import TransportError
from kidato.domain.subscriptions import SubscriptionKey, SubscriptionManager


def test_keys_name_their_targets():
	profile = SubscriptionKey.profile("u1")
	files = SubscriptionKey.files()
	assert (profile.name, profile.collection, profile.doc_id) == ("profile:u1", "users", "u1")
	assert files.name == "files"
	assert files.order_by == OrderBy("uploadedAt", descending=True)


@pytest.mark.asyncio
async def test_subscribe_twice_returns_same_handle_and_one_channel(memory_source):
	manager = SubscriptionManager(memory_source)
	key = SubscriptionKey.profile("u1")
	first = manager.subscribe(key, lambda raw: None)
	second = manager.subscribe(key, lambda raw: None)
	assert second is first
	assert memory_source.channels_opened["users/u1"] == 1
	assert memory_source.open_channels("users/u1") == 1


def test_subscribe_counts_adapter_calls_with_mock():
	source = MagicMock()
	manager = SubscriptionManager(source)
	key = SubscriptionKey.files()
	first = manager.subscribe(key, lambda raws: None)
	second = manager.subscribe(key, lambda raws: None)
	assert first is second
	assert source.subscribe_collection.call_count == 1
	assert source.subscribe_document.call_count == 0


@pytest.mark.asyncio
async def test_initial_snapshot_then_changes_in_order(memory_source):
	memory_source.seed("users", "u1", {"name": "A"})
	manager = SubscriptionManager(memory_source)
	names = []
	manager.subscribe(SubscriptionKey.profile("u1"), lambda raw: names.append(raw.get("name")))
	await memory_source.merge_document("users", "u1", {"name": "B"})
	await memory_source.merge_document("users", "u1", {"name": "C"})
	await memory_source.drain()
	assert names == ["A", "B", "C"]


@pytest.mark.asyncio
async def test_unsubscribe_is_safe_to_repeat_and_drops_pending_deliveries(memory_source):
	manager = SubscriptionManager(memory_source)
	received = []
	handle = manager.subscribe(SubscriptionKey.profile("u1"), received.append)
	manager.unsubscribe(handle)
	manager.unsubscribe(handle)
	await memory_source.drain()
	assert received == []
	assert handle.active is False
	assert handle.channel.closed is True
	assert manager.active(handle.key) is None
	assert memory_source.open_channels() == 0


@pytest.mark.asyncio
async def test_resubscribe_after_unsubscribe_opens_new_channel(memory_source):
	manager = SubscriptionManager(memory_source)
	key = SubscriptionKey.files()
	first = manager.subscribe(key, lambda raws: None)
	manager.unsubscribe(first)
	second = manager.subscribe(key, lambda raws: None)
	assert second is not first
	assert memory_source.channels_opened["files"] == 2
	assert memory_source.open_channels("files") == 1


@pytest.mark.asyncio
async def test_transport_error_is_reported_and_channel_kept(memory_source):
	manager = SubscriptionManager(memory_source)
	errors = []
	snapshots = []
	key = SubscriptionKey.files()
	handle = manager.subscribe(key, snapshots.append, errors.append)
	await memory_source.drain()

	memory_source.emit_error("files", "PERMISSION_DENIED")
	await memory_source.drain()
	assert len(errors) == 1
	assert isinstance(errors[0], TransportError)
	assert isinstance(errors[0].__cause__, BackendUnavailable)
	assert manager.errors.get("files") == "PERMISSION_DENIED"
	assert handle.active is True
	assert memory_source.channels_opened["files"] == 1

	await memory_source.add_document("files", {"title": "late"})
	await memory_source.drain()
	assert len(snapshots) == 2
	assert manager.errors.get("files") is None


@pytest.mark.asyncio
async def test_failure_to_open_raises_and_leaves_no_handle(memory_source):
	manager = SubscriptionManager(memory_source)
	memory_source.fail_next("subscribe", "offline")
	key = SubscriptionKey.profile("u1")
	with pytest.raises(TransportError) as excinfo:
		manager.subscribe(key, lambda raw: None)
	assert excinfo.value.message == "offline"
	assert manager.active(key) is None
	assert manager.errors.get("profile:u1") == "offline"


@pytest.mark.asyncio
async def test_failing_snapshot_handler_is_reported(memory_source):
	manager = SubscriptionManager(memory_source)

	def _handler(_raw):
		raise ValueError("cannot apply")

	handle = manager.subscribe(SubscriptionKey.profile("u1"), _handler)
	await memory_source.drain()
	assert manager.errors.get("profile:u1") == "cannot apply"
	assert handle.active is True


@pytest.mark.asyncio
async def test_unsubscribe_all_closes_every_channel(memory_source):
	manager = SubscriptionManager(memory_source)
	manager.subscribe(SubscriptionKey.profile("u1"), lambda raw: None)
	manager.subscribe(SubscriptionKey.files(), lambda raws: None)
	assert memory_source.open_channels() == 2
	manager.unsubscribe_all()
	assert memory_source.open_channels() == 0
