from datetime import datetime, timezone

import pytest

from kidato.adapters.base import RawDocument, StaticAuth
from kidato.domain.errors import NotAuthenticated
from kidato.domain.models import Profile, ProfileForm, UploadRequest
from kidato.domain.projector import project_files
from kidato.domain.session import SyncSession
from kidato.domain.state import SyncState


@pytest.fixture
def session(memory_source, auth):
	return SyncSession(memory_source, auth)


async def _settle(session):
	await session.source.drain()
	await session.writes.wait_idle()
	await session.source.drain()


@pytest.mark.asyncio
async def test_start_creates_profile_and_observes_it(session, memory_source):
	handle = await session.start()
	await _settle(session)
	assert handle.active is True
	assert memory_source.document("users", "u1")["name"] == "Jane Wanjiru"
	assert session.state.profile.value.uid == "u1"
	assert session.state.profile_name.value == "Jane Wanjiru"
	assert session.state.profile_completed.value is False
	assert memory_source.calls["merge_document"] == 1


@pytest.mark.asyncio
async def test_start_requires_principal(memory_source):
	session = SyncSession(memory_source, StaticAuth())
	with pytest.raises(NotAuthenticated):
		await session.start()
	assert sum(memory_source.calls.values()) == 0


@pytest.mark.asyncio
async def test_start_twice_keeps_one_profile_channel(session, memory_source):
	first = await session.start()
	second = await session.start()
	assert first is second
	assert memory_source.channels_opened["users/u1"] == 1


@pytest.mark.asyncio
async def test_legacy_profile_is_backfilled_once(session, memory_source):
	memory_source.seed(
		"users",
		"u1",
		{"name": "Jane", "regNo": "E123", "school": "s1", "course": "c1", "yearOfStudy": "2"},
	)
	await session.start()
	await _settle(session)

	stored = memory_source.document("users", "u1")
	assert stored["schoolId"] == "s1"
	assert stored["courseId"] == "c1"
	assert stored["year"] == 2
	assert stored["role"] == "student"
	assert stored["semesterKey"] == ""
	assert memory_source.calls["merge_document"] == 1
	assert session.state.profile.value.school_id == "s1"


@pytest.mark.asyncio
async def test_profile_save_converges_with_live_snapshot(session, memory_source):
	await session.start()
	await _settle(session)
	form = ProfileForm(name="Jane", reg_no="E123", school_id="s1", course_id="c1", year=2, semester=1)
	optimistic = await session.save_profile(form)
	assert session.state.profile.value == optimistic
	await _settle(session)
	authoritative = session.state.profile.value
	assert authoritative == optimistic
	assert session.state.profile_completed.value is True


def test_profile_snapshot_then_patch_converges():
	authoritative = Profile(
		uid="u1",
		name="Jane",
		reg_no="E123",
		school_id="s1",
		course_id="c1",
		year=2,
		semester=1,
		updated_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
	)
	patch = dict(name="Jane", reg_no="E123", school_id="s1", course_id="c1", year=2, semester=1)

	first = SyncState()
	first.patch_profile(uid="u1", **patch)
	first.apply_profile(authoritative)

	second = SyncState()
	second.apply_profile(authoritative)
	second.patch_profile(uid="u1", **patch)

	assert first.profile.value == second.profile.value == authoritative
	assert first.profile_completed.value is second.profile_completed.value is True


@pytest.mark.asyncio
async def test_upload_groups_under_normalised_course(session, memory_source):
	await session.start()
	session.start_listening_files()
	await _settle(session)

	record = await session.upload_file(UploadRequest(title="CAT 2 2023", course_code="ccs3102"), b"pdf-bytes")
	assert record.course_code == "CCS3102"
	assert [item.id for item in session.state.grouped_by_course.value["CCS3102"]] == [record.id]

	await _settle(session)
	files = session.state.files.value
	assert [item.id for item in files] == [record.id]
	assert files[0].uploaded_at is not None
	assert list(session.state.grouped_by_course.value) == ["CCS3102"]


@pytest.mark.asyncio
async def test_snapshot_before_optimistic_insert_converges(memory_source):
	state = SyncState()
	doc_id = await memory_source.add_document(
		"files", {"title": "CAT", "courseCode": "CCS3102", "uploadedAt": datetime.now(timezone.utc)}
	)
	authoritative = project_files([RawDocument("files", doc_id, memory_source.document("files", doc_id))])
	state.apply_files(authoritative)
	assert state.add_file(authoritative[0]) is False
	assert state.files.value == authoritative


@pytest.mark.asyncio
async def test_files_listing_is_newest_first(session, memory_source):
	memory_source.seed("files", "old", {"title": "old", "courseCode": "AAA", "uploadedAt": "2023-01-01T00:00:00+00:00"})
	memory_source.seed("files", "new", {"title": "new", "courseCode": "AAA", "uploadedAt": "2024-01-01T00:00:00+00:00"})
	session.start_listening_files()
	await _settle(session)
	assert [item.id for item in session.state.files.value] == ["new", "old"]
	assert [item.id for item in session.state.grouped_by_course.value["AAA"]] == ["new", "old"]


@pytest.mark.asyncio
async def test_stop_closes_channels_and_resets_state(session, memory_source):
	await session.start()
	session.start_listening_files()
	await _settle(session)
	session.state.errors.report("upload", "stale")

	await session.stop()
	assert memory_source.open_channels() == 0
	assert session.state.profile.value == Profile()
	assert session.state.files.value == ()
	assert session.state.errors.active() == {}

	await memory_source.merge_document("users", "u1", {"name": "After"})
	await memory_source.drain()
	assert session.state.profile_name.value is None
