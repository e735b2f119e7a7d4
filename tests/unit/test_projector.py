from datetime import datetime, timezone

import pytest

from kidato.adapters.base import RawDocument
from kidato.domain.models import EMPTY_PROFILE, Profile, is_profile_complete
from kidato.domain.projector import (
	PROFILE_REQUIRED_FIELDS,
	project_course,
	project_file,
	project_files,
	project_profile,
	project_school,
	profile_fields,
)


def _complete_document(**overrides):
	data = {
		"uid": "u1",
		"name": "Jane",
		"regNo": "E123",
		"schoolId": "s1",
		"courseId": "c1",
		"year": 2,
		"semester": 1,
		"semesterKey": "2.1",
		"profileCompleted": True,
		"role": "student",
	}
	data.update(overrides)
	return RawDocument("users", "u1", data)


@pytest.mark.parametrize(
	"data",
	[
		{},
		{"name": "Jane"},
		{"year": None, "semester": "not-a-number"},
		{"regNo": 42, "role": ["admin"]},
		{"updatedAt": "garbage"},
	],
)
def test_project_profile_defaults_missing_fields(data):
	projection = project_profile(RawDocument("users", "u1", data))
	snapshot = projection.snapshot
	assert snapshot.uid == "u1"
	assert snapshot.school_id == ""
	assert snapshot.course_id == ""
	assert snapshot.year == 0
	assert snapshot.role == "student"
	assert snapshot.profile_completed is False
	assert snapshot.semester_key == ""


def test_missing_document_matches_all_default_document():
	missing = project_profile(RawDocument("users", "u1", None))
	empty = project_profile(RawDocument("users", "u1", {}))
	assert missing.snapshot == empty.snapshot
	assert missing.backfill is None


def test_project_profile_without_document_is_empty_snapshot():
	projection = project_profile(None)
	assert projection.snapshot is EMPTY_PROFILE
	assert projection.backfill is None


def test_complete_document_has_no_backfill():
	projection = project_profile(_complete_document())
	assert projection.backfill is None
	assert projection.snapshot.profile_completed is True
	assert projection.snapshot.semester_key == "2.1"


def test_profile_completed_is_recomputed_not_trusted():
	projection = project_profile(_complete_document(year=0, profileCompleted=True))
	assert projection.snapshot.profile_completed is False


def test_backfill_contains_only_missing_fields():
	projection = project_profile(RawDocument("users", "u1", {"name": "Jane", "regNo": "E123", "role": "admin"}))
	intent = projection.backfill
	assert intent is not None
	assert intent.collection == "users"
	assert intent.doc_id == "u1"
	assert set(intent.fields) == set(PROFILE_REQUIRED_FIELDS) - {"name", "regNo", "role"}
	assert intent.fields["uid"] == "u1"
	assert intent.fields["year"] == 0
	assert intent.fields["profileCompleted"] is False
	assert projection.snapshot.role == "admin"


def test_legacy_fields_are_migrated_and_backfilled():
	legacy = RawDocument(
		"users",
		"u1",
		{"name": "Jane", "regNo": "E123", "school": "s1", "course": "c1", "yearOfStudy": "3"},
	)
	projection = project_profile(legacy)
	assert projection.snapshot.school_id == "s1"
	assert projection.snapshot.course_id == "c1"
	assert projection.snapshot.year == 3
	fields = projection.backfill.fields
	assert fields["schoolId"] == "s1"
	assert fields["courseId"] == "c1"
	assert fields["year"] == 3
	assert fields["semester"] == 0
	assert fields["semesterKey"] == ""


def test_unknown_role_falls_back_to_student():
	projection = project_profile(_complete_document(role="superuser"))
	assert projection.snapshot.role == "student"


def test_updated_at_parses_iso_and_epoch_millis():
	iso = project_profile(_complete_document(updatedAt="2024-03-01T10:00:00+00:00")).snapshot
	millis = project_profile(_complete_document(updatedAt=1709287200000)).snapshot
	expected = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)
	assert iso.updated_at == expected
	assert millis.updated_at == expected


@pytest.mark.parametrize(
	"year,expected",
	[(2, True), (0, False)],
)
def test_profile_completed_requires_every_field(year, expected):
	assert is_profile_complete("Jane", "E123", "s1", "c1", year, 1) is expected
	assert Profile(name="Jane", reg_no="E123", school_id="s1", course_id="c1", year=year, semester=1).profile_completed is expected


def test_profile_completed_rejects_blank_strings():
	assert is_profile_complete("  ", "E123", "s1", "c1", 2, 1) is False
	assert is_profile_complete("Jane", "E123", "s1", "", 2, 1) is False


def test_profile_fields_round_into_document_names():
	profile = Profile(uid="u1", name="Jane", reg_no="E123", school_id="s1", course_id="c1", year=2, semester=1)
	fields = profile_fields(profile)
	assert fields["regNo"] == "E123"
	assert fields["semesterKey"] == "2.1"
	assert fields["profileCompleted"] is True
	assert set(fields) == set(PROFILE_REQUIRED_FIELDS)


def test_project_file_normalises_and_defaults():
	record = project_file(
		RawDocument(
			"files",
			"f1",
			{"title": " CAT 1 ", "type": "exam", "courseCode": " ccs3102 ", "sizeBytes": "12"},
		)
	)
	assert record.id == "f1"
	assert record.title == "CAT 1"
	assert record.kind == "past_paper"
	assert record.course_code == "CCS3102"
	assert record.size_bytes == 12
	assert record.uploaded_at is None


def test_project_files_skips_missing_documents():
	records = project_files(
		[
			RawDocument("files", "f1", {"title": "a", "type": "marking_scheme"}),
			RawDocument("files", "f2", None),
		]
	)
	assert [record.id for record in records] == ["f1"]
	assert records[0].kind == "marking_scheme"


def test_project_catalog_entries():
	school = project_school(RawDocument("schools", "s1", {"name": "Computing", "order": 2}))
	course = project_course(RawDocument("courses", "c1", {"name": "BSc CS", "schoolId": "s1"}))
	assert (school.name, school.order) == ("Computing", 2)
	assert (course.school_id, course.order) == ("s1", 0)
