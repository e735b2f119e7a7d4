"""Project raw backend documents into typed local snapshots.

Every field is defaulted on its own: a missing or malformed value yields the
type's zero value instead of failing the projection. Profiles written by the
first release of the app (``school``/``course``/``yearOfStudy``) are migrated
on read, and the fields they lack are returned as a backfill intent so the
caller can persist them without blocking the read.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, NamedTuple, Optional

from kidato.adapters.base import RawDocument
from kidato.domain.models import (
	DEFAULT_FILE_KIND,
	DEFAULT_ROLE,
	EMPTY_PROFILE,
	FILE_KINDS,
	ROLES,
	Course,
	FileRecord,
	Profile,
	School,
	normalise_course_code,
)

# Document fields every profile document is expected to carry
PROFILE_REQUIRED_FIELDS = (
	"uid",
	"name",
	"regNo",
	"schoolId",
	"courseId",
	"year",
	"semester",
	"semesterKey",
	"profileCompleted",
	"role",
)

# Current field -> field used by the first profile schema
LEGACY_PROFILE_FIELDS = {
	"schoolId": "school",
	"courseId": "course",
	"year": "yearOfStudy",
}


@dataclass(frozen=True, slots=True)
class BackfillIntent:
	"""Partial document holding only the fields a stored document is missing."""

	collection: str
	doc_id: str
	fields: Mapping[str, Any]


class Projection(NamedTuple):
	snapshot: Profile
	backfill: Optional[BackfillIntent]


def _as_str(value: Any) -> str:
	if value is None:
		return ""
	if isinstance(value, str):
		return value.strip()
	if isinstance(value, (int, float)) and not isinstance(value, bool):
		return str(value)
	return ""


def _as_int(value: Any) -> int:
	if value is None or isinstance(value, bool):
		return 0
	if isinstance(value, int):
		return value
	if isinstance(value, float):
		return int(value)
	if isinstance(value, str):
		digits = value.strip()
		try:
			return int(digits)
		except ValueError:
			return 0
	return 0


def _as_datetime(value: Any) -> Optional[datetime]:
	if value is None:
		return None
	if isinstance(value, datetime):
		return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
	if isinstance(value, (int, float)) and not isinstance(value, bool):
		# Epoch milliseconds, as written by the client clock
		return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
	if isinstance(value, str) and value.strip():
		try:
			parsed = datetime.fromisoformat(value.strip())
		except ValueError:
			return None
		return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
	return None


def _field(data: Mapping[str, Any], name: str) -> Any:
	value = data.get(name)
	if value is None and name in LEGACY_PROFILE_FIELDS:
		return data.get(LEGACY_PROFILE_FIELDS[name])
	return value


def profile_fields(profile: Profile) -> dict[str, Any]:
	"""Document representation of the writable profile fields."""
	return {
		"uid": profile.uid,
		"name": profile.name,
		"regNo": profile.reg_no,
		"schoolId": profile.school_id,
		"courseId": profile.course_id,
		"year": profile.year,
		"semester": profile.semester,
		"semesterKey": profile.semester_key,
		"profileCompleted": profile.profile_completed,
		"role": profile.role,
	}


def project_profile(raw: Optional[RawDocument]) -> Projection:
	if raw is None:
		return Projection(EMPTY_PROFILE, None)
	if not raw.exists:
		return Projection(Profile(uid=raw.id), None)
	data = raw.data or {}
	role = _as_str(data.get("role")) or DEFAULT_ROLE
	if role not in ROLES:
		role = DEFAULT_ROLE
	snapshot = Profile(
		uid=_as_str(data.get("uid")) or raw.id,
		name=_as_str(data.get("name")),
		reg_no=_as_str(data.get("regNo")),
		school_id=_as_str(_field(data, "schoolId")),
		course_id=_as_str(_field(data, "courseId")),
		year=max(0, _as_int(_field(data, "year"))),
		semester=max(0, _as_int(data.get("semester"))),
		role=role,
		updated_at=_as_datetime(data.get("updatedAt")),
	)
	missing = [name for name in PROFILE_REQUIRED_FIELDS if data.get(name) is None]
	if not missing:
		return Projection(snapshot, None)
	defaults = profile_fields(snapshot)
	patch = {name: defaults[name] for name in missing}
	return Projection(snapshot, BackfillIntent(raw.collection, raw.id, patch))


def project_file(raw: RawDocument) -> FileRecord:
	data = raw.data or {}
	kind = _as_str(data.get("type")) or DEFAULT_FILE_KIND
	if kind not in FILE_KINDS:
		kind = DEFAULT_FILE_KIND
	return FileRecord(
		id=raw.id,
		title=_as_str(data.get("title")),
		kind=kind,
		course_code=normalise_course_code(_as_str(data.get("courseCode"))),
		unit_name=_as_str(data.get("unitName")),
		download_url=_as_str(data.get("downloadUrl")),
		uploaded_by_name=_as_str(data.get("uploadedByName")),
		uploaded_by_uid=_as_str(data.get("uploadedByUid")),
		size_bytes=max(0, _as_int(data.get("sizeBytes"))),
		storage_path=_as_str(data.get("storagePath")),
		uploaded_at=_as_datetime(data.get("uploadedAt")),
	)


def project_files(raws: Iterable[RawDocument]) -> tuple[FileRecord, ...]:
	return tuple(project_file(raw) for raw in raws if raw.exists)


def project_school(raw: RawDocument) -> School:
	return School(
		id=raw.id,
		name=_as_str(raw.get("name")),
		order=_as_int(raw.get("order")),
	)


def project_course(raw: RawDocument) -> Course:
	return Course(
		id=raw.id,
		name=_as_str(raw.get("name")),
		school_id=_as_str(raw.get("schoolId")),
		order=_as_int(raw.get("order")),
	)
