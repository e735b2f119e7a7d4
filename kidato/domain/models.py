"""Domain models for profiles, shared files and the school catalog."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Optional

FileKind = Literal["past_paper", "marking_scheme"]

FILE_KINDS: frozenset[str] = frozenset({"past_paper", "marking_scheme"})
DEFAULT_FILE_KIND: FileKind = "past_paper"

ROLES: frozenset[str] = frozenset({"student", "admin"})
DEFAULT_ROLE = "student"

UNKNOWN_COURSE = "UNKNOWN"


def normalise_course_code(code: Optional[str]) -> str:
	return (code or "").strip().upper()


def semester_key(year: int, semester: int) -> str:
	"""Composite "year.semester" key, empty unless both parts are positive."""
	if year > 0 and semester > 0:
		return f"{year}.{semester}"
	return ""


def is_profile_complete(
	name: str,
	reg_no: str,
	school_id: str,
	course_id: str,
	year: int,
	semester: int,
) -> bool:
	return bool(
		name.strip()
		and reg_no.strip()
		and school_id.strip()
		and course_id.strip()
		and year > 0
		and semester > 0
	)


@dataclass(frozen=True, slots=True)
class Profile:
	"""One principal's enrollment record as last seen locally."""

	uid: str = ""
	name: str = ""
	reg_no: str = ""
	school_id: str = ""
	course_id: str = ""
	year: int = 0
	semester: int = 0
	role: str = DEFAULT_ROLE
	updated_at: Optional[datetime] = field(default=None, compare=False)

	@property
	def semester_key(self) -> str:
		return semester_key(self.year, self.semester)

	@property
	def profile_completed(self) -> bool:
		return is_profile_complete(
			self.name, self.reg_no, self.school_id, self.course_id, self.year, self.semester
		)


EMPTY_PROFILE = Profile()


@dataclass(frozen=True, slots=True)
class FileRecord:
	"""Metadata for one uploaded past paper or marking scheme."""

	id: str
	title: str = ""
	kind: str = DEFAULT_FILE_KIND
	course_code: str = ""
	unit_name: str = ""
	download_url: str = ""
	uploaded_by_name: str = ""
	uploaded_by_uid: str = ""
	size_bytes: int = 0
	storage_path: str = ""
	uploaded_at: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class School:
	id: str
	name: str = ""
	order: int = 0


@dataclass(frozen=True, slots=True)
class Course:
	id: str
	name: str = ""
	school_id: str = ""
	order: int = 0


@dataclass(slots=True)
class ProfileForm:
	"""Values submitted from the profile setup screen."""

	name: str
	reg_no: str
	school_id: str
	course_id: str
	year: int
	semester: int


@dataclass(slots=True)
class UploadRequest:
	title: str
	course_code: str
	kind: str = DEFAULT_FILE_KIND
	unit_name: str = ""
