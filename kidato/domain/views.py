"""Derived views computed from the current file snapshot."""

from __future__ import annotations

from typing import Optional, Sequence

from kidato.domain.models import UNKNOWN_COURSE, FileRecord, normalise_course_code

GroupedFiles = dict[str, tuple[FileRecord, ...]]


def course_group_key(record: FileRecord) -> str:
	return normalise_course_code(record.course_code) or UNKNOWN_COURSE


def group_by_course(files: Sequence[FileRecord]) -> GroupedFiles:
	"""Bucket files by course code, sorted by code with ``UNKNOWN`` last.

	Records keep their input order inside each bucket.
	"""
	buckets: dict[str, list[FileRecord]] = {}
	for record in files:
		buckets.setdefault(course_group_key(record), []).append(record)
	ordered = sorted(buckets, key=lambda key: (key == UNKNOWN_COURSE, key))
	return {key: tuple(buckets[key]) for key in ordered}


class DerivedViewEngine:
	"""Recomputes the grouped view only when a new snapshot object arrives."""

	def __init__(self) -> None:
		self._source: Optional[Sequence[FileRecord]] = None
		self._grouped: GroupedFiles = {}
		self.recomputations = 0

	def grouped(self, files: Sequence[FileRecord]) -> GroupedFiles:
		if files is self._source:
			return self._grouped
		self._grouped = group_by_course(files)
		self._source = files
		self.recomputations += 1
		return self._grouped
