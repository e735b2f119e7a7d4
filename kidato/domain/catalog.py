"""School and course lookups for the profile setup screen."""

from __future__ import annotations

import logging
from typing import Optional

from kidato.adapters.base import FieldFilter, OrderBy, RemoteDocumentSource
from kidato.domain.errors import TransportError
from kidato.domain.models import Course, School
from kidato.domain.projector import project_course, project_school
from kidato.domain.state import ErrorChannel, Observable
from kidato.settings import settings

logger = logging.getLogger(__name__)

CATALOG_CONTEXT = "catalog"


class CatalogService:
	def __init__(
		self,
		source: RemoteDocumentSource,
		errors: Optional[ErrorChannel] = None,
		*,
		schools_collection: Optional[str] = None,
		courses_collection: Optional[str] = None,
	):
		self._source = source
		self.errors = errors or ErrorChannel()
		self.schools_collection = schools_collection or settings.schools_collection
		self.courses_collection = courses_collection or settings.courses_collection
		self.schools: Observable[tuple[School, ...]] = Observable(())
		self.courses: Observable[tuple[Course, ...]] = Observable(())

	async def load_schools(self) -> list[School]:
		try:
			raws = await self._source.query_collection(
				self.schools_collection, order_by=OrderBy("order")
			)
		except Exception as exc:
			raise self._failed(exc, "Failed to load schools") from exc
		schools = [project_school(raw) for raw in raws if raw.exists]
		self.schools.set(tuple(schools))
		self.errors.clear(CATALOG_CONTEXT)
		return schools

	async def load_courses(self, school_id: str) -> list[Course]:
		"""Courses of one school, sorted by ``order`` locally."""
		school_id = (school_id or "").strip()
		if not school_id:
			self.courses.set(())
			return []
		try:
			raws = await self._source.query_collection(
				self.courses_collection, filters=(FieldFilter("schoolId", school_id),)
			)
		except Exception as exc:
			raise self._failed(exc, "Failed to load courses") from exc
		courses = sorted((project_course(raw) for raw in raws if raw.exists), key=lambda c: c.order)
		self.courses.set(tuple(courses))
		self.errors.clear(CATALOG_CONTEXT)
		return courses

	def _failed(self, exc: Exception, fallback: str) -> TransportError:
		error = TransportError.wrap(exc, fallback)
		logger.warning("catalog load failed", extra={"error": error.message})
		self.errors.report(CATALOG_CONTEXT, error.message)
		return error
