"""Observability package bootstrap."""

from __future__ import annotations

from kidato.obs import logging as obs_logging
from kidato.settings import settings

_initialised = False


def init() -> None:
	global _initialised
	if _initialised:
		return
	if not settings.obs_enabled:
		return
	obs_logging.configure_logging()
	_initialised = True


__all__ = ["init"]
