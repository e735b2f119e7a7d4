"""JSON log lines for the sync core, with principal and channel context."""

from __future__ import annotations

import json
import logging
import random
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from kidato.settings import settings

_CONTEXT: Dict[str, ContextVar[Optional[str]]] = {
	"principal_id": ContextVar("obs_principal_id", default=None),
	"subscription_key": ContextVar("obs_subscription_key", default=None),
	"operation": ContextVar("obs_operation", default=None),
}

_LOGGER_NAME = "kidato"

# Extra-field names containing any of these are never written out.
# Registration numbers and e-mail addresses identify students.
_REDACTED_KEYWORDS = ("token", "secret", "password", "email", "regno", "reg_no", "data")

_MAX_STRING_LENGTH = 256
_MAX_ITEMS = 10

# Attributes every LogRecord carries; anything else came in through ``extra=``
_RECORD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {"message", "asctime"}


def bind_context(
	*,
	principal_id: Optional[str] = None,
	subscription_key: Optional[str] = None,
	operation: Optional[str] = None,
) -> Dict[str, Token]:
	"""Bind fields onto every log line of the current task; pass the result to ``reset_context``."""
	values = {"principal_id": principal_id, "subscription_key": subscription_key, "operation": operation}
	return {name: _CONTEXT[name].set(value) for name, value in values.items() if value is not None}


def reset_context(tokens: Dict[str, Token]) -> None:
	for name, token in tokens.items():
		_CONTEXT[name].reset(token)


def _strip_query(url: str) -> str:
	# Download URLs carry their access token in the query string
	return url.split("?", 1)[0]


def _clean(value: Any) -> Any:
	if isinstance(value, str):
		return value if len(value) <= _MAX_STRING_LENGTH else f"{value[:_MAX_STRING_LENGTH]}…"
	if isinstance(value, (bytes, bytearray, memoryview)):
		return f"<{len(value)} bytes>"
	if isinstance(value, dict):
		cleaned = {str(key): _clean_field(str(key), item) for key, item in list(value.items())[:_MAX_ITEMS]}
		if len(value) > _MAX_ITEMS:
			cleaned["…"] = f"+{len(value) - _MAX_ITEMS} keys"
		return cleaned
	if isinstance(value, (list, tuple, set, frozenset)):
		items = [_clean(item) for item in list(value)[:_MAX_ITEMS]]
		if len(value) > _MAX_ITEMS:
			items.append("…")
		return items
	return value


def _clean_field(key: str, value: Any) -> Any:
	lowered = key.lower()
	if any(keyword in lowered for keyword in _REDACTED_KEYWORDS):
		return "[redacted]"
	if "url" in lowered and isinstance(value, str):
		return _strip_query(value)
	return _clean(value)


class JSONLogFormatter(logging.Formatter):
	def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (match logging api)
		payload: Dict[str, object] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"msg": record.getMessage(),
			"logger": record.name,
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		for name, var in _CONTEXT.items():
			value = var.get()
			if value:
				payload[name] = value
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		for key, value in record.__dict__.items():
			if key not in _RECORD_ATTRS:
				payload[key] = _clean_field(key, value)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Drop a share of info lines outside dev; other levels always pass."""

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO or settings.is_dev():
			return True
		rate = max(0.0, min(1.0, settings.obs_log_sampling_rate_info))
		return rate >= 1.0 or random.random() < rate


def configure_logging() -> logging.Logger:
	root = logging.getLogger()
	root.handlers.clear()
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(InfoSamplingFilter())
	root.addHandler(handler)
	root.setLevel(settings.obs_log_level)
	return logging.getLogger(_LOGGER_NAME)
