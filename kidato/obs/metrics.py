"""Central registry for Prometheus metrics used across the sync core."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


SUBSCRIPTIONS_ACTIVE = Gauge(
	"kidato_subscriptions_active",
	"Live subscription channels currently open",
	["kind"],
)

SUBSCRIPTION_DUPLICATES = Counter(
	"kidato_subscription_duplicate_total",
	"Subscribe calls answered with an already open handle",
	["kind"],
)

SNAPSHOT_DELIVERIES = Counter(
	"kidato_snapshot_deliveries_total",
	"Snapshots delivered by live channels",
	["kind"],
)

SUBSCRIPTION_ERRORS = Counter(
	"kidato_subscription_errors_total",
	"Transport errors reported on live channels",
	["kind"],
)

WRITE_OUTCOMES = Counter(
	"kidato_write_outcomes_total",
	"Terminal outcomes of coordinated writes",
	["operation", "outcome"],
)

WRITE_LATENCY = Histogram(
	"kidato_write_duration_seconds",
	"Coordinated write latency in seconds",
	["operation"],
	buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

UPLOAD_BYTES = Counter(
	"kidato_upload_bytes_total",
	"Blob bytes accepted by the store",
)

ORPHANED_BLOBS = Counter(
	"kidato_orphaned_blobs_total",
	"Blobs stored whose metadata write failed",
)

BACKFILLS = Counter(
	"kidato_backfill_total",
	"Backfill intents persisted for legacy documents",
	["result"],
)


def subscription_opened(kind: str) -> None:
	SUBSCRIPTIONS_ACTIVE.labels(kind=kind).inc()


def subscription_closed(kind: str) -> None:
	SUBSCRIPTIONS_ACTIVE.labels(kind=kind).dec()


def subscription_duplicate(kind: str) -> None:
	SUBSCRIPTION_DUPLICATES.labels(kind=kind).inc()


def snapshot_delivered(kind: str) -> None:
	SNAPSHOT_DELIVERIES.labels(kind=kind).inc()


def subscription_error(kind: str) -> None:
	SUBSCRIPTION_ERRORS.labels(kind=kind).inc()


def write_outcome(operation: str, outcome: str, elapsed_seconds: float | None = None) -> None:
	WRITE_OUTCOMES.labels(operation=operation, outcome=outcome).inc()
	if elapsed_seconds is not None:
		WRITE_LATENCY.labels(operation=operation).observe(elapsed_seconds)


def inc_upload_bytes(size: int) -> None:
	if size > 0:
		UPLOAD_BYTES.inc(size)


def inc_orphaned_blob() -> None:
	ORPHANED_BLOBS.inc()


def inc_backfill(result: str) -> None:
	BACKFILLS.labels(result=result).inc()
