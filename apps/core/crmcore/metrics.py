from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


segment_recalculations_total = Counter(
    "crm_segment_recalculations_total",
    "Total segment recalculations by segment type and outcome",
    ["segment_type", "status"],
)

segment_recalculation_duration_seconds = Histogram(
    "crm_segment_recalculation_duration_seconds",
    "Segment recalculation duration in seconds",
    ["segment_type"],
)

segment_membership_changes_total = Counter(
    "crm_segment_membership_changes_total",
    "Total segment members added or removed",
    ["change"],
)

segment_rules_dropped_total = Counter(
    "crm_segment_rules_dropped_total",
    "Total segment rules skipped during compilation by reason",
    ["reason"],
)

relationship_cleanups_total = Counter(
    "crm_relationship_cleanups_total",
    "Total referential integrity cleanups by outcome",
    ["status"],
)

relationship_references_cleaned_total = Counter(
    "crm_relationship_references_cleaned_total",
    "Total relationship values nulled by cleanup",
)

relationship_validation_failures_total = Counter(
    "crm_relationship_validation_failures_total",
    "Total failed relationship validations by reason",
    ["reason"],
)

field_registry_cache_hit_total = Counter(
    "crm_field_registry_cache_hit_total",
    "Field definition registry cache hits",
)

field_registry_cache_miss_total = Counter(
    "crm_field_registry_cache_miss_total",
    "Field definition registry cache misses",
)


def observe_segment_recalculation(segment_type: str, status: str, duration: float) -> None:
    segment_recalculations_total.labels(segment_type=segment_type, status=status).inc()
    segment_recalculation_duration_seconds.labels(segment_type=segment_type).observe(duration)


def observe_membership_changes(added: int, removed: int) -> None:
    if added > 0:
        segment_membership_changes_total.labels(change="added").inc(added)
    if removed > 0:
        segment_membership_changes_total.labels(change="removed").inc(removed)


def observe_rule_dropped(reason: str) -> None:
    segment_rules_dropped_total.labels(reason=reason).inc()


def observe_relationship_cleanup(status: str, cleaned_count: int) -> None:
    relationship_cleanups_total.labels(status=status).inc()
    if cleaned_count > 0:
        relationship_references_cleaned_total.inc(cleaned_count)


def observe_relationship_validation_failure(reason: str) -> None:
    relationship_validation_failures_total.labels(reason=reason).inc()


def observe_field_registry_cache_hit() -> None:
    field_registry_cache_hit_total.inc()


def observe_field_registry_cache_miss() -> None:
    field_registry_cache_miss_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
