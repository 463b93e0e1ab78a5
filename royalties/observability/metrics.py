"""
Prometheus metrics for the royalty reconciliation engine.
"""

from prometheus_client import Counter, Histogram, Gauge


# ── Statement Processing ────────────────────────────────────
statements_uploaded_total = Counter(
    "royalty_statements_uploaded_total",
    "Total statements uploaded",
    ["source"],
)

statements_processed_total = Counter(
    "royalty_statements_processed_total",
    "Total statements processed to completion",
    ["final_status"],
)

statements_failed_total = Counter(
    "royalty_statements_failed_total",
    "Total statements that failed processing",
    ["error_code"],
)

statement_processing_duration_seconds = Histogram(
    "royalty_statement_processing_duration_seconds",
    "Time to process a statement end-to-end",
    buckets=[1, 5, 10, 30, 60, 120, 300, 600, 1800],
)

# ── Catalog Cache ────────────────────────────────────────────
catalog_cache_loads_total = Counter(
    "royalty_catalog_cache_loads_total",
    "Catalog snapshot loads (cold or expired cache)",
)

catalog_cache_hits_total = Counter(
    "royalty_catalog_cache_hits_total",
    "Catalog snapshot reuses",
)

catalog_cache_load_seconds = Histogram(
    "royalty_catalog_cache_load_seconds",
    "Time to load and index a tenant catalog",
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60],
)

# ── Matching ─────────────────────────────────────────────────
rows_matched_total = Counter(
    "royalty_rows_matched_total",
    "Statement rows matched, by terminal status",
    ["status"],
)

match_stage_failures_total = Counter(
    "royalty_match_stage_failures_total",
    "Absorbed collaborator failures per matching stage",
    ["stage"],
)

match_duration_seconds = Histogram(
    "royalty_match_duration_seconds",
    "Time to match a single statement row",
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1, 5],
)

# ── Review Queue ─────────────────────────────────────────────
review_items_routed_total = Counter(
    "royalty_review_items_routed_total",
    "Statement rows routed to human review",
)

review_items_resolved_total = Counter(
    "royalty_review_items_resolved_total",
    "Review items resolved, by action",
    ["action"],
)

review_queue_depth = Gauge(
    "royalty_review_queue_depth",
    "Current number of items in review queue",
    ["status"],
)

# ── Distribution ─────────────────────────────────────────────
distribution_rounding_adjustments_total = Counter(
    "royalty_distribution_rounding_adjustments_total",
    "Work/right-type splits that needed a rounding adjustment",
    ["right_type"],
)

# ── Worker ───────────────────────────────────────────────────
worker_jobs_active = Gauge(
    "royalty_worker_jobs_active",
    "Number of currently active worker jobs",
)
