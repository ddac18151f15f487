# Prometheus metrics for the hybrid retrieval engine

from prometheus_client import Counter, Histogram, generate_latest

# ===== Search metrics =====
retrieval_searches_total = Counter(
    "retrieval_searches_total",
    "Total per-collection hybrid searches by fusion method",
    ["fusion_method"],
)

retrieval_search_duration_seconds = Histogram(
    "retrieval_search_duration_seconds",
    "End-to-end hybrid search duration in seconds",
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

retrieval_fusion_fallback_total = Counter(
    "retrieval_fusion_fallback_total",
    "RRF requests that fell back to weighted fusion",
    ["reason"],
)

# ===== Quality metrics =====
retrieval_quality_filtered_total = Counter(
    "retrieval_quality_filtered_total",
    "Candidates removed by the chunk quality filter",
)

retrieval_quality_gate_dropped_total = Counter(
    "retrieval_quality_gate_dropped_total",
    "Candidates removed by the post-fusion score gate",
)

# ===== Context expansion =====
retrieval_context_expansion_total = Counter(
    "retrieval_context_expansion_total",
    "Context expansion lookups by outcome",
    ["status"],
)

# ===== Store metrics =====
retrieval_store_operation_latency_ms = Histogram(
    "retrieval_store_operation_latency_ms",
    "Vector store operation latency in milliseconds",
    ["operation"],
    buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000),
)

retrieval_store_errors_total = Counter(
    "retrieval_store_errors_total",
    "Vector store operation failures",
    ["operation"],
)


def get_metrics() -> bytes:
    """Render all registered metrics in Prometheus exposition format."""
    return generate_latest()
