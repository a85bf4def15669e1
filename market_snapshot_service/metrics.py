"""
Prometheus metrics for the Market Snapshot Service

Collection, storage and codec metrics. Exposed by the API at /metrics.
"""

from prometheus_client import Counter, Histogram

# Collection Metrics
collection_runs_total = Counter(
    'snapshot_collection_runs_total',
    'Total collection runs',
    ['source', 'mode', 'status']
)

collection_entities_total = Counter(
    'snapshot_collection_entities_total',
    'Entity outcomes per collection run',
    ['source', 'outcome']
)

collection_duration_seconds = Histogram(
    'snapshot_collection_duration_seconds',
    'Collection run duration in seconds',
    ['source', 'mode'],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0)
)

scheduler_skipped_ticks_total = Counter(
    'snapshot_scheduler_skipped_ticks_total',
    'Scheduler ticks skipped because a run was still in progress',
    ['scheduler']
)

# Storage Metrics
documents_written_total = Counter(
    'snapshot_documents_written_total',
    'Documents written by operation',
    ['collection', 'operation']
)

storage_operation_duration_seconds = Histogram(
    'snapshot_storage_operation_duration_seconds',
    'Document store call duration in seconds',
    ['operation'],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

storage_errors_total = Counter(
    'snapshot_storage_errors_total',
    'Document store failures',
    ['operation', 'error_type']
)

# Codec Metrics
codec_fallbacks_total = Counter(
    'snapshot_codec_fallbacks_total',
    'Lossy codec substitutions (encode placeholder or decode zero)',
    ['direction']
)
