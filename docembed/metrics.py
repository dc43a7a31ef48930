# docembed/metrics.py
from prometheus_client import Counter

# Prometheus counters
uploads_total = Counter("docembed_uploads_total", "Documents uploaded")
jobs_submitted_total = Counter("docembed_jobs_submitted_total", "Embedding jobs submitted")
jobs_rejected_total = Counter("docembed_jobs_rejected_total", "Embedding submissions or deliveries rejected by the claim")
jobs_retried_total = Counter("docembed_jobs_retried_total", "Embedding jobs re-queued after a transient failure")
jobs_failed_total = Counter("docembed_jobs_failed_total", "Embedding jobs that ended failed")
jobs_completed_total = Counter("docembed_jobs_completed_total", "Embedding jobs that completed")
embed_errors_total = Counter("docembed_embed_errors_total", "Embedding provider errors", ["kind"])
storage_cleanup_errors_total = Counter(
    "docembed_storage_cleanup_errors_total", "Blob deletions that failed after the record was deleted", ["provider"]
)
