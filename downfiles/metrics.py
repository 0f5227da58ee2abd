from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

REQUESTS_TOTAL = Counter(
    "downfiles_requests_total",
    "Total requests by endpoint and status",
    ["endpoint", "status"],
)
EXTRACTIONS_TOTAL = Counter(
    "downfiles_extractions_total",
    "Extractor runs by mode and outcome",
    ["mode", "outcome"],
)
EXTRACTION_SECONDS = Histogram(
    "downfiles_extraction_seconds",
    "Wall time of one extractor run",
    ["mode"],
)
BYTES_DELIVERED = Counter(
    "downfiles_bytes_delivered_total",
    "Artifact bytes written to clients",
)
JOBS = Gauge(
    "downfiles_jobs",
    "Jobs currently held in the registry by status",
    ["status"],
)


def render() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
