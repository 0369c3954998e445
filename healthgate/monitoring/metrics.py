from prometheus_client import CollectorRegistry, Histogram, Counter
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter
from fastapi.responses import Response

registry = CollectorRegistry()

request_duration = Histogram(
    "healthgate_request_duration_seconds",
    "Request duration in seconds",
    ["method", "endpoint", "status"],
    registry=registry,
)

access_decisions_total = Counter(
    "healthgate_access_decisions_total",
    "Consent checks by outcome",
    ["decision"],
    registry=registry,
)

audit_entries_total = Counter(
    "healthgate_audit_entries_total",
    "Audit entries appended",
    ["action"],
    registry=registry,
)

qr_scans_total = Counter(
    "healthgate_qr_scans_total",
    "Emergency credentials successfully verified",
    registry=registry,
)

accounts_created_total = Counter(
    "healthgate_accounts_created_total",
    "Accounts created on first identity resolution",
    registry=registry,
)

metrics_router = APIRouter()


@metrics_router.get("/metrics")
async def get_metrics():
    return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)
