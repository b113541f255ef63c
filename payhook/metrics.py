from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

# Keep metrics module-level singletons
payments_created_total = Counter("payments_created_total", "Payments accepted via API")
payments_cancelled_total = Counter("payments_cancelled_total", "Cancel requests accepted")
payments_terminated_total = Counter("payments_terminated_total", "Payment executions terminated")
delete_all_failures_total = Counter("delete_all_failures_total", "Terminate attempts that failed during delete-all")
error_count = Counter("error_count", "Total errors encountered by the control plane")
request_latency_seconds = Histogram("request_latency_seconds", "HTTP request latency seconds")

# Scheduler / worker metrics
wakes_promoted_total = Counter("wakes_promoted_total", "Executions moved from the wait set to the ready queue")
webhooks_sent_total = Counter("webhooks_sent_total", "Webhooks delivered to the receiver")
webhook_failures_total = Counter("webhook_failures_total", "Webhook attempts that failed")
dispatch_latency_seconds = Histogram("dispatch_latency_seconds", "Webhook dispatch latency seconds")


def metrics_response():
    payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
