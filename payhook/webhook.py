from datetime import datetime, timezone
from typing import Optional

import httpx

from .config import WEBHOOK_TIMEOUT_SECONDS
from .errors import WebhookError
from .workflow import JobRequest

USER_AGENT = "Payment-Webhook/1.0"


async def send_webhook(
    request: JobRequest,
    *,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = WEBHOOK_TIMEOUT_SECONDS,
) -> str:
    """POST the payment notification once. Any HTTP answer counts as delivered."""
    body = {
        "payment_id": request.id,
        "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "data": request.payload,
    }
    headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
    try:
        if client is not None:
            response = await client.post(request.callback_url, json=body, headers=headers, timeout=timeout)
        else:
            async with httpx.AsyncClient(timeout=timeout) as temp_client:
                response = await temp_client.post(request.callback_url, json=body, headers=headers)
    except httpx.TimeoutException as exc:
        raise WebhookError(f"webhook timed out after {timeout:g}s") from exc
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        raise WebhookError(f"failed to send webhook: {exc}") from exc

    return f"Status: {response.status_code}, Body: {response.text}"
