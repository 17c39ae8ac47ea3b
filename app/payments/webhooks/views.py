"""
Webhook endpoint for gateway callbacks.

One URL serves every gateway: POST /api/v1/webhooks/<gateway>/. The view
hands the raw body and headers to the WebhookIngestor and maps the outcome
to an HTTP status. Gateways retry anything that is not 2xx, so a 2xx is
only returned once the event is fully processed (or known to be a
duplicate or an event type we do not consume).

Response codes:
    200: processed, duplicate or ignored
    400: invalid signature or unparseable payload
    404: unknown or disabled gateway
    409: event parked for manual review
    503: transient failure (gateway retries)
    500: unexpected failure (gateway retries)

Usage:
    # In urls.py
    from payments.webhooks.views import gateway_webhook

    urlpatterns = [
        path("<str:gateway>/", gateway_webhook, name="gateway_webhook"),
    ]
"""

from __future__ import annotations

import logging

from django.http import HttpRequest, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from core.exceptions import BaseApplicationError
from payments.webhooks.ingestor import WebhookIngestor

logger = logging.getLogger(__name__)


@csrf_exempt
@require_POST
def gateway_webhook(request: HttpRequest, gateway: str) -> JsonResponse:
    """
    Receive one gateway callback.

    Security:
    - Signature verification happens in the ingestor before parsing
    - CSRF exemption required for external webhooks
    - Only POST requests accepted
    """
    try:
        result = WebhookIngestor().ingest(
            gateway,
            request.body,
            headers=request.headers,
        )
    except BaseApplicationError as e:
        # Logged by the ingestor; the status tells the gateway whether to retry
        return JsonResponse(e.to_dict(), status=e.status_code)
    except Exception:
        logger.error(
            "Unexpected error processing webhook",
            extra={"gateway": gateway},
            exc_info=True,
        )
        return JsonResponse(
            {"error": "Processing failed", "error_code": "WEBHOOK_PROCESSING_ERROR"},
            status=500,
        )

    body = {"status": result.status}
    if result.event is not None:
        body["event_id"] = result.event.event_id
    return JsonResponse(body, status=200)
