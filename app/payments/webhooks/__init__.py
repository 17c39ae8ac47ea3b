"""
Webhook handling for gateway callbacks.

Callbacks are verified, normalized and deduplicated by the WebhookIngestor,
then applied synchronously through the Reconciler.

Usage:
    from payments.webhooks import WebhookIngestor

    result = WebhookIngestor().ingest("stripe", raw_body, headers=headers)
"""

from payments.webhooks.ingestor import IngestResult, WebhookIngestor

__all__ = [
    "IngestResult",
    "WebhookIngestor",
]
