"""Bridge webhook ingestion: event parsing, dedup gate, handlers, pipeline."""

from kalypso_api.webhooks.events import BridgeEvent, WebhookEventType, parse_event
from kalypso_api.webhooks.pipeline import WebhookOutcome, process_event

__all__ = [
    "BridgeEvent",
    "WebhookEventType",
    "WebhookOutcome",
    "parse_event",
    "process_event",
]
