from __future__ import annotations

import requests
from loguru import logger

from .events import Event, EventBus
from .settings import settings


class AlertRouter:
    """Forwards selected engine events to an operator webhook."""

    def __init__(self, webhook_url: str | None = None, event_types: set[str] | None = None) -> None:
        self.webhook_url = (webhook_url if webhook_url is not None else settings.alert_webhook_url).strip()
        self.timeout = settings.alert_webhook_timeout_seconds
        self.allowed_event_types = event_types if event_types is not None else {
            item.strip()
            for item in settings.alert_event_types_csv.split(",")
            if item.strip()
        }

    def should_send(self, event_type: str) -> bool:
        if not self.webhook_url:
            return False
        return event_type in self.allowed_event_types

    def send(self, event_type: str, message: str, metadata: dict) -> bool:
        if not self.should_send(event_type):
            return False

        payload = {
            "event_type": event_type,
            "message": message,
            "metadata": metadata,
        }
        try:
            response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Alert webhook delivery failed for {}: {}", event_type, exc)
            return False
        return True

    def handle(self, event: Event) -> None:
        message = str(event.payload.get("message") or event.payload.get("reason") or event.topic)
        metadata = {
            key: value if isinstance(value, (str, int, float, bool, dict, list, type(None))) else str(value)
            for key, value in event.payload.items()
            if key != "message"
        }
        self.send(event.topic, message, metadata)

    def attach(self, bus: EventBus) -> None:
        for event_type in self.allowed_event_types:
            bus.subscribe(event_type, self.handle)
