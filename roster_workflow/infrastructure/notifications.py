"""Change-notification hooks.

Services never push notifications themselves: every write returns the
``ChangeEvent`` values it produced and the caller hands them to the configured
notifier. The default notifier only logs; deployments that fan events out to
subscribed clients install a :class:`WebhookChangeNotifier` (or their own
implementation) through ``configure_change_notifier`` at start-up.
"""
from __future__ import annotations

from typing import Iterable, Protocol

import httpx

from roster_workflow.domain.models import ChangeEvent
from roster_workflow.utils.logging import get_logger

logger = get_logger(__name__)


class ChangeNotifier(Protocol):
    """Contract for change fan-out integrations."""

    def publish(self, events: Iterable[ChangeEvent]) -> None:
        """Deliver ``events`` to interested subscribers."""


class LoggingChangeNotifier:
    """Fallback notifier that records events in the application log."""

    def publish(self, events: Iterable[ChangeEvent]) -> None:
        for event in events:
            logger.info("changed", extra=event.as_dict())


class InMemoryChangeNotifier:
    """Collects events in memory; handy for tests and local tooling."""

    def __init__(self) -> None:
        self.events: list[ChangeEvent] = []

    def publish(self, events: Iterable[ChangeEvent]) -> None:
        self.events.extend(events)

    def clear(self) -> None:
        self.events.clear()


class WebhookChangeNotifier:
    """POST events as JSON to an HTTP endpoint."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 5.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._url = url
        self._client = http_client or httpx.Client(timeout=timeout)
        self._owns_client = http_client is None

    def publish(self, events: Iterable[ChangeEvent]) -> None:
        payload = [event.as_dict() for event in events]
        if not payload:
            return
        try:
            response = self._client.post(self._url, json={"events": payload})
            response.raise_for_status()
        except httpx.HTTPError as exc:
            # not retried
            logger.warning("change notification failed", extra={"url": self._url, "error": str(exc)})

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


_notifier: ChangeNotifier = LoggingChangeNotifier()


def configure_change_notifier(notifier: ChangeNotifier) -> None:
    """Install the notifier used by the API layer."""

    global _notifier
    _notifier = notifier


def get_change_notifier() -> ChangeNotifier:
    """Return the currently configured notifier."""

    return _notifier
