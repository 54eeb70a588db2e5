"""Infrastructure layer exports."""

from .documents import DocumentIssuer, IssuedDocument, NoOpDocumentIssuer, configure_document_issuer, get_document_issuer
from .notifications import (
    ChangeNotifier,
    InMemoryChangeNotifier,
    LoggingChangeNotifier,
    WebhookChangeNotifier,
    configure_change_notifier,
    get_change_notifier,
)
from .storage import InMemoryRosterRepository, RosterRepository

__all__ = [
    "ChangeNotifier",
    "DocumentIssuer",
    "InMemoryChangeNotifier",
    "InMemoryRosterRepository",
    "IssuedDocument",
    "LoggingChangeNotifier",
    "NoOpDocumentIssuer",
    "RosterRepository",
    "WebhookChangeNotifier",
    "configure_change_notifier",
    "configure_document_issuer",
    "get_change_notifier",
    "get_document_issuer",
]
