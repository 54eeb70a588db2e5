"""Hook for the downstream policy/invoice document collaborator.

Finalizing a batch asks the issuer to produce the policy documents for the
approved lives. No provider is wired in by default; integrations call
``configure_document_issuer`` during application start-up.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from roster_workflow.domain.models import AttemptRecord, Batch


@dataclass(slots=True)
class IssuedDocument:
    """Reference returned by :class:`DocumentIssuer` implementations."""

    batch_id: str
    reference: str | None = None
    metadata: dict[str, object] | None = None


class DocumentIssuer(Protocol):
    def issue(self, batch: Batch, approved: list[AttemptRecord], amount: Decimal) -> IssuedDocument:
        """Create the policy/invoice documents for a finalized batch."""


class NoOpDocumentIssuer:
    """Issuer used when no document provider is configured."""

    def issue(self, batch: Batch, approved: list[AttemptRecord], amount: Decimal) -> IssuedDocument:
        return IssuedDocument(
            batch_id=batch.batch_id,
            reference=None,
            metadata={
                "provider": "noop",
                "reason": "document issuer not configured",
                "lives": len(approved),
                "amount": str(amount),
            },
        )


_issuer: DocumentIssuer = NoOpDocumentIssuer()


def configure_document_issuer(issuer: DocumentIssuer) -> None:
    global _issuer
    _issuer = issuer


def get_document_issuer() -> DocumentIssuer:
    return _issuer
