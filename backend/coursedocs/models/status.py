"""
Document lifecycle rules.

    pending ──► processing ──► completed
                   │  ▲
                   ▼  │ (reprocess)
                 failed

The status column doubles as the only concurrency guard: entering
`processing` is always a compare-and-set against the stored value
(see coursedocs.db.queries.claim_for_processing), never a read followed
by a separate write.
"""

from __future__ import annotations

from coursedocs.core.errors import InvalidTransition
from coursedocs.schemas.documents import DocumentStatus

TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    DocumentStatus.PENDING:    frozenset({DocumentStatus.PROCESSING}),
    DocumentStatus.PROCESSING: frozenset({DocumentStatus.COMPLETED, DocumentStatus.FAILED}),
    DocumentStatus.FAILED:     frozenset({DocumentStatus.PROCESSING}),
    DocumentStatus.COMPLETED:  frozenset(),
}

# A freshly dispatched run may only pick up documents nobody has touched yet
DISPATCHABLE_FROM: frozenset[DocumentStatus] = frozenset({DocumentStatus.PENDING})

# Explicit reprocessing additionally re-enters completed documents
REPROCESSABLE_FROM: frozenset[DocumentStatus] = frozenset(
    {DocumentStatus.PENDING, DocumentStatus.FAILED, DocumentStatus.COMPLETED}
)

TERMINAL: frozenset[DocumentStatus] = frozenset(
    {DocumentStatus.COMPLETED, DocumentStatus.FAILED}
)


def can_transition(source: DocumentStatus, target: DocumentStatus) -> bool:
    return target in TRANSITIONS[DocumentStatus(source)]


def check_transition(
    source: DocumentStatus,
    target: DocumentStatus,
    *,
    reprocess: bool = False,
) -> None:
    """Raise InvalidTransition unless source → target is allowed."""
    source = DocumentStatus(source)
    target = DocumentStatus(target)
    if reprocess and target is DocumentStatus.PROCESSING and source in REPROCESSABLE_FROM:
        return
    if not can_transition(source, target):
        raise InvalidTransition(source.value, target.value)
