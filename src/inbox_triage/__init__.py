"""Inbox Triage - Incremental mailbox sync, batch categorization, indexing and notification."""

from inbox_triage.core.models import (
    Category,
    ClassificationMethod,
    ClassifiedRecord,
    MailRecord,
    PipelineProgress,
    SearchFilter,
)
from inbox_triage.pipeline.orchestrator import PipelineState, TriagePipeline

__all__ = [
    "Category",
    "ClassificationMethod",
    "ClassifiedRecord",
    "MailRecord",
    "PipelineProgress",
    "PipelineState",
    "SearchFilter",
    "TriagePipeline",
]
