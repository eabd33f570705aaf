"""Event ingestion: GitHub webhooks normalized into orchestration events."""

from src.conductor.webhook.handler import EventIngestor
from src.conductor.webhook.models import CommentAction, EventKind, IngestedEvent, IssueAction

__all__ = [
    "CommentAction",
    "EventIngestor",
    "EventKind",
    "IngestedEvent",
    "IssueAction",
]
