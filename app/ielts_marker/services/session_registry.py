"""Per-login marking contexts kept in process memory.

A context is created at login with that teacher's Gemini client and thrown
away at logout. Marking sessions are never persisted.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional
from uuid import uuid4

from flask import current_app

from .annotation_store import AnnotationStore, IdAllocator
from .ielts_marker import IeltsMarker


@dataclass
class MarkingSession:
    """One student's answer being marked, plus its annotation store."""
    student_name: str
    class_name: str
    task_type: int
    question: str
    essay: str
    store: AnnotationStore


@dataclass
class MarkerContext:
    user_id: int
    marker: IeltsMarker
    allocator: IdAllocator = field(default_factory=IdAllocator)
    marking: Optional[MarkingSession] = None


class SessionRegistry:
    """Maps opaque tokens (kept in the Flask session cookie) to contexts."""

    def __init__(self):
        self._contexts: Dict[str, MarkerContext] = {}

    def open(self, user_id: int, marker: IeltsMarker) -> str:
        """Start a context for user_id, closing any that user already had open.

        A teacher has at most one live context, so a login from a new browser
        (or after the cookie is lost) ends the older one.
        """
        for stale in [t for t, c in self._contexts.items() if c.user_id == user_id]:
            self.close(stale)
        token = uuid4().hex
        self._contexts[token] = MarkerContext(user_id=user_id, marker=marker)
        current_app.logger.info(f"Opened marker context for user {user_id}, {len(self._contexts)} active")
        return token

    def get(self, token: Optional[str]) -> Optional[MarkerContext]:
        if not token:
            return None
        return self._contexts.get(token)

    def close(self, token: Optional[str]) -> None:
        context = self._contexts.pop(token, None) if token else None
        if context is not None:
            current_app.logger.info(f"Closed marker context for user {context.user_id}")

    def __len__(self) -> int:
        return len(self._contexts)


def get_registry() -> SessionRegistry:
    """Registry attached to the current Flask app."""
    registry = current_app.extensions.get('marker_sessions')
    if registry is None:
        registry = current_app.extensions['marker_sessions'] = SessionRegistry()
    return registry
