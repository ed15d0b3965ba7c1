"""Parked thoughts: notes kept at repository scope across sessions."""

from __future__ import annotations

from datetime import datetime

from loguru import logger

from vibeflow.context.models import ParkedThought, Session
from vibeflow.context.store import SessionStore


class ParkedThoughtStore:
    """Keeps each thought in two places under one id.

    The originating session holds the historical copy; the repo context holds
    the cross-session copy. Deleting removes both.
    """

    def __init__(self, store: SessionStore):
        self.store = store

    def add(self, session: Session, text: str, now: datetime) -> ParkedThought:
        text = text.strip()
        if not text:
            raise ValueError("Parked thought text is required")
        with self.store.lock:
            thought = ParkedThought(text=text, created_at=now)
            session.parked_thoughts.append(thought)
            self.add_to_repo(session.repo_key, thought)
            logger.info("Parked thought {} in {}", thought.id, session.repo_key)
            return thought

    def add_to_repo(self, repo_key: str, thought: ParkedThought) -> None:
        with self.store.lock:
            self.store.repo(repo_key).parked_thoughts.append(thought)
            self.store.save_soon()

    def list(self, repo_key: str) -> list[ParkedThought]:
        context = self.store.peek_repo(repo_key)
        if context is None:
            return []
        return list(context.parked_thoughts)

    def delete(self, repo_key: str, thought_id: str) -> bool:
        """Delete a thought from the repo list and from every session copy."""
        with self.store.lock:
            removed = False
            context = self.store.peek_repo(repo_key)
            if context is not None:
                kept = [t for t in context.parked_thoughts if t.id != thought_id]
                removed = len(kept) < len(context.parked_thoughts)
                context.parked_thoughts = kept

            for session in self.store.sessions:
                kept = [t for t in session.parked_thoughts if t.id != thought_id]
                if len(kept) < len(session.parked_thoughts):
                    session.parked_thoughts = kept
                    removed = True

            if removed:
                logger.info("Deleted parked thought {} from {}", thought_id, repo_key)
                self.store.flush()
            return removed
