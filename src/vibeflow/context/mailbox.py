"""Time echo mailbox: notes handed from one session to the next on a repo.

An echo moves strictly forward through
``session -> pending -> delivered -> {parked, discarded}``; it is never in
two places at once.
"""

from __future__ import annotations

from datetime import datetime

from loguru import logger

from vibeflow.context.models import ParkedThought, TimeEcho
from vibeflow.context.store import SessionStore
from vibeflow.context.thoughts import ParkedThoughtStore


class TimeEchoMailbox:
    def __init__(self, store: SessionStore, thoughts: ParkedThoughtStore):
        self.store = store
        self.thoughts = thoughts

    def enqueue(self, repo_key: str, echoes: list[TimeEcho], deliver_at: datetime) -> int:
        """Append echoes to the repo's pending queue, in authoring order."""
        if not echoes:
            return 0
        with self.store.lock:
            pending = self.store.repo(repo_key).pending_echoes
            for echo in echoes:
                echo.deliver_at = deliver_at
                pending.append(echo)
            self.store.save_soon()
            logger.info("Queued {} time echoes for {}", len(echoes), repo_key)
            return len(echoes)

    def drain(self, repo_key: str, now: datetime) -> list[TimeEcho]:
        """Move every pending echo to delivered and return them.

        A second drain with nothing new queued returns an empty list; the
        delivered set is untouched by it.
        """
        with self.store.lock:
            context = self.store.peek_repo(repo_key)
            if context is None or not context.pending_echoes:
                return []
            drained = context.pending_echoes
            context.pending_echoes = []
            for echo in drained:
                echo.delivered_at = now
            context.delivered_echoes.extend(drained)
            self.store.flush()
            logger.info("Delivered {} time echoes for {}", len(drained), repo_key)
            return list(drained)

    def pending(self, repo_key: str) -> list[TimeEcho]:
        context = self.store.peek_repo(repo_key)
        return list(context.pending_echoes) if context else []

    def delivered(self, repo_key: str) -> list[TimeEcho]:
        context = self.store.peek_repo(repo_key)
        return list(context.delivered_echoes) if context else []

    def park(self, repo_key: str, echo_id: str, now: datetime) -> ParkedThought | None:
        """Turn a delivered echo into a parked thought on the same repo."""
        with self.store.lock:
            echo = self._take_delivered(repo_key, echo_id)
            if echo is None:
                return None
            thought = ParkedThought(id=echo.id, text=echo.text, created_at=now)
            self.thoughts.add_to_repo(repo_key, thought)
            self.store.flush()
            logger.info("Parked time echo {} as thought {}", echo_id, thought.id)
            return thought

    def discard(self, repo_key: str, echo_id: str) -> bool:
        with self.store.lock:
            echo = self._take_delivered(repo_key, echo_id)
            if echo is None:
                return False
            self.store.flush()
            logger.info("Discarded time echo {}", echo_id)
            return True

    def _take_delivered(self, repo_key: str, echo_id: str) -> TimeEcho | None:
        context = self.store.peek_repo(repo_key)
        if context is None:
            return None
        for index, echo in enumerate(context.delivered_echoes):
            if echo.id == echo_id:
                return context.delivered_echoes.pop(index)
        return None
