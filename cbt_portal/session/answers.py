"""Optimistic answer persistence.

Selections are recorded locally first, then written with an idempotent
upsert keyed on (attempt, question). Writes for the same question run one
after another so the last selection always lands last; a selection that has
been superseded before its turn is skipped. Failed writes stay in the log
and are replayed on the next interaction.
"""

import asyncio
import logging
import uuid
from typing import Callable

from cbt_portal.session.errors import ConflictError, PersistenceError
from cbt_portal.session.store import RecordStore

logger = logging.getLogger(__name__)


class AnswerWriter:
    def __init__(
        self,
        store: RecordStore,
        attempt_id: uuid.UUID,
        on_failure: Callable[[uuid.UUID, Exception], None] | None = None,
    ):
        self._store = store
        self._attempt_id = attempt_id
        self._on_failure = on_failure
        # question_id → option_id not yet confirmed by the store
        self._unsaved: dict[uuid.UUID, uuid.UUID] = {}
        self._tails: dict[uuid.UUID, asyncio.Task] = {}

    @property
    def unsaved(self) -> dict[uuid.UUID, uuid.UUID]:
        return dict(self._unsaved)

    def enqueue(self, question_id: uuid.UUID, option_id: uuid.UUID) -> asyncio.Task:
        self._unsaved[question_id] = option_id
        previous = self._tails.get(question_id)
        task = asyncio.get_running_loop().create_task(
            self._save(question_id, option_id, previous)
        )
        self._tails[question_id] = task
        return task

    def replay(self) -> int:
        """Re-issue failed writes that have nothing in flight. Returns how many."""
        replayed = 0
        for question_id, option_id in list(self._unsaved.items()):
            tail = self._tails.get(question_id)
            if tail is None or tail.done():
                self.enqueue(question_id, option_id)
                replayed += 1
        if replayed:
            logger.info("Replaying %d unsaved answer(s) for attempt %s", replayed, self._attempt_id)
        return replayed

    async def flush(self) -> dict[uuid.UUID, uuid.UUID]:
        """Wait for every in-flight write; return what is still unsaved."""
        while True:
            pending = [t for t in self._tails.values() if not t.done()]
            if not pending:
                break
            outcomes = await asyncio.gather(*pending, return_exceptions=True)
            for outcome in outcomes:
                if isinstance(outcome, BaseException) and not isinstance(
                    outcome, asyncio.CancelledError
                ):
                    logger.error(
                        "Unexpected error saving answer for attempt %s",
                        self._attempt_id,
                        exc_info=outcome,
                    )
        return self.unsaved

    async def _save(
        self,
        question_id: uuid.UUID,
        option_id: uuid.UUID,
        previous: asyncio.Task | None,
    ) -> bool:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])

        if self._unsaved.get(question_id) != option_id:
            # superseded by a later selection (or already saved)
            return True

        try:
            await self._store.upsert_answer(self._attempt_id, question_id, option_id)
        except ConflictError as exc:
            # attempt already closed; nothing left to retry
            logger.warning("Answer for question %s dropped: %s", question_id, exc)
            self._unsaved.pop(question_id, None)
            return False
        except PersistenceError as exc:
            logger.warning(
                "Answer for question %s (attempt %s) not saved: %s",
                question_id,
                self._attempt_id,
                exc,
            )
            if self._on_failure is not None:
                self._on_failure(question_id, exc)
            return False

        if self._unsaved.get(question_id) == option_id:
            del self._unsaved[question_id]
        return True
