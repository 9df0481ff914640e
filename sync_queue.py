"""Client-side answer queue.

Answers are scored locally the moment they are given and delivered to the
server in the background, retried with backoff, and kept on disk until the
server has them so a restarted client can pick up where it left off.
Everything runs cooperatively on one asyncio loop per quiz session.
"""
import asyncio
import json
import logging
import os
import time
import uuid
from dataclasses import asdict, dataclass, replace

import requests

from quiz import answers_match

logger = logging.getLogger(__name__)

PENDING = "pending"
SYNCING = "syncing"
SYNCED = "synced"
FAILED = "failed"

MAX_RETRIES = 3
RETRY_DELAYS = (1.0, 2.0, 5.0)  # seconds; the last one repeats
MAX_AGE_SECONDS = 24 * 60 * 60
SYNC_TIMEOUT = 10.0
POLL_INTERVAL = 0.1
KICK_DELAY = 0.01


class DeliveryError(Exception):
    """An answer could not be delivered; it may be retried."""


@dataclass(frozen=True)
class PendingAnswer:
    id: str
    session_id: int
    character_id: int
    user_answer: str
    response_time_ms: int
    is_correct: bool
    timestamp: float
    retry_count: int = 0
    status: str = PENDING
    next_attempt_at: float = 0.0


@dataclass(frozen=True)
class LocalAnswerResult:
    is_correct: bool
    correct_answer: str


@dataclass(frozen=True)
class QueueState:
    pending: int
    syncing: int
    retrying: int
    failed: int
    all_synced: bool


class AnswerStore:
    """JSON file holding unsynced answers for every session on this client.

    Storage problems never reach the learner: reads fall back to an empty
    queue and failed writes are logged and dropped.
    """

    def __init__(self, path, max_age=MAX_AGE_SECONDS, clock=time.time):
        self.path = path
        self.max_age = max_age
        self._clock = clock

    def _read_all(self):
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            answers = [PendingAnswer(**item) for item in raw]
        except FileNotFoundError:
            return []
        except (OSError, ValueError, TypeError) as exc:
            logger.debug("Ignoring unreadable answer store %s: %s", self.path, exc)
            return []
        cutoff = self._clock() - self.max_age
        return [a for a in answers if a.timestamp > cutoff]

    def _write_all(self, answers):
        tmp_path = f"{self.path}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump([asdict(a) for a in answers], f, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            logger.debug("Could not persist answer store %s: %s", self.path, exc)

    def load(self, session_id):
        return [a for a in self._read_all() if a.session_id == session_id]

    def save(self, session_id, answers):
        """Replace this session's entries; synced answers are never written."""
        others = [a for a in self._read_all() if a.session_id != session_id]
        mine = [a for a in answers if a.status != SYNCED]
        self._write_all(others + mine)

    def clear_session(self, session_id):
        self.save(session_id, [])


class HttpAnswerTransport:
    """Delivers answers to the quiz server's submit-answer endpoint.

    ``http`` is a ``requests.Session`` already carrying the learner's login
    cookie.
    """

    def __init__(self, base_url, http=None, timeout=5.0):
        self.base_url = base_url.rstrip("/")
        self.http = http or requests.Session()
        self.timeout = timeout

    def post_answer(self, answer):
        url = f"{self.base_url}/api/quiz/{answer.session_id}/answer"
        body = {
            "character_id": answer.character_id,
            "user_answer": answer.user_answer,
            "response_time_ms": answer.response_time_ms,
        }
        try:
            response = self.http.post(url, json=body, timeout=self.timeout)
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise DeliveryError(str(exc)) from exc

        if payload.get("success"):
            return payload.get("data")
        error = payload.get("error") or f"HTTP {response.status_code}"
        if response.status_code == 409 and "already answered" in error:
            # an earlier attempt reached the server but its reply was lost
            logger.info("Answer %s was already recorded", answer.id)
            return None
        raise DeliveryError(error)

    async def __call__(self, answer):
        return await asyncio.to_thread(self.post_answer, answer)


class AnswerQueue:
    """Optimistic answer queue for one quiz session.

    ``deliver`` is an async callable taking a ``PendingAnswer``; it raises
    ``DeliveryError`` when the answer did not reach the server.

    The answers tuple is the queue's state cell: every change replaces it
    whole and every scheduled pass reads it afresh. ``close()`` flips the
    liveness flag so timers and in-flight deliveries stop touching state.
    """

    def __init__(self, session_id, deliver, store=None, retry_delays=RETRY_DELAYS,
                 max_retries=MAX_RETRIES, clock=time.time):
        self.session_id = session_id
        self._deliver = deliver
        self._store = store
        self._retry_delays = tuple(retry_delays)
        self._max_retries = max_retries
        self._clock = clock
        self._processing = False
        self._rerun = False
        self._alive = True
        self._timers = set()
        self._tasks = set()

        restored = store.load(session_id) if store is not None else []
        # deliveries interrupted by a restart start over
        self._answers = tuple(
            replace(a, status=PENDING) if a.status == SYNCING else replace(a, next_attempt_at=0.0)
            for a in restored
        )

    # ── state cell ──

    @property
    def answers(self):
        return self._answers

    def _set_answers(self, answers):
        self._answers = tuple(answers)
        if self._store is not None:
            self._store.save(self.session_id, self._answers)

    def _update(self, answer_id, **changes):
        if not self._alive:
            return None
        updated = None
        answers = []
        for a in self._answers:
            if a.id == answer_id:
                a = updated = replace(a, **changes)
            answers.append(a)
        if updated is not None:
            self._set_answers(answers)
        return updated

    def _awaiting_retry(self, answer):
        return answer.status == FAILED and answer.retry_count < self._max_retries

    def _is_due(self, answer, now):
        if answer.status == PENDING:
            return True
        return self._awaiting_retry(answer) and answer.next_attempt_at <= now

    # ── scheduling ──

    def _schedule(self, delay, retry_id=None):
        loop = asyncio.get_running_loop()
        handle = None

        def fire():
            self._timers.discard(handle)
            if retry_id is not None:
                self._update(retry_id, next_attempt_at=0.0)
            self._start_pass()

        handle = loop.call_later(delay, fire)
        self._timers.add(handle)

    def _start_pass(self):
        if not self._alive:
            return
        task = asyncio.get_running_loop().create_task(self.process_queue())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _retry_delay(self, retry_count):
        return self._retry_delays[min(retry_count - 1, len(self._retry_delays) - 1)]

    async def process_queue(self):
        """One delivery pass over every due answer; never overlaps itself."""
        if not self._alive:
            return
        if self._processing:
            self._rerun = True
            return
        self._processing = True
        self._rerun = False
        try:
            due = [a.id for a in self._answers if self._is_due(a, self._clock())]
            for answer_id in due:
                if not self._alive:
                    break
                answer = self._update(answer_id, status=SYNCING)
                if answer is None:
                    continue
                try:
                    await self._deliver(answer)
                except DeliveryError as exc:
                    if not self._alive:
                        break
                    self._handle_failure(answer, exc)
                    continue
                if not self._alive:
                    break
                self._update(answer_id, status=SYNCED)
        finally:
            self._processing = False
        if self._rerun and self._alive:
            self._rerun = False
            self._schedule(0)

    def _handle_failure(self, answer, exc):
        retry_count = answer.retry_count + 1
        if retry_count < self._max_retries:
            delay = self._retry_delay(retry_count)
            self._update(answer.id, status=FAILED, retry_count=retry_count,
                         next_attempt_at=self._clock() + delay)
            logger.warning("Answer %s failed to sync (%s), retry %d in %.1fs",
                           answer.id, exc, retry_count, delay)
            self._schedule(delay, retry_id=answer.id)
        else:
            self._update(answer.id, status=FAILED, retry_count=retry_count)
            logger.warning("Answer %s failed to sync after %d attempts: %s", answer.id, retry_count, exc)

    # ── public API ──

    def submit_answer(self, character_id, user_answer, correct_answer, response_time_ms=0):
        """Score locally, queue for delivery, and return the result immediately.

        Must be called from inside the running event loop.
        """
        is_correct = answers_match(user_answer, correct_answer)
        answer = PendingAnswer(
            id=uuid.uuid4().hex,
            session_id=self.session_id,
            character_id=character_id,
            user_answer=user_answer,
            response_time_ms=response_time_ms,
            is_correct=is_correct,
            timestamp=self._clock(),
        )
        self._set_answers(self._answers + (answer,))
        self._schedule(KICK_DELAY)
        return LocalAnswerResult(is_correct=is_correct, correct_answer=correct_answer)

    async def wait_for_sync(self, timeout=SYNC_TIMEOUT, poll_interval=POLL_INTERVAL):
        """Wait until nothing is left to deliver.

        True when every answer is synced; False on timeout, after ``close()``,
        or when some answers ran out of retries.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        self._start_pass()
        while True:
            answers = self._answers
            outstanding = [a for a in answers if a.status in (PENDING, SYNCING) or self._awaiting_retry(a)]
            if not outstanding:
                return all(a.status == SYNCED for a in answers)
            if not self._alive or loop.time() >= deadline:
                return False
            await asyncio.sleep(poll_interval)

    def queue_state(self):
        answers = self._answers
        return QueueState(
            pending=sum(1 for a in answers if a.status == PENDING),
            syncing=sum(1 for a in answers if a.status == SYNCING),
            retrying=sum(1 for a in answers if self._awaiting_retry(a)),
            failed=sum(1 for a in answers if a.status == FAILED and not self._awaiting_retry(a)),
            all_synced=all(a.status == SYNCED for a in answers),
        )

    @property
    def unsynced_count(self):
        return sum(1 for a in self._answers if a.status != SYNCED)

    @property
    def local_score(self):
        return sum(1 for a in self._answers if a.is_correct)

    @property
    def answered_count(self):
        return len(self._answers)

    def has_answered(self, character_id):
        return any(a.character_id == character_id for a in self._answers)

    def clear(self):
        """Forget this session's answers, on disk too (after the quiz is completed)."""
        self._answers = ()
        if self._store is not None:
            self._store.clear_session(self.session_id)

    def close(self):
        """Stop all timers; in-flight deliveries finish without touching state."""
        self._alive = False
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
