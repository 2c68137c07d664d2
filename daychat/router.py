"""Request router and per-session processing queue.

Every session id gets its own single-worker lane, so for one session the
append(user) -> load -> provider -> append(assistant) sequence of a prompt
finishes before the next prompt on that id starts. Sessions never share a
lane and run in parallel.

A lane only exists while it has queued or running work. When its last job
settles the worker thread is released, and the next job for that id starts a
new lane.

Streaming prompts are drained on the lane into a queue that the HTTP response
reads from. If the client goes away the lane keeps draining the provider and
the reply is still saved once the provider finishes.
"""
from __future__ import annotations

import logging
import queue
from collections import OrderedDict
from concurrent import futures
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Lock
from typing import Callable, Dict, Iterator, List, Optional

from .config import Settings
from .errors import InvalidRequestError
from .providers import LLMProvider, ProviderOptions, build_provider
from .schemas import Message, SubmitAck, today
from .session import SessionPromptEngine
from .store import HistoryStore, validate_session_id

logger = logging.getLogger(__name__)

ACK_MESSAGE = "received"

# settled background handles kept for status polling
MAX_HANDLES = 1024

_FRAGMENT, _ERROR, _END = "fragment", "error", "end"


class ProcessingHandle:
    """Completion signal of one background prompt, for the polling endpoint."""

    def __init__(self, session_id: str, future: Future) -> None:
        self.session_id = session_id
        self._future = future

    def wait(self, timeout: float) -> bool:
        """True if the prompt settled (saved or failed) within ``timeout`` seconds."""
        done, _ = futures.wait([self._future], timeout=timeout)
        return bool(done)

    def done(self) -> bool:
        return self._future.done()

    def error(self) -> Optional[BaseException]:
        if not self._future.done():
            return None
        return self._future.exception()

    def result(self, timeout: Optional[float] = None):
        return self._future.result(timeout)


class _Lane:
    def __init__(self, session_id: str) -> None:
        self.executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"session-{session_id}")
        self.pending = 0


class ChatRouter:
    def __init__(
        self,
        settings: Settings,
        store: Optional[HistoryStore] = None,
        provider: Optional[LLMProvider] = None,
    ) -> None:
        self.settings = settings
        self.store = store or HistoryStore(settings.history_dir, strict=settings.strict_reads)
        self.provider = provider or build_provider(settings)
        self._lanes: Dict[str, _Lane] = {}
        self._handles: "OrderedDict[str, ProcessingHandle]" = OrderedDict()
        self._lock = Lock()
        self._closed = False

    def engine(self, session_id: str) -> SessionPromptEngine:
        return SessionPromptEngine(
            session_id,
            self.store,
            self.provider,
            fallback_reply=self.settings.fallback_reply,
            persist_fallback=self.settings.persist_fallback,
        )

    def _run(self, session_id: str, fn: Callable, *args) -> Future:
        """Queue ``fn`` on the lane of ``session_id``, creating the lane if needed."""
        with self._lock:
            if self._closed:
                raise RuntimeError("router is shut down")
            lane = self._lanes.get(session_id)
            if lane is None:
                lane = self._lanes[session_id] = _Lane(session_id)
                logger.debug("[%s] Lane created", session_id)
            try:
                future = lane.executor.submit(fn, *args)
            except RuntimeError:
                if not lane.pending:
                    del self._lanes[session_id]
                    lane.executor.shutdown(wait=False)
                raise
            lane.pending += 1
        future.add_done_callback(lambda _f: self._release(session_id, lane))
        return future

    def _release(self, session_id: str, lane: _Lane) -> None:
        with self._lock:
            lane.pending -= 1
            if lane.pending or self._lanes.get(session_id) is not lane:
                return
            del self._lanes[session_id]
        # runs on the lane's own worker, so never wait here
        lane.executor.shutdown(wait=False)
        logger.debug("[%s] Lane released", session_id)

    @staticmethod
    def _check(session_id: str, text: str) -> None:
        validate_session_id(session_id)
        if not text or not text.strip():
            raise InvalidRequestError("Message is required")

    # ---- legacy background path ----

    def submit(self, text: str, session_id: Optional[str] = None,
               options: Optional[ProviderOptions] = None) -> SubmitAck:
        """Start a blocking prompt in the background and return at once."""
        session_id = session_id or today()
        self._check(session_id, text)
        engine = self.engine(session_id)

        def work() -> str:
            try:
                return engine.prompt(text, stream=False, options=options)
            except Exception:
                logger.exception("[%s] Background processing failed", session_id)
                raise

        future = self._run(session_id, work)
        with self._lock:
            self._handles.pop(session_id, None)
            self._handles[session_id] = ProcessingHandle(session_id, future)
            self._prune_handles()
        return SubmitAck(message=ACK_MESSAGE, date=session_id)

    def _prune_handles(self) -> None:
        # oldest settled handles go first; in-flight ones are always kept
        for session_id, handle in list(self._handles.items()):
            if len(self._handles) <= MAX_HANDLES:
                break
            if handle.done():
                del self._handles[session_id]

    def handle(self, session_id: str) -> Optional[ProcessingHandle]:
        with self._lock:
            return self._handles.get(session_id)

    def poll_status(self, session_id: str, timeout: Optional[float] = None) -> str:
        handle = self.handle(session_id)
        if handle is None:
            return "idle"
        if timeout is None:
            timeout = self.settings.status_poll_timeout
        return "done" if handle.wait(timeout) else "processing"

    # ---- direct paths ----

    def prompt(self, session_id: str, text: str, options: Optional[ProviderOptions] = None) -> str:
        self._check(session_id, text)
        engine = self.engine(session_id)
        return self._run(session_id, engine.prompt, text, False, options).result()

    def stream(self, session_id: str, text: str, options: Optional[ProviderOptions] = None) -> Iterator[str]:
        """Fragments of the reply, in order.

        A provider failure is raised from the iterator after the fragments
        that came before it.
        """
        self._check(session_id, text)
        engine = self.engine(session_id)
        chunks: "queue.Queue[tuple]" = queue.Queue()

        def drain() -> None:
            try:
                for fragment in engine.prompt(text, stream=True, options=options):
                    chunks.put((_FRAGMENT, fragment))
            except Exception as e:
                chunks.put((_ERROR, e))
            else:
                chunks.put((_END, None))

        self._run(session_id, drain)
        return self._consume(chunks)

    @staticmethod
    def _consume(chunks: "queue.Queue[tuple]") -> Iterator[str]:
        while True:
            kind, value = chunks.get()
            if kind == _FRAGMENT:
                yield value
            elif kind == _ERROR:
                raise value
            else:
                return

    # ---- history ----

    def history(self, session_id: str) -> List[Message]:
        return self.engine(session_id).get_history()

    def clear(self, session_id: str) -> None:
        engine = self.engine(session_id)
        self._run(session_id, engine.clear_history).result()

    def session_ids(self) -> List[str]:
        return self.store.list_session_ids()

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            lanes = list(self._lanes.values())
            self._lanes.clear()
        for lane in lanes:
            lane.executor.shutdown(wait=True)
