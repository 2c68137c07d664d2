"""Session prompt engine.

One :meth:`SessionPromptEngine.prompt` call runs the whole exchange against a
session log:

1. the user message is appended (before any provider call, so a crash never
   loses the user's input);
2. the full history is loaded, including that message;
3. the provider is called, either blocking or streaming;
4. the assistant message is appended once the complete reply is known.

A provider failure never leaves an assistant turn behind, and neither does a
stream that the consumer abandons before the provider finished. The only
exception is ``fallback_reply`` combined with ``persist_fallback``.

Callers are responsible for running at most one ``prompt`` per session at a
time; :class:`daychat.router.ChatRouter` does that.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Optional, Sequence, Union

from .errors import ChatError, InvalidRequestError, ProviderError
from .providers import LLMProvider, ProviderOptions
from .schemas import Message
from .store import HistoryStore, validate_session_id

logger = logging.getLogger(__name__)


class PromptState(str, Enum):
    CREATED = "created"
    USER_PERSISTED = "user_persisted"
    AWAITING_PROVIDER = "awaiting_provider"
    STREAMING = "streaming"
    GENERATING = "generating"
    RESPONSE_PERSISTED = "response_persisted"
    FAILED = "failed"


@dataclass
class PromptRun:
    """Bookkeeping for a single prompt call."""

    session_id: str
    stream: bool
    state: PromptState = PromptState.CREATED
    response: Optional[str] = None
    error: Optional[str] = None

    def fail(self, error: BaseException) -> None:
        self.state = PromptState.FAILED
        self.error = str(error) or error.__class__.__name__


class SessionPromptEngine:
    def __init__(
        self,
        session_id: str,
        store: HistoryStore,
        provider: LLMProvider,
        fallback_reply: Optional[str] = None,
        persist_fallback: bool = False,
    ) -> None:
        self.session_id = validate_session_id(session_id)
        self.store = store
        self.provider = provider
        self.fallback_reply = fallback_reply
        self.persist_fallback = persist_fallback
        self.last_run: Optional[PromptRun] = None

    def prompt(
        self,
        text: str,
        stream: bool = True,
        options: Optional[ProviderOptions] = None,
    ) -> Union[Iterator[str], str]:
        """Run one exchange.

        With ``stream=True`` the user message is saved right away and a
        generator of reply fragments is returned; the assistant message is
        saved when that generator is exhausted. With ``stream=False`` the full
        reply text is returned after it has been saved.
        """
        if not text or not text.strip():
            raise InvalidRequestError("Message is required")

        run = PromptRun(session_id=self.session_id, stream=stream)
        self.last_run = run
        history = self._begin(run, text)
        if stream:
            return self._stream(run, history, options)
        return self._generate(run, history, options)

    def get_history(self) -> List[Message]:
        return self.store.load(self.session_id).messages

    def clear_history(self) -> None:
        self.store.clear(self.session_id)
        logger.info("[%s] Session cleared", self.session_id)

    def _begin(self, run: PromptRun, text: str) -> List[Message]:
        try:
            self.store.append(Message(role="user", content=text), self.session_id)
            run.state = PromptState.USER_PERSISTED
            history = self.store.load(self.session_id).messages
        except ChatError as e:
            run.fail(e)
            raise
        run.state = PromptState.AWAITING_PROVIDER
        return history

    def _generate(self, run: PromptRun, history: Sequence[Message], options) -> str:
        run.state = PromptState.GENERATING
        try:
            response = self.provider.generate(history, options)
        except ProviderError as e:
            run.fail(e)
            logger.warning("[%s] Provider failed (non-stream): %s", self.session_id, e)
            if self.fallback_reply is None:
                raise
            return self._fallback(run)
        except Exception as e:
            run.fail(e)
            raise

        self._commit(run, response)
        logger.info("[%s] AI response saved (non-stream)", self.session_id)
        return response

    def _stream(self, run: PromptRun, history: Sequence[Message], options) -> Iterator[str]:
        run.state = PromptState.STREAMING
        buffer: List[str] = []
        try:
            for fragment in self.provider.stream(history, options):
                buffer.append(fragment)
                yield fragment
        except ProviderError as e:
            run.fail(e)
            logger.warning("[%s] Provider failed after %d fragments: %s", self.session_id, len(buffer), e)
            if self.fallback_reply is None:
                raise
            yield self._fallback(run)
            return
        except GeneratorExit:
            run.state = PromptState.FAILED
            run.error = "stream closed before completion"
            logger.info("[%s] Stream abandoned after %d fragments, nothing saved", self.session_id, len(buffer))
            raise
        except Exception as e:
            run.fail(e)
            raise

        self._commit(run, "".join(buffer))
        logger.info("[%s] AI response saved (stream)", self.session_id)

    def _commit(self, run: PromptRun, text: str) -> None:
        try:
            self.store.append(Message(role="assistant", content=text), self.session_id)
        except ChatError as e:
            run.fail(e)
            raise
        run.response = text
        run.state = PromptState.RESPONSE_PERSISTED

    def _fallback(self, run: PromptRun) -> str:
        text = self.fallback_reply or ""
        if self.persist_fallback:
            self.store.append(Message(role="assistant", content=text), self.session_id)
            logger.info("[%s] Fallback reply saved", self.session_id)
        return text
