import threading
from typing import Callable, List, Optional

import pytest

from daychat.config import Settings
from daychat.errors import ProviderError
from daychat.providers import LLMProvider
from daychat.router import ChatRouter
from daychat.store import HistoryStore


class ScriptedProvider(LLMProvider):
    """Deterministic in-process provider.

    ``fail_after`` raises a ProviderError once that many fragments were sent.
    ``hold`` maps a user message to an Event the stream waits on before
    emitting anything, so tests can keep a prompt in flight.
    """

    name = "scripted"

    def __init__(self, fragments=("Hello", " there"), fail_after: Optional[int] = None,
                 on_call: Optional[Callable] = None) -> None:
        super().__init__(model="scripted")
        self.fragments = list(fragments)
        self.fail_after = fail_after
        self.on_call = on_call
        self.calls: List[list] = []
        self.started = threading.Event()
        self.hold = {}

    def stream(self, messages, options=None):
        self.calls.append(list(messages))
        if self.on_call:
            self.on_call(messages)
        self.started.set()
        gate = self.hold.get(messages[-1].content) if messages else None
        if gate is not None:
            assert gate.wait(5), "test gate never released"
        for i, fragment in enumerate(self.fragments):
            if self.fail_after is not None and i >= self.fail_after:
                raise ProviderError("boom")
            yield fragment
        if self.fail_after is not None and self.fail_after >= len(self.fragments):
            raise ProviderError("boom")


@pytest.fixture
def settings(tmp_path):
    return Settings(provider="demo", history_dir=tmp_path / "history")


@pytest.fixture
def store(settings):
    return HistoryStore(settings.history_dir)


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def router(settings, store, provider):
    r = ChatRouter(settings, store=store, provider=provider)
    yield r
    r.shutdown()
