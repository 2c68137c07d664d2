from __future__ import annotations

import codecs
import logging
import subprocess
import tempfile
from typing import Any, List, Sequence

from .errors import ProviderError
from .providers import LLMProvider
from .schemas import Message

logger = logging.getLogger(__name__)

# local models lose the thread on long transcripts
MAX_PROMPT_TURNS = 8


def build_prompt(instructions: str, history: Sequence[Message]) -> str:
    hist = ""
    for msg in history[-MAX_PROMPT_TURNS:]:
        if msg.role == "system" or not msg.content:
            continue
        hist += f"{msg.role.upper()}: {msg.content}\n"

    return (
        f"{instructions}\n\n"
        f"CHAT HISTORY:\n{hist}\n"
        f"ASSISTANT:"
    )


class OllamaProvider(LLMProvider):
    """Runs ``ollama run <model> <prompt>`` and streams its stdout."""

    name = "ollama"
    read_size = 256

    def __init__(self, ollama_path: str = "ollama", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.ollama_path = ollama_path

    def _command(self, messages: Sequence[Message], model: str) -> List[str]:
        prompt = build_prompt(self.system_prompt or "", messages)
        return [self.ollama_path, "run", model, prompt]

    def stream(self, messages, options=None):
        model, _temperature, _max_tokens = self._resolve(options)
        # stderr goes to a file so a chatty ollama can't fill the pipe and stall stdout
        errfile = tempfile.TemporaryFile()
        try:
            proc = subprocess.Popen(
                self._command(messages, model),
                stdout=subprocess.PIPE,
                stderr=errfile,
            )
        except OSError as e:
            errfile.close()
            raise ProviderError(f"Ollama local call failed: {e}") from e

        decoder = codecs.getincrementaldecoder("utf-8")(errors="ignore")
        finished = False
        try:
            while True:
                raw = proc.stdout.read1(self.read_size)
                if not raw:
                    break
                text = decoder.decode(raw)
                if text:
                    yield text
            tail = decoder.decode(b"", final=True)
            if tail:
                yield tail

            returncode = proc.wait()
            finished = True
            if returncode != 0:
                errfile.seek(0)
                err = errfile.read().decode("utf-8", errors="ignore").strip()
                logger.error("ollama exited with %s: %s", returncode, err)
                raise ProviderError(f"Ollama local call failed: {err or 'ollama failed'}")
        finally:
            if not finished:
                proc.kill()
                proc.wait()
            proc.stdout.close()
            errfile.close()
