from .config import Settings, load_settings
from .router import ChatRouter, ProcessingHandle
from .schemas import Message, Session
from .session import PromptRun, PromptState, SessionPromptEngine
from .store import HistoryStore

__version__ = "0.1.0"
