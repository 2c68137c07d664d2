from __future__ import annotations

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful personal assistant running on the user's own machine. "
    "Be friendly and direct. "
    "Keep replies short unless the user asks for more detail. "
    "When you write code, make it correct and runnable."
)

# Canned replies for the offline demo backend, picked by keyword.
DEMO_REPLIES = {
    "hello": "Hello! I'm running in demo mode, so my answers are canned. What's on your mind?",
    "help": (
        "Demo mode can't reach a real model.\n"
        "Set DAYCHAT_PROVIDER to openai, gemini or ollama to get real answers."
    ),
    "code": "Paste the code and the error you're seeing, and tell me what you expected to happen.",
}

DEMO_DEFAULT_REPLY = "I hear you. (demo mode) Tell me more?"


def demo_reply(text: str) -> str:
    low = (text or "").lower()
    for keyword, reply in DEMO_REPLIES.items():
        if keyword in low:
            return reply
    return DEMO_DEFAULT_REPLY
