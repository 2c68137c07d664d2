import pytest

from daychat.errors import InvalidRequestError
from daychat.normalize import message_from_body, message_text, normalize_chat_body, to_ui_messages
from daychat.schemas import Message


def test_legacy_body_is_background():
    inbound = normalize_chat_body({"message": "hi"})

    assert inbound.text == "hi"
    assert inbound.stream is False
    assert inbound.session_id is None


def test_vercel_messages_body_uses_last_user_message():
    inbound = normalize_chat_body({
        "messages": [
            {"role": "user", "content": "old"},
            {"role": "assistant", "content": "reply"},
            {"role": "user", "parts": [{"type": "text", "text": "new "}, {"type": "text", "text": "one"}]},
        ]
    })

    assert inbound.text == "new one"
    assert inbound.stream is True
    assert inbound.session_id is None


def test_ui_message_body_carries_session_id():
    inbound = normalize_chat_body({
        "id": "chat-42",
        "message": {"id": "m1", "role": "user", "parts": [{"type": "text", "text": "hello"}]},
    })

    assert inbound.text == "hello"
    assert inbound.session_id == "chat-42"
    assert inbound.stream is True


@pytest.mark.parametrize("body", [
    None,
    [],
    {},
    {"message": ""},
    {"message": "   "},
    {"messages": []},
    {"messages": "hi"},
    {"messages": [{"role": "assistant", "content": "hi"}]},
    {"message": {"role": "assistant", "content": "hi"}},
    {"message": {"role": "user", "parts": [{"type": "image", "url": "x"}]}},
    {"message": {"role": "user", "content": "hi"}, "id": 7},
])
def test_malformed_bodies_rejected(body):
    with pytest.raises(InvalidRequestError):
        normalize_chat_body(body)


def test_message_text_ignores_non_text_parts():
    msg = {"parts": [{"type": "reasoning", "text": "hmm"}, {"type": "text", "text": "answer"}]}

    assert message_text(msg) == "answer"
    assert message_text(None) == ""


def test_message_from_body():
    assert message_from_body({"message": "hi"}) == "hi"
    assert message_from_body({"message": {"role": "user", "content": "yo"}}) == "yo"
    with pytest.raises(InvalidRequestError):
        message_from_body({"text": "hi"})


def test_to_ui_messages():
    messages = [
        Message(role="user", content="Hi", timestamp="2024-01-01T10:00:00.000Z"),
        Message(role="assistant", content="Hello", timestamp="2024-01-01T10:00:01.000Z"),
    ]

    ui = to_ui_messages(messages, "2024-01-01")

    assert ui[1] == {
        "id": "2024-01-01-1",
        "role": "assistant",
        "parts": [{"type": "text", "text": "Hello"}],
        "createdAt": "2024-01-01T10:00:01.000Z",
    }
    assert ui[0]["id"] != ui[1]["id"]
