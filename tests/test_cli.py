import json

import httpx
import pytest
from fastapi.testclient import TestClient

from daychat.cli import ChatClient, build_parser, main
from daychat.main import create_app
from daychat.schemas import Message, today
from daychat.store import HistoryStore

SID = "2024-01-01"


@pytest.fixture(autouse=True)
def config_path(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    monkeypatch.setenv("DAYCHAT_CONFIG", str(path))
    for name in ("DAYCHAT_PROVIDER", "DAYCHAT_TEMPERATURE", "DAYCHAT_MODEL", "OPENAI_MODEL", "GEMINI_MODEL"):
        monkeypatch.delenv(name, raising=False)
    return path


@pytest.fixture
def history_dir(tmp_path, monkeypatch):
    path = tmp_path / "history"
    monkeypatch.setenv("DAYCHAT_HISTORY_DIR", str(path))
    store = HistoryStore(path)
    store.append(Message(role="user", content="Hi"), SID)
    store.append(Message(role="assistant", content="Hello there"), SID)
    store.append(Message(role="user", content="later"), "2024-01-03")
    return path


@pytest.fixture
def server(settings, router, monkeypatch):
    """The app behind an in-process httpx client, wired into the CLI."""
    with TestClient(create_app(settings, router)) as http:
        monkeypatch.setattr("daychat.cli._client", lambda _settings: ChatClient("http://testserver", http=http))
        yield http


def fake_server(handler):
    http = httpx.Client(base_url="http://daychat.test", transport=httpx.MockTransport(handler))
    return lambda _settings: ChatClient("http://daychat.test", http=http)


# ---- history ----

def test_history_list(history_dir, capsys):
    assert main(["history", "--list", "--json"]) == 0

    assert json.loads(capsys.readouterr().out) == [SID, "2024-01-03"]


def test_history_show(history_dir, capsys):
    assert main(["history", "--date", SID]) == 0

    out = capsys.readouterr().out
    assert "You:" in out
    assert "Hello there" in out


def test_history_clear(history_dir):
    assert main(["history", "--clear", SID]) == 0

    assert HistoryStore(history_dir).load(SID).messages == []


def test_history_clean_all(history_dir):
    assert main(["history", "--clean-all", "--yes"]) == 0

    store = HistoryStore(history_dir)
    assert all(store.load(sid).messages == [] for sid in store.list_session_ids())


def test_history_bad_date(history_dir, capsys):
    assert main(["history", "--date", "../x"]) == 1
    assert "Invalid session id" in capsys.readouterr().err


# ---- config ----

def test_config_masks_key(history_dir, monkeypatch, capsys):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-very-secret")

    assert main(["config"]) == 0

    assert "sk-very-secret" not in capsys.readouterr().out


def test_config_set_parses_json_values(config_path, capsys):
    assert main(["config", "set", "temperature", "0.2"]) == 0
    assert main(["config", "set", "strict_reads", "true"]) == 0
    assert main(["config", "set", "provider", "demo"]) == 0
    assert main(["config", "set", "model", "4"]) == 0

    assert json.loads(config_path.read_text()) == {
        "temperature": 0.2,
        "strict_reads": True,
        "provider": "demo",
        "model": "4",
    }
    assert "Set temperature to 0.2" in capsys.readouterr().out


def test_config_get_reads_effective_value(config_path, capsys):
    config_path.write_text(json.dumps({"temperature": 0.3}))

    assert main(["config", "get", "temperature"]) == 0
    assert capsys.readouterr().out.strip() == "0.3"

    assert main(["config", "get", "nope"]) == 1
    assert 'Key "nope" not found' in capsys.readouterr().err


def test_config_list_shows_file_contents(config_path, capsys):
    main(["config", "set", "port", "4000"])
    capsys.readouterr()

    assert main(["config", "list"]) == 0

    assert json.loads(capsys.readouterr().out) == {"port": 4000}


def test_config_set_rejects_bad_values(config_path, capsys):
    assert main(["config", "set", "provider", "nope"]) == 1
    assert main(["config", "set", "unknown_key", "1"]) == 1
    assert main(["config", "set", "port", "not-a-port"]) == 1
    assert main(["config", "set", "port"]) == 1

    assert not config_path.exists()
    assert "Unknown config key" in capsys.readouterr().err


def test_config_reset(config_path, capsys):
    main(["config", "set", "port", "4000"])

    assert main(["config", "reset"]) == 0
    assert not config_path.exists()
    assert main(["config", "reset"]) == 0
    assert "already at defaults" in capsys.readouterr().out


# ---- client against the app ----

def test_client_round_trip(server):
    client = ChatClient("http://testserver", http=server)

    assert client.health()
    assert "".join(client.stream(SID, "Hi")) == "Hello there"
    assert client.prompt(SID, "again") == "Hello there"
    assert [(m["role"], m["content"]) for m in client.history(SID)] == [
        ("user", "Hi"),
        ("assistant", "Hello there"),
        ("user", "again"),
        ("assistant", "Hello there"),
    ]
    assert client.status(SID) == "idle"


def test_send_acks_without_waiting(server, capsys):
    assert main(["send", "Hi"]) == 0

    assert capsys.readouterr().out.strip() == f"received ({today()})"


def test_send_wait_prints_saved_reply(server, capsys):
    assert main(["send", "Hi", "--wait"]) == 0

    lines = capsys.readouterr().out.strip().splitlines()
    assert lines == [f"received ({today()})", "Hello there"]
    history = server.get(f"/session/{today()}/history").json()["messages"]
    assert [m["role"] for m in history] == ["user", "assistant"]


def test_send_wait_stops_when_server_forgot_the_message(monkeypatch, capsys):
    def handler(request):
        if request.url.path == "/chat":
            return httpx.Response(200, json={"success": True, "message": "received", "date": SID})
        return httpx.Response(200, json={"status": "idle"})

    monkeypatch.setattr("daychat.cli._client", fake_server(handler))

    assert main(["send", "Hi", "--wait"]) == 1
    assert "no pending message" in capsys.readouterr().err


def test_send_wait_gives_up_after_timeout(monkeypatch, capsys):
    polls = []

    def handler(request):
        if request.url.path == "/chat":
            return httpx.Response(200, json={"success": True, "message": "received", "date": SID})
        polls.append(request.url.path)
        return httpx.Response(200, json={"status": "processing"})

    monkeypatch.setattr("daychat.cli._client", fake_server(handler))

    assert main(["send", "Hi", "--wait", "--timeout", "0"]) == 1
    assert polls == [f"/status/{SID}"]
    assert "Gave up waiting" in capsys.readouterr().err


def test_send_reports_http_errors(monkeypatch, capsys):
    monkeypatch.setattr("daychat.cli._client", fake_server(lambda request: httpx.Response(500)))

    assert main(["send", "Hi"]) == 1
    assert "[Error:" in capsys.readouterr().err


@pytest.mark.parametrize("flags", [[], ["--no-stream"]])
def test_chat_loop(server, monkeypatch, capsys, flags):
    lines = iter(["Hi", "", "exit"])
    monkeypatch.setattr("builtins.input", lambda _prompt="": next(lines))

    assert main(["chat", "--session", SID, *flags]) == 0

    assert "Hello there" in capsys.readouterr().out
    history = server.get(f"/session/{SID}/history").json()["messages"]
    assert [m["content"] for m in history] == ["Hi", "Hello there"]


def test_chat_needs_a_running_server(monkeypatch, capsys):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    monkeypatch.setattr("daychat.cli._client", fake_server(handler))

    assert main(["chat"]) == 1
    assert "Server not reachable" in capsys.readouterr().err


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])
