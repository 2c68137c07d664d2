"""Command line front-end.

  daychat serve [--host H] [--port P]
  daychat chat [--session ID] [--no-stream]
  daychat send MESSAGE [--wait [--timeout S]]
  daychat history [--date D | --list | --clear D | --clean-all [--yes]] [--json]
  daychat config [show | list | get KEY | set KEY VALUE | reset]
"""
from __future__ import annotations

import argparse
import json
import sys
import time
from typing import Any, Dict, Iterator, List, Optional

import httpx

from .config import (
    Settings,
    config_file_path,
    configure_logging,
    load_settings,
    read_config_file,
    reset_config_file,
    set_config_value,
)
from .errors import ChatError
from .schemas import today
from .store import HistoryStore

POLL_INTERVAL = 0.5
WAIT_TIMEOUT = 300.0


class ChatClient:
    """Thin httpx wrapper around the local server."""

    def __init__(self, base_url: str, timeout: float = 120.0, http: Optional[httpx.Client] = None) -> None:
        self._http = http or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    def close(self) -> None:
        self._http.close()

    def health(self) -> bool:
        try:
            return self._http.get("/health", timeout=5.0).is_success
        except httpx.RequestError:
            return False

    def send(self, message: str) -> Dict[str, Any]:
        response = self._http.post("/chat", json={"message": message})
        response.raise_for_status()
        return response.json()

    def status(self, date: str) -> str:
        response = self._http.get(f"/status/{date}")
        response.raise_for_status()
        return response.json()["status"]

    def history(self, session_id: str) -> List[Dict[str, Any]]:
        response = self._http.get(f"/session/{session_id}/history")
        response.raise_for_status()
        return response.json()["messages"]

    def stream(self, session_id: str, message: str) -> Iterator[str]:
        with self._http.stream("POST", f"/session/{session_id}/message", json={"message": message}) as response:
            response.raise_for_status()
            for text in response.iter_text():
                yield text

    def prompt(self, session_id: str, message: str) -> str:
        response = self._http.post(f"/session/{session_id}/message/non-stream", json={"message": message})
        response.raise_for_status()
        return response.json()["response"]


def _client(settings: Settings) -> ChatClient:
    return ChatClient(f"http://{settings.host}:{settings.port}")


def cmd_serve(settings: Settings, args: argparse.Namespace) -> int:
    import uvicorn

    from .main import create_app

    host = args.host or settings.host
    port = args.port or settings.port
    uvicorn.run(create_app(settings), host=host, port=port, log_level=settings.log_level.lower())
    return 0


def cmd_chat(settings: Settings, args: argparse.Namespace) -> int:
    client = _client(settings)
    if not client.health():
        print(f"Server not reachable at {settings.host}:{settings.port}. Start it with `daychat serve`.",
              file=sys.stderr)
        return 1

    session_id = args.session or today()
    print(f"Chatting in session {session_id}. Type 'exit' to quit.")
    while True:
        try:
            line = input("you> ").strip()
        except (EOFError, KeyboardInterrupt):
            print()
            break
        if line.lower() in ("exit", "quit"):
            break
        if not line:
            continue
        try:
            if args.no_stream:
                print(client.prompt(session_id, line))
            else:
                for fragment in client.stream(session_id, line):
                    print(fragment, end="", flush=True)
                print()
        except httpx.HTTPError as e:
            print(f"\n[Error: {e}]", file=sys.stderr)
    return 0


def _wait_for_reply(client: ChatClient, date: str, timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while True:
        status = client.status(date)
        if status == "done":
            return True
        if status == "idle":
            # nothing in flight on the server, e.g. it was restarted
            print(f"Server has no pending message for {date}.", file=sys.stderr)
            return False
        if time.monotonic() >= deadline:
            print(f"Gave up waiting after {timeout:g}s. Check `daychat history` later.", file=sys.stderr)
            return False
        time.sleep(POLL_INTERVAL)


def cmd_send(settings: Settings, args: argparse.Namespace) -> int:
    client = _client(settings)
    try:
        ack = client.send(args.message)
        print(f"{ack['message']} ({ack['date']})")
        if not args.wait:
            return 0
        if not _wait_for_reply(client, ack["date"], args.timeout):
            return 1
        messages = client.history(ack["date"])
    except httpx.HTTPError as e:
        print(f"[Error: {e}]", file=sys.stderr)
        return 1

    last = messages[-1] if messages else None
    if last is None or last["role"] != "assistant":
        print("No reply was saved.", file=sys.stderr)
        return 1
    print(last["content"])
    return 0


def _print_session(store: HistoryStore, date: str, as_json: bool) -> None:
    session = store.load(date)
    if as_json:
        print(json.dumps(session.to_record(), indent=2, ensure_ascii=False))
        return
    if not session.messages:
        print(f"No chat history found for {date}")
        return
    print(f"Chat history for {date} ({len(session.messages)} messages):\n")
    for msg in session.messages:
        who = "You" if msg.role == "user" else msg.role.capitalize()
        print(f"[{msg.timestamp}] {who}:")
        print(f"  {msg.content}\n")


def cmd_history(settings: Settings, args: argparse.Namespace) -> int:
    store = HistoryStore(settings.history_dir, strict=settings.strict_reads)

    if args.list:
        ids = store.list_session_ids()
        if args.json:
            print(json.dumps(ids))
        elif not ids:
            print("No chat history found.")
        else:
            print("\n".join(ids))
        return 0

    if args.clear:
        store.clear(args.clear)
        print(f"Cleared chat history for {args.clear}")
        return 0

    if args.clean_all:
        ids = store.list_session_ids()
        if not ids:
            print("No chat history found.")
            return 0
        print(f"This will permanently clear {len(ids)} session(s): {', '.join(ids)}")
        if not args.yes and input("Type 'YES' to confirm: ") != "YES":
            print("Cancelled. No history was cleared.")
            return 0
        for session_id in ids:
            store.clear(session_id)
        print(f"Cleared {len(ids)} session(s)")
        return 0

    _print_session(store, args.date or today(), args.json)
    return 0


def cmd_config(settings: Settings, args: argparse.Namespace) -> int:
    path = config_file_path(args.config)

    if args.action == "show":
        print(json.dumps(settings.public_dict(), indent=2))
        return 0

    if args.action == "list":
        print(json.dumps(read_config_file(path), indent=2, ensure_ascii=False))
        return 0

    if args.action == "reset":
        if reset_config_file(path):
            print(f"Configuration reset to defaults ({path} removed)")
        else:
            print("Configuration already at defaults")
        return 0

    if not args.key:
        print(f"Please specify a key to {args.action}", file=sys.stderr)
        return 1

    if args.action == "get":
        effective = settings.public_dict()
        if args.key not in effective:
            print(f'Key "{args.key}" not found', file=sys.stderr)
            return 1
        print(json.dumps(effective[args.key]))
        return 0

    if args.value is None:
        print("Please specify a key and value to set", file=sys.stderr)
        return 1
    try:
        value = set_config_value(path, args.key, args.value)
    except ValueError as e:
        print(f"[Error: {e}]", file=sys.stderr)
        return 1
    print(f"Set {args.key} to {json.dumps(value)}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="daychat", description="Local chat assistant with per-day history")
    p.add_argument("--config", help="Path to a JSON config file")
    sub = p.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP server")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    serve.set_defaults(func=cmd_serve)

    chat = sub.add_parser("chat", help="Interactive chat against a running server")
    chat.add_argument("--session", help="Session id (default: today's date)")
    chat.add_argument("--no-stream", action="store_true", help="Wait for the full reply")
    chat.set_defaults(func=cmd_chat)

    send = sub.add_parser("send", help="Send one message in the background")
    send.add_argument("message")
    send.add_argument("--wait", action="store_true", help="Poll until the reply is saved and print it")
    send.add_argument("--timeout", type=float, default=WAIT_TIMEOUT,
                      help="Seconds to wait with --wait (default: %(default)s)")
    send.set_defaults(func=cmd_send)

    history = sub.add_parser("history", help="View and manage chat history")
    g = history.add_mutually_exclusive_group()
    g.add_argument("-d", "--date", help="Session to show (default: today)")
    g.add_argument("-l", "--list", action="store_true", help="List all sessions")
    g.add_argument("-c", "--clear", metavar="DATE", help="Clear one session")
    g.add_argument("-a", "--clean-all", action="store_true", help="Clear every session")
    history.add_argument("-y", "--yes", action="store_true", help="Don't ask before --clean-all")
    history.add_argument("-j", "--json", action="store_true", help="Output as JSON")
    history.set_defaults(func=cmd_history)

    config = sub.add_parser("config", help="Show or change the configuration file")
    config.add_argument("action", nargs="?", default="show", choices=("show", "list", "get", "set", "reset"),
                        help="show: effective settings, list: config file contents")
    config.add_argument("key", nargs="?")
    config.add_argument("value", nargs="?")
    config.set_defaults(func=cmd_config)
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(config_path=args.config)
    configure_logging(settings.log_level)
    try:
        return args.func(settings, args)
    except ChatError as e:
        print(f"[Error: {e.detail}]", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
