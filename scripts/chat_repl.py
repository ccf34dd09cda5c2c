"""Terminal chat loop against an agent server.

Commands: /agents, /new, /threads, /open N, /delete N, /retry, /artifact,
/preview N, /quit. Anything else is sent as a message.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import List, Optional

SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from chat_client.config import load_config  # noqa: E402
from chat_client.conversation import ConversationManager  # noqa: E402
from chat_client.errors import ChatClientError  # noqa: E402
from chat_client.models import Artifact, ChatMessage  # noqa: E402


class LivePrinter:
    """Prints only the newly streamed tail of the last assistant message."""

    def __init__(self) -> None:
        self.shown = 0

    def reset(self) -> None:
        self.shown = 0

    def __call__(self, messages: List[ChatMessage]) -> None:
        if not messages or messages[-1].role != "assistant":
            return
        text = messages[-1].content
        if len(text) > self.shown:
            sys.stdout.write(text[self.shown:])
            sys.stdout.flush()
            self.shown = len(text)


def _print_artifact(artifact: Optional[Artifact]) -> None:
    if artifact is None:
        return
    print(f"\n--- {artifact.title} ({artifact.type}) ---")
    print(artifact.content)
    print("---")


def _print_history(manager: ConversationManager) -> None:
    for m in manager.messages:
        print(f"[{m.role}] {m.content}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Chat with an agent from the terminal.")
    parser.add_argument("--config", type=str, default=None, help="Path to a YAML config")
    parser.add_argument("--agent", type=str, default=None, help="Agent id (default: first agent)")
    args = parser.parse_args()

    cfg = load_config(args.config)
    logging.basicConfig(level=str(cfg.get("logging", {}).get("level", "WARNING")).upper())

    manager = ConversationManager.from_config(cfg)
    agents = manager.load_agents()
    if not agents:
        print("No agents available.")
        return
    agent = next((a for a in agents if a.id == args.agent), agents[0])
    manager.select_agent(agent)
    _print_history(manager)

    printer = LivePrinter()
    manager.subscribe_messages(printer)
    manager.subscribe_artifact(_print_artifact)

    while True:
        try:
            line = input("\n> ").strip()
        except (EOFError, KeyboardInterrupt):
            print()
            break
        if not line:
            continue
        cmd, _, arg = line.partition(" ")
        try:
            if cmd == "/quit":
                break
            elif cmd == "/agents":
                for a in manager.load_agents():
                    print(f"{a.id}\t{a.name}")
            elif cmd == "/new":
                manager.start_new_chat()
                _print_history(manager)
            elif cmd == "/threads":
                for i, t in enumerate(manager.load_threads()):
                    mark = "*" if t.id == manager.current_thread_id else " "
                    print(f"{mark}{i}\t{t.title}\t{t.id}")
            elif cmd in ("/open", "/delete"):
                thread = manager.threads[int(arg)]
                if cmd == "/open":
                    loaded = manager.select_thread(thread.id)
                    if loaded and loaded.warning:
                        print(loaded.warning)
                    _print_history(manager)
                else:
                    manager.delete_thread(thread.id)
            elif cmd == "/retry":
                printer.reset()
                manager.retry()
            elif cmd == "/artifact":
                _print_artifact(manager.artifact)
            elif cmd == "/preview":
                _print_artifact(manager.preview_artifact(int(arg)))
            else:
                printer.reset()
                manager.send_message(line)
                if manager.stream_error:
                    print(f"\n{manager.messages[-1].content}")
        except (ValueError, IndexError):
            print("Usage: /open N, /delete N, /preview N with N from /threads or the history.")
        except ChatClientError as e:
            print(f"Error: {e}")

    manager.agents_api.http.close()  # shared by both clients


if __name__ == "__main__":
    main()
