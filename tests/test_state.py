from __future__ import annotations

import json
import re
from pathlib import Path

from chat_client.conversation import ConversationContext
from chat_client.state import JsonFileStore, MemoryKeyValueStore, generate_resource_id, load_resource_id

RESOURCE_ID_RE = re.compile(r"^user_[0-9a-z]+_[0-9a-z]{7}$")


def test_resource_id_format_and_uniqueness():
    a, b = generate_resource_id(), generate_resource_id()
    assert RESOURCE_ID_RE.match(a)
    assert a != b


def test_resource_id_is_generated_once_and_persisted(tmp_data_dir: Path):
    path = tmp_data_dir / "state.json"
    first = load_resource_id(JsonFileStore(path))
    second = load_resource_id(JsonFileStore(path))
    assert first == second
    assert json.loads(path.read_text(encoding="utf-8")) == {"resource_id": first}


def test_corrupt_state_file_is_moved_aside(tmp_data_dir: Path):
    path = tmp_data_dir / "state.json"
    path.write_text("{not json", encoding="utf-8")
    store = JsonFileStore(path)
    assert store.get("resource_id") is None
    assert (tmp_data_dir / "state.corrupt.json").exists()
    store.set("k", "v")
    assert store.get("k") == "v"


def test_context_start_reads_injected_store():
    store = MemoryKeyValueStore({"resource_id": "user_abc_1234567"})
    ctx = ConversationContext.start(store)
    assert ctx.resource_id == "user_abc_1234567"
    assert ctx.agent_id is None and ctx.thread_id is None
    assert ctx.with_thread("t1").thread_id == "t1"
    assert ctx.thread_id is None
