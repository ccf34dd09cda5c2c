from __future__ import annotations

from fastapi.testclient import TestClient

from chat_client.bridge import create_app


def _client(manager, config_path) -> TestClient:
    return TestClient(create_app(str(config_path), manager=manager))


def test_health_and_agents(make_manager, config_path, clean_env):
    client = _client(make_manager(), config_path)

    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["resource_id"] == "user_test"
    assert body["state"] == "no_thread"

    r = client.get("/agents")
    assert r.json() == [{"id": "weather", "name": "Weather", "description": ""}]


def test_select_agent_then_chat_roundtrip(make_manager, fake_agents, fake_memory, config_path, clean_env):
    fake_agents.replies = [['0:"Hello"\n0:" there"\n']]
    client = _client(make_manager(), config_path)

    r = client.post("/agents/select", json={"agentId": "weather"})
    assert r.status_code == 200
    thread_id = r.json()["threadId"]
    assert thread_id == "t1"
    assert r.json()["messages"][0]["role"] == "system"

    r = client.post("/chat", json={"message": "Hi"})
    assert r.status_code == 200
    body = r.json()
    assert body["reply"]["content"] == "Hello there"
    assert body["threadId"] == thread_id
    assert body["error"] is None

    r = client.get("/messages")
    assert [m["role"] for m in r.json()["messages"]] == ["system", "user", "assistant"]

    r = client.get("/threads")
    assert r.json()[0]["title"] == "Hello ther..."


def test_unknown_agent_is_404(make_manager, config_path, clean_env):
    client = _client(make_manager(), config_path)
    r = client.post("/agents/select", json={"agentId": "nope"})
    assert r.status_code == 404


def test_chat_validation_and_missing_agent(make_manager, fake_agents, config_path, clean_env):
    client = _client(make_manager(), config_path)
    assert client.post("/chat", json={"message": ""}).status_code == 422
    assert client.post("/chat", json={"message": "   "}).status_code == 400

    fake_agents.agents = []
    r = client.post("/chat", json={"message": "hi"})
    assert r.status_code == 400


def test_busy_conversation_is_409(make_manager, config_path, clean_env):
    manager = make_manager()
    client = _client(manager, config_path)
    manager._turn_lock.acquire()  # a turn is in flight
    try:
        assert client.post("/chat", json={"message": "again"}).status_code == 409
        assert client.post("/threads").status_code == 409
        assert client.post("/agents/select", json={"agentId": "weather"}).status_code == 409
    finally:
        manager._turn_lock.release()


def test_retry_requires_a_failed_turn(make_manager, fake_agents, config_path, clean_env):
    fake_agents.fail_with = "reset"
    fake_agents.generate_error = "down"
    client = _client(make_manager(), config_path)
    client.post("/agents/select", json={"agentId": "weather"})

    r = client.post("/chat", json={"message": "hi"})
    assert r.json()["reply"] is None
    assert r.json()["error"] == "reset"

    fake_agents.fail_with = None
    fake_agents.replies = [['0:"fine"\n']]
    r = client.post("/chat/retry")
    assert r.status_code == 200
    assert r.json()["reply"]["content"] == "fine"
    assert client.post("/chat/retry").status_code == 400


def test_threads_select_and_delete(make_manager, fake_memory, config_path, clean_env):
    fake_memory.add("old")
    fake_memory.histories["t1"] = {"messages": [{"role": "user", "content": "earlier"}]}
    client = _client(make_manager(), config_path)
    client.post("/agents/select", json={"agentId": "weather"})

    r = client.post("/threads/t1/select")
    assert r.status_code == 200
    assert r.json()["messages"] == [{"role": "user", "content": "earlier"}]
    assert client.post("/threads/zzz/select").status_code == 404

    r = client.delete("/threads/t1")
    assert r.status_code == 200
    assert r.json() == {"deleted": "t1", "threadId": None}

    fake_memory.delete_error = "boom"
    assert client.delete("/threads/t2").status_code == 502


def test_new_thread_endpoint(make_manager, config_path, clean_env):
    client = _client(make_manager(), config_path)
    client.post("/agents/select", json={"agentId": "weather"})
    r = client.post("/threads")
    assert r.status_code == 200
    assert r.json()["threadId"] == "t2"


def test_artifact_endpoints(make_manager, fake_agents, config_path, clean_env):
    fake_agents.replies = [['0:"```html\\n<div>x</div>\\n```"\n']]
    client = _client(make_manager(), config_path)
    client.post("/agents/select", json={"agentId": "weather"})
    assert client.get("/artifact").json() == {"artifact": None}

    client.post("/chat", json={"message": "page"})
    art = client.get("/artifact").json()["artifact"]
    assert art["type"] == "html"
    assert art["content"] == "<div>x</div>"
    assert art["title"] == "HTML プレビュー"

    assert client.delete("/artifact").json() == {"artifact": None}
    assert client.post("/messages/2/preview").json()["artifact"]["type"] == "html"
    assert client.post("/messages/0/preview").status_code == 404
    assert client.post("/chat/cancel").json() == {"cancelled": False}
