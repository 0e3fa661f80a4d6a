import asyncio
import json

import pytest

from llm_gateway.config import DEFAULT_SYSTEM_PROMPT
from llm_gateway.gateway import assemble_prompt


def _stored_window(kv, session_id):
    return json.loads(kv.data[f"memory:{session_id}"])


def test_system_prompt_is_prepended_when_missing(client, inference):
    resp = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}], "session_id": "s1"})

    assert resp.status_code == 200
    assert resp.json() == {"reply": "hello there", "session_id": "s1"}

    _, sent, max_tokens = inference.calls[0]
    assert sent[0] == {"role": "system", "content": DEFAULT_SYSTEM_PROMPT}
    assert [m["role"] for m in sent].count("system") == 1
    assert sent[1] == {"role": "user", "content": "hi"}
    assert max_tokens == 1024


def test_existing_system_prompt_is_kept_in_place(client, inference):
    messages = [
        {"role": "user", "content": "first"},
        {"role": "system", "content": "be terse"},
        {"role": "user", "content": "second"},
    ]
    client.post("/api/chat", json={"messages": messages, "session_id": "s1"})

    _, sent, _ = inference.calls[0]
    assert sent == messages


def test_memory_is_appended_after_the_new_messages():
    memory = [{"role": "user", "content": "old"}, {"role": "assistant", "content": "older reply"}]
    prompt = assemble_prompt("sys", [{"role": "user", "content": "new"}], memory)

    assert prompt == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "new"},
        {"role": "user", "content": "old"},
        {"role": "assistant", "content": "older reply"},
    ]


def test_reply_and_turn_are_stored_in_session_memory(client, kv):
    client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}], "session_id": "s1"})

    assert _stored_window(kv, "s1") == [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello there"},
    ]


def test_memory_window_keeps_the_last_ten_messages(client, kv, inference):
    for turn in range(8):
        inference.reply = f"reply {turn}"
        client.post("/api/chat", json={"messages": [{"role": "user", "content": f"turn {turn}"}], "session_id": "s1"})

    window = _stored_window(kv, "s1")
    assert len(window) == 10
    assert window[0] == {"role": "user", "content": "turn 3"}
    assert window[-1] == {"role": "assistant", "content": "reply 7"}

    # the previous window was sent as trailing context on the last call
    _, sent, _ = inference.calls[-1]
    assert sent[1] == {"role": "user", "content": "turn 7"}
    assert sent[-1] == {"role": "assistant", "content": "reply 6"}


def test_anonymous_session_key_is_synthesized(client, kv):
    resp = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]})

    session_id = resp.json()["session_id"]
    assert session_id.startswith("anon:")
    assert f"memory:{session_id}" in kv.data


@pytest.mark.parametrize("body", [{}, {"messages": "hi"}, {"messages": [{"role": "robot", "content": "x"}]}, {"messages": [{"role": "user"}]}])
def test_invalid_messages_fail_before_any_side_effect(client, inference, kv, body):
    resp = client.post("/api/chat", json=body)

    assert resp.status_code == 400
    assert "error" in resp.json()
    assert inference.calls == []
    assert kv.data == {}


def test_invalid_json_is_a_client_error(client):
    resp = client.post("/api/chat", content="not json", headers={"Content-Type": "application/json"})

    assert resp.status_code == 400


def test_inference_failure_returns_generic_500(client, inference, diagnostics, kv):
    inference.error = RuntimeError("gpu on fire at 10.0.0.3")

    resp = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}], "session_id": "s1"})

    assert resp.status_code == 500
    assert "10.0.0.3" not in resp.text
    assert "chat.inference" in diagnostics.sources()
    assert "memory:s1" not in kv.data


def test_log_failure_does_not_fail_the_chat(client, gateway, diagnostics, metrics, monkeypatch):
    def _reject(record):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(gateway.journal, "_insert", _reject)

    resp = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}], "session_id": "s1"})

    assert resp.status_code == 200
    assert resp.json()["reply"] == "hello there"
    assert "journal.chat" in diagnostics.sources()
    metrics.incr.assert_any_call("errors.journal.chat")


def test_memory_store_failure_does_not_fail_the_chat(client, kv, diagnostics, monkeypatch):
    async def _broken_put(key, value):
        raise ConnectionError("kv unavailable")

    monkeypatch.setattr(kv, "put", _broken_put)

    resp = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}], "session_id": "s1"})

    assert resp.status_code == 200
    assert "memory.append" in diagnostics.sources()


def test_chat_is_logged(client):
    client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}], "session_id": "s1"})

    logs = client.get("/api/logs", params={"kind": "chat"}).json()
    assert len(logs) == 1
    assert json.loads(logs[0]["response_summary"]) == {"reply": "hello there", "streamed": False}
    assert json.loads(logs[0]["request_summary"])["session_id"] == "s1"


def test_streamed_reply_is_forwarded_and_remembered_whole(client, kv):
    resp = client.post(
        "/api/chat",
        json={"messages": [{"role": "user", "content": "hi"}], "session_id": "s1", "stream": True},
    )

    assert resp.status_code == 200
    assert resp.text == "hello there"
    assert resp.headers["x-session-id"] == "s1"
    assert _stored_window(kv, "s1")[-1] == {"role": "assistant", "content": "hello there"}


def test_stream_failure_before_first_chunk_is_500(client, inference):
    inference.error = RuntimeError("connection refused")

    resp = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}], "stream": True})

    assert resp.status_code == 500


def test_stream_broken_midway_keeps_partial_reply(client, inference, kv, diagnostics):
    inference.chunks = ["par", "tial", RuntimeError("upstream reset")]

    resp = client.post(
        "/api/chat",
        json={"messages": [{"role": "user", "content": "hi"}], "session_id": "s1", "stream": True},
    )

    assert resp.text == "partial"
    assert _stored_window(kv, "s1")[-1] == {"role": "assistant", "content": "partial"}
    assert "chat.stream" in diagnostics.sources()


@pytest.mark.asyncio
async def test_disconnect_mid_stream_still_updates_memory(gateway, inference):
    messages = [{"role": "user", "content": "hi"}]
    relay = gateway._relay(inference._stream(), "s1", messages, [])

    assert await relay.__anext__() == "hel"
    await relay.aclose()
    await gateway.runner.drain()

    window = await gateway.memory.load("s1")
    assert window == [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hel"}]


@pytest.mark.asyncio
async def test_interleaved_chats_on_one_session_last_append_wins(gateway, inference):
    release = asyncio.Event()

    async def _chat(messages, max_tokens):
        if messages[1]["content"] == "first":
            await release.wait()
            return "reply to first"
        return "reply to second"

    inference.chat = _chat

    first = asyncio.create_task(gateway.chat({"messages": [{"role": "user", "content": "first"}], "session_id": "s1"}))
    for _ in range(5):
        await asyncio.sleep(0)

    await gateway.chat({"messages": [{"role": "user", "content": "second"}], "session_id": "s1"})
    release.set()
    await first

    # no merge: the first call read an empty window and wrote last
    assert await gateway.memory.load("s1") == [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "reply to first"},
    ]


@pytest.mark.parametrize("session_id", [123, {"id": "s1"}, ["s1"], "", "café", "two\nlines"])
@pytest.mark.parametrize("stream", [False, True])
def test_session_id_must_be_a_header_safe_string(client, inference, kv, session_id, stream):
    resp = client.post(
        "/api/chat",
        json={"messages": [{"role": "user", "content": "hi"}], "session_id": session_id, "stream": stream},
    )

    assert resp.status_code == 400
    assert "session_id" in resp.json()["error"]
    assert inference.calls == []
    assert kv.data == {}
