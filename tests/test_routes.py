"""Tests for the chatmark HTTP API using Flask's test client."""

from __future__ import annotations

import json

from chatmark.services import llm


def _fake_complete(reply="", calls=None, error=None):
    async def complete(messages, settings):
        if calls is not None:
            calls.append(messages)
        if error:
            raise error
        return reply

    return complete


def _fake_stream(deltas):
    async def stream(messages, settings, cancel=None):
        for delta in deltas:
            yield delta

    return stream


def _events(response):
    return [json.loads(line) for line in response.get_data(as_text=True).splitlines() if line]


def test_render_endpoint(client):
    response = client.post("/render", json={"text": "**hi** <there>"})
    assert response.status_code == 200
    assert response.get_json() == {"html": "<p><strong>hi</strong> &lt;there&gt;</p>"}


def test_render_endpoint_accepts_form_data(client):
    response = client.post("/render", data={"text": "# T"})
    assert response.get_json()["html"] == "<h2>T</h2>"


def test_render_rejects_non_string(client):
    assert client.post("/render", json={"text": 5}).status_code == 400


def test_strip_endpoint(client):
    response = client.post("/strip", json={"text": "## **Title**\n- item"})
    assert response.get_json() == {"text": "Title\nitem"}


def test_context_upload_and_chat_round(client, monkeypatch):
    calls: list = []
    monkeypatch.setattr(llm, "complete", _fake_complete("The **answer**.", calls))

    response = client.put("/documents/doc1/context", json={"text": "Body text", "title": "Paper"})
    assert response.get_json()["truncated"] is False

    response = client.post("/documents/doc1/chat", json={"message": "What?"})
    assert response.status_code == 200
    message = response.get_json()["message"]
    assert message["html"] == "<p>The <strong>answer</strong>.</p>"

    sent = calls[0]
    assert sent[1]["content"] == "Document Context:\nTitle: Paper\n\nBody text"
    assert sent[-1] == {"role": "user", "content": "What?"}

    session = client.get("/documents/doc1/chat").get_json()
    assert session["title"] == "Paper"
    assert [m["role"] for m in session["messages"]] == ["user", "assistant"]


def test_dropped_context_is_not_sent(client, monkeypatch):
    calls: list = []
    monkeypatch.setattr(llm, "complete", _fake_complete("ok", calls))
    client.put("/documents/doc1/context", json={"text": "Body"})
    assert client.delete("/documents/doc1/context").status_code == 200

    client.post("/documents/doc1/chat", json={"message": "q"})
    assert [m["role"] for m in calls[0]] == ["system", "user"]


def test_second_turn_carries_history(client, monkeypatch):
    calls: list = []
    monkeypatch.setattr(llm, "complete", _fake_complete("ok", calls))
    client.post("/documents/doc1/chat", json={"message": "first"})
    client.post("/documents/doc1/chat", json={"message": "second"})

    second = calls[1]
    assert [m["content"] for m in second[1:]] == ["first", "ok", "second"]


def test_chat_failure_is_recorded(client, monkeypatch):
    monkeypatch.setattr(llm, "complete", _fake_complete(error=llm.LLMRequestError("502 upstream")))
    response = client.post("/documents/doc1/chat", json={"message": "hi"})
    assert response.status_code == 502
    assert response.get_json()["message"]["content"] == "Error: 502 upstream"


def test_chat_requires_message(client):
    assert client.post("/documents/doc1/chat", json={"message": "  "}).status_code == 400


def test_invalid_document_id(client):
    assert client.get("/documents/a%20b/chat").status_code == 400


def test_unknown_chat_is_404(client):
    assert client.get("/documents/none/chat").status_code == 404
    assert client.delete("/documents/none/chat").status_code == 404


def test_stream_emits_deltas_and_saves_reply(client, monkeypatch):
    monkeypatch.setattr(llm, "stream", _fake_stream(["Hel", "lo **x**"]))
    response = client.get("/documents/doc1/chat/stream?message=hi")
    events = _events(response)

    assert [e["type"] for e in events] == ["text_delta", "text_delta", "text_done"]
    done = events[-1]
    assert done["text"] == "Hello **x**"
    assert done["html"] == "<p>Hello <strong>x</strong></p>"
    assert done["cancelled"] is False

    session = client.get("/documents/doc1/chat").get_json()
    assert session["messages"][-1]["content"] == "Hello **x**"


def test_stream_reports_errors(client, monkeypatch):
    async def failing(messages, settings, cancel=None):
        raise llm.LLMConfigError("API base URL or API key is missing in preferences")
        yield ""  # pragma: no cover

    monkeypatch.setattr(llm, "stream", failing)
    events = _events(client.get("/documents/doc1/chat/stream?message=hi"))
    assert events[0]["type"] == "error"
    assert events[-1]["text"].startswith("Error: API base URL")


def test_cancel_without_stream(client):
    assert client.post("/documents/doc1/chat/cancel").get_json() == {"cancelled": False}


def test_list_documents_and_clear(client, monkeypatch):
    monkeypatch.setattr(llm, "complete", _fake_complete("*reply*"))
    client.post("/documents/doc1/chat", json={"message": "hi"})

    documents = client.get("/documents").get_json()["documents"]
    assert documents[0]["document_id"] == "doc1"
    assert documents[0]["message_count"] == 2
    assert documents[0]["preview"] == "reply"

    assert client.delete("/documents/doc1/chat").status_code == 200
    assert client.get("/documents").get_json()["documents"] == []


def test_preferences_masking_and_update(client, app):
    preferences = client.get("/preferences").get_json()
    assert preferences["OPENAI_API_KEY"] == "sk-...6789"

    response = client.put("/preferences", json={"CHATMARK_MODEL": "gpt-4o"})
    assert response.get_json()["CHATMARK_MODEL"] == "gpt-4o"
    assert response.get_json()["OPENAI_API_KEY"] == "sk-...6789"

    settings_file = app.config["DIRS"]["config"] / "settings.json"
    assert json.loads(settings_file.read_text()) == {"CHATMARK_MODEL": "gpt-4o"}


def test_preferences_reject_unknown_keys(client):
    assert client.put("/preferences", json={"NOPE": "x"}).status_code == 400


def test_preferences_view_renders_table(client):
    empty = client.get("/preferences/view").get_data(as_text=True)
    assert empty == "<p>No configuration values detected.</p>"

    client.put("/preferences", json={"CHATMARK_MODEL": "gpt-4o"})
    html = client.get("/preferences/view").get_data(as_text=True)
    assert "<table>" in html
    assert "<td><code>CHATMARK_MODEL</code></td><td><code>gpt-4o</code></td><td>Config file</td>" in html


def test_preferences_reject_non_numeric_values(client, app):
    response = client.put("/preferences", json={"CHATMARK_TEMPERATURE": "warm"})
    assert response.status_code == 400
    assert client.put("/preferences", json={"CHATMARK_MAX_TOKENS": "1.5k"}).status_code == 400
    assert not (app.config["DIRS"]["config"] / "settings.json").exists()

    assert client.put("/preferences", json={"CHATMARK_TEMPERATURE": "0.9"}).status_code == 200
    assert client.put("/preferences", json={"CHATMARK_MAX_TOKENS": ""}).status_code == 200


def test_chat_survives_malformed_stored_numbers(client, app, monkeypatch):
    seen: list = []

    async def complete(messages, settings):
        seen.append(settings)
        return "ok"

    monkeypatch.setattr(llm, "complete", complete)
    app.config["PREFERENCES"]["CHATMARK_TEMPERATURE"] = "warm"
    app.config["PREFERENCES"]["CHATMARK_MAX_TOKENS"] = "x"

    response = client.post("/documents/doc1/chat", json={"message": "hi"})
    assert response.status_code == 200
    assert seen[0].temperature == llm.DEFAULT_TEMPERATURE
    assert seen[0].max_tokens == llm.DEFAULT_MAX_TOKENS
