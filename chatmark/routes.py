import asyncio
import json
import logging

from flask import Blueprint, Response, abort, current_app, jsonify, request

from chatmark.app import NUMERIC_PREFERENCES, PREFERENCE_KEYS, env_snapshot, resolve_preferences
from chatmark.config import load_config, save_config
from chatmark.services import llm
from chatmark.services.chat_store import ChatStore, validate_document_id
from chatmark.services.context import ContextCache
from chatmark.utils.config_view import SECRET_KEYS, build_config_html, mask_secret
from chatmark.utils.markdown import render_markdown, strip_markdown

bp = Blueprint("main", __name__)
logger = logging.getLogger(__name__)


@bp.post("/render")
def render():
    return jsonify({"html": render_markdown(_text_field("text"))})


@bp.post("/strip")
def strip():
    return jsonify({"text": strip_markdown(_text_field("text"))})


@bp.get("/documents")
def list_documents():
    summaries = []
    for session in _store().list_sessions():
        messages = session.get("messages", [])
        summaries.append(
            {
                "document_id": session["document_id"],
                "title": session.get("title", ""),
                "updated_at": session.get("updated_at", ""),
                "message_count": len(messages),
                "preview": messages[-1].get("preview", "") if messages else "",
            }
        )
    return jsonify({"documents": summaries})


@bp.put("/documents/<document_id>/context")
def put_context(document_id: str):
    _check_document_id(document_id)
    data = _json_body()
    text = data.get("text")
    if not isinstance(text, str):
        abort(400, "Context text required")
    title = data.get("title") or ""
    entry = _contexts().put(document_id, text, title=str(title))
    return jsonify(entry.to_dict())


@bp.delete("/documents/<document_id>/context")
def drop_context(document_id: str):
    _check_document_id(document_id)
    _contexts().drop(document_id)
    return jsonify({"status": "ok"})


@bp.get("/documents/<document_id>/chat")
def get_chat(document_id: str):
    _check_document_id(document_id)
    session = _store().load(document_id)
    if not session:
        abort(404)
    return jsonify(session)


@bp.delete("/documents/<document_id>/chat")
def clear_chat(document_id: str):
    _check_document_id(document_id)
    _registry().cancel(document_id)
    try:
        _store().clear(document_id)
    except FileNotFoundError:
        abort(404)
    return jsonify({"status": "ok"})


@bp.post("/documents/<document_id>/chat")
def post_message(document_id: str):
    _check_document_id(document_id)
    question = _text_field("message").strip()
    if not question:
        abort(400, "Message content required")

    settings = _settings()
    messages = _prepare_turn(document_id, question, settings)

    try:
        answer = asyncio.run(llm.complete(messages, settings))
    except llm.LLMError as exc:
        logger.error("Chat request for %s failed: %s", document_id, exc)
        message = _store().append_assistant_message(document_id, f"Error: {exc}")
        return jsonify({"status": "error", "message": message}), 502

    message = _store().append_assistant_message(document_id, answer, model=settings.model)
    return jsonify({"status": "ok", "message": message})


@bp.get("/documents/<document_id>/chat/stream")
def stream_message(document_id: str):
    _check_document_id(document_id)
    question = (request.args.get("message") or "").strip()
    if not question:
        abort(400, "Message content required")

    settings = _settings()
    messages = _prepare_turn(document_id, question, settings)
    store = _store()
    registry = _registry()
    token = registry.start(document_id)

    def generate():
        loop = asyncio.new_event_loop()
        text_buffer = ""
        failed = False
        async_gen = llm.stream(messages, settings, cancel=token)
        try:
            while True:
                try:
                    delta = loop.run_until_complete(async_gen.__anext__())
                except StopAsyncIteration:
                    break
                except llm.LLMError as exc:
                    logger.error("Stream for %s failed: %s", document_id, exc)
                    failed = True
                    text_buffer = f"Error: {exc}"
                    yield json.dumps({"type": "error", "message": str(exc)}) + "\n"
                    break
                text_buffer += delta
                yield json.dumps({"type": "text_delta", "text": delta}) + "\n"
        finally:
            loop.run_until_complete(async_gen.aclose())
            loop.close()
            registry.finish(document_id, token)

        message = store.append_assistant_message(
            document_id,
            text_buffer,
            model=None if failed else settings.model,
        )
        yield json.dumps(
            {
                "type": "text_done",
                "text": text_buffer,
                "html": message["html"],
                "cancelled": token.cancelled,
            }
        ) + "\n"

    headers = {
        "Cache-Control": "no-cache",
        "X-Accel-Buffering": "no",
    }
    return Response(generate(), mimetype="text/plain", headers=headers)


@bp.post("/documents/<document_id>/chat/cancel")
def cancel_stream(document_id: str):
    _check_document_id(document_id)
    return jsonify({"cancelled": _registry().cancel(document_id)})


@bp.get("/preferences")
def get_preferences():
    preferences = dict(current_app.config["PREFERENCES"])
    for key in SECRET_KEYS & preferences.keys():
        preferences[key] = mask_secret(preferences[key])
    return jsonify(preferences)


@bp.put("/preferences")
def put_preferences():
    data = _json_body()
    unknown = sorted(set(data) - PREFERENCE_KEYS)
    if unknown:
        abort(400, f"Unknown preference keys: {', '.join(unknown)}")
    values = {key: "" if value is None else str(value) for key, value in data.items()}
    for key, cast in NUMERIC_PREFERENCES.items():
        if values.get(key, "").strip():
            try:
                cast(values[key])
            except ValueError:
                abort(400, f"Preference {key} must be a number")

    config_dir = current_app.config["DIRS"]["config"]
    save_config(config_dir, values)
    raw_config = load_config(config_dir)
    current_app.config["RAW_CONFIG"] = raw_config
    current_app.config["PREFERENCES"] = resolve_preferences(
        {**raw_config, **current_app.config.get("CONFIG_OVERRIDES", {})}
    )
    logger.info("Preferences updated: %s", ", ".join(sorted(values)))
    return get_preferences()


@bp.get("/preferences/view")
def view_preferences():
    html = build_config_html(
        current_app.config.get("RAW_CONFIG") or {},
        env_snapshot(),
    )
    return Response(html, mimetype="text/html")


def _prepare_turn(document_id: str, question: str, settings: llm.LLMSettings) -> list[dict]:
    """Record the user turn and build the model payload around it."""
    store = _store()
    context = _contexts().get(document_id)
    store.get_or_create(
        document_id,
        title=context.title if context else "",
        model=settings.model,
    )
    history = store.history(document_id)
    store.append_user_message(document_id, question)
    return llm.build_messages(
        question,
        context=_contexts().context_text(document_id),
        history=history,
        system_prompt=settings.system_prompt,
    )


def _settings() -> llm.LLMSettings:
    return llm.LLMSettings.from_mapping(current_app.config["PREFERENCES"])


def _store() -> ChatStore:
    return current_app.extensions["chat_store"]


def _contexts() -> ContextCache:
    return current_app.extensions["context_cache"]


def _registry() -> llm.CancelRegistry:
    return current_app.extensions["cancel_registry"]


def _check_document_id(document_id: str) -> None:
    try:
        validate_document_id(document_id)
    except ValueError:
        abort(400, "Invalid document id")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        abort(400, "JSON object body required")
    return data


def _text_field(name: str) -> str:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = request.form
    value = data.get(name)
    if value is None:
        return ""
    if not isinstance(value, str):
        abort(400, f"Field '{name}' must be a string")
    return value
