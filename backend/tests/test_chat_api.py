import asyncio
import importlib.util
import sys
import threading
from pathlib import Path

import pytest

from errors import (
    ChatNotFound,
    EmptyMessage,
    InvalidChatName,
    MalformedRequest,
    MissingParticipants,
    ProfileMissing,
)
from profiles import Identity
from realtime import MemoryStore, Query, Upsert

MODULE_PATH = Path(__file__).resolve().parents[1] / "main.py"


def _load_main_module(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("JWT_SECRET", "test-secret-123456")
    for name in ("CLOUDINARY_CLOUD_NAME", "CLOUDINARY_API_KEY", "CLOUDINARY_API_SECRET"):
        monkeypatch.delenv(name, raising=False)

    spec = importlib.util.spec_from_file_location("backend_main_chats", MODULE_PATH)
    module = importlib.util.module_from_spec(spec)
    assert spec and spec.loader
    monkeypatch.setitem(sys.modules, spec.name, module)
    spec.loader.exec_module(module)
    module.STORE = MemoryStore(unique=module.UNIQUE_FIELDS)
    return module


def _register(module, user_id, name, username):
    identity = Identity(id=user_id)
    asyncio.run(module.create_profile(module.ProfileCreateIn(display_name=name, username=username), identity=identity))
    return identity


def _create_chat(module, identity, name="Weekend plans", participant_ids=("u2",), initial_message=None):
    data = module.ChatCreateIn(name=name, participant_ids=list(participant_ids), initial_message=initial_message)
    return asyncio.run(module.create_chat(data, identity=identity))["chat_id"]


def _send(module, identity, chat_id, text=None, attachments=()):
    data = module.MessageCreateIn(text=text, attachments=list(attachments))
    return asyncio.run(module.send_message(chat_id, data, identity=identity))


# =========================
# Profile guard
# =========================
def test_require_profile_allows_registered_identity(monkeypatch):
    module = _load_main_module(monkeypatch)
    identity = _register(module, "u1", "Jane", "jane")

    assert module.require_profile(identity).username == "jane"


def test_require_profile_denies_unregistered_identity(monkeypatch):
    module = _load_main_module(monkeypatch)

    with pytest.raises(ProfileMissing) as err:
        module.require_profile(Identity(id="ghost"))

    response = asyncio.run(module.chat_error_handler(None, err.value))
    assert response.status_code == 404


def test_chat_endpoints_use_profile_guard(monkeypatch):
    module = _load_main_module(monkeypatch)
    called = {"value": False}

    def _require_profile(identity):
        called["value"] = True
        raise ProfileMissing()

    module.require_profile = _require_profile

    with pytest.raises(ProfileMissing):
        _create_chat(module, Identity(id="u1"))

    assert called["value"] is True


# =========================
# Chats and messages
# =========================
def test_create_chat_and_read_workspace(monkeypatch):
    module = _load_main_module(monkeypatch)
    jane = _register(module, "u1", "Jane", "jane")
    bob = _register(module, "u2", "Bob", "bob")

    chat_id = _create_chat(module, jane, initial_message="hi")
    payload = asyncio.run(module.workspace_view(selected_chat_id=None, identity=bob))["view"]

    assert payload["active_chat_id"] == chat_id
    assert payload["active_chat"]["name"] == "Weekend plans"
    assert payload["current_user"]["username"] == "bob"
    assert [p["username"] for p in payload["people"]] == ["bob", "jane"]
    assert [m["content"] for m in payload["messages"]] == ["hi"]


def test_create_chat_without_participants_is_400(monkeypatch):
    module = _load_main_module(monkeypatch)
    jane = _register(module, "u1", "Jane", "jane")

    with pytest.raises(MissingParticipants) as err:
        _create_chat(module, jane, participant_ids=())

    response = asyncio.run(module.chat_error_handler(None, err.value))
    assert response.status_code == 400
    assert module.STORE.query_once(Query.on("chats")) == ()


def test_send_message_to_visible_chat(monkeypatch):
    module = _load_main_module(monkeypatch)
    jane = _register(module, "u1", "Jane", "jane")
    bob = _register(module, "u2", "Bob", "bob")
    chat_id = _create_chat(module, jane)

    response = _send(module, bob, chat_id, "count me in")

    assert response["ok"] is True
    assert response["message"]["sender_name"] == "Bob"
    chat = module.STORE.query_once(Query.on("chats", id=chat_id))[0]
    assert chat["last_message_at"] == response["message"]["created_at"]


def test_send_message_to_older_chat_is_not_redirected(monkeypatch):
    module = _load_main_module(monkeypatch)
    jane = _register(module, "u1", "Jane", "jane")
    module.STORE.transact(
        [
            Upsert("chats", "old", {"name": "Old", "participants": ["u1"], "last_message_at": 1}),
            Upsert("chats", "new", {"name": "New", "participants": ["u1"], "last_message_at": 2}),
        ]
    )

    message = _send(module, jane, "old", "still here")["message"]

    assert message["chat_id"] == "old"


def test_send_message_to_foreign_chat_is_404(monkeypatch):
    module = _load_main_module(monkeypatch)
    jane = _register(module, "u1", "Jane", "jane")
    _register(module, "u3", "Eve", "eve")
    _create_chat(module, jane, name="Mine")
    module.STORE.transact([Upsert("chats", "secret", {"name": "Secret", "participants": ["u3"]})])

    with pytest.raises(ChatNotFound):
        _send(module, jane, "secret", "let me in")

    assert module.STORE.query_once(Query.on("messages", chat_id="secret")) == ()


def test_send_empty_message_is_400(monkeypatch):
    module = _load_main_module(monkeypatch)
    jane = _register(module, "u1", "Jane", "jane")
    chat_id = _create_chat(module, jane)

    with pytest.raises(EmptyMessage):
        _send(module, jane, chat_id, "   ")


# =========================
# Live workspace intents
# =========================
def test_workspace_intents(monkeypatch):
    module = _load_main_module(monkeypatch)
    jane = _register(module, "u1", "Jane", "jane")
    _register(module, "u2", "Bob", "bob")
    views = []
    session = module.WorkspaceSession(module.STORE, module.require_profile(jane), on_view=views.append).open()

    created = module.handle_workspace_intent(
        session, "create_chat", {"name": "Plans", "participant_ids": ["u2"], "initial_message": "hi"}
    )
    sent = module.handle_workspace_intent(
        session,
        "send_message",
        {"text": "", "attachments": [{"id": "inline-x", "url": "data:image/png;base64,AA=="}]},
    )
    selected = module.handle_workspace_intent(session, "select_chat", {"chat_id": "missing"})

    assert selected == created == {"chat_id": created["chat_id"]}
    assert views[-1].messages[-1].id == sent["message_id"]
    assert views[-1].messages[-1].attachments[0].id == "inline-x"
    assert module.handle_workspace_intent(session, "unknown", {}) is None
    session.close()


@pytest.mark.parametrize(
    "intent, data",
    [
        ("send_message", {"text": 5}),
        ("send_message", {"text": "hi", "attachments": "inline-x"}),
        ("select_chat", {"chat_id": 7}),
        ("create_chat", {"name": "Plans", "participant_ids": "u2"}),
        ("create_chat", [1]),
    ],
)
def test_workspace_intent_with_wrong_types_is_rejected(monkeypatch, intent, data):
    module = _load_main_module(monkeypatch)
    jane = _register(module, "u1", "Jane", "jane")
    _register(module, "u2", "Bob", "bob")
    session = module.WorkspaceSession(module.STORE, module.require_profile(jane)).open()
    module.handle_workspace_intent(session, "create_chat", {"name": "Existing", "participant_ids": ["u2"]})
    chats_before = module.STORE.query_once(Query.on("chats"))

    with pytest.raises(MalformedRequest) as err:
        module.handle_workspace_intent(session, intent, data)

    frame = module.error_frame(err.value, "r1")
    assert frame == {"type": "error", "request_id": "r1", "error": err.value.message, "code": "malformed_request"}
    assert module.STORE.query_once(Query.on("chats")) == chats_before
    assert module.STORE.query_once(Query.on("messages")) == ()
    session.close()


def test_create_chat_intent_without_name_is_invalid_chat_name(monkeypatch):
    module = _load_main_module(monkeypatch)
    jane = _register(module, "u1", "Jane", "jane")
    session = module.WorkspaceSession(module.STORE, module.require_profile(jane)).open()

    with pytest.raises(InvalidChatName):
        module.handle_workspace_intent(session, "create_chat", {"participant_ids": ["u2"]})

    session.close()


def test_view_frames_precede_intent_ack(monkeypatch):
    module = _load_main_module(monkeypatch)
    jane = _register(module, "u1", "Jane", "jane")
    _register(module, "u2", "Bob", "bob")

    async def scenario():
        outbox = asyncio.Queue()
        forward = module.view_forwarder(asyncio.get_running_loop(), outbox)
        session = module.WorkspaceSession(module.STORE, module.require_profile(jane), on_view=forward).open()
        result = module.handle_workspace_intent(
            session, "create_chat", {"name": "Plans", "participant_ids": ["u2"], "initial_message": "hi"}
        )
        await outbox.put({"type": "ok", **result})
        frames = [outbox.get_nowait() for _ in range(outbox.qsize())]
        session.close()
        return result["chat_id"], frames

    chat_id, frames = asyncio.run(scenario())

    assert frames[-1]["type"] == "ok"
    assert frames[-2]["type"] == "view"
    assert frames[-2]["active_chat_id"] == chat_id
    assert [m["content"] for m in frames[-2]["messages"]] == ["hi"]


def test_views_from_other_threads_are_handed_to_the_loop(monkeypatch):
    module = _load_main_module(monkeypatch)
    view = module.WorkspaceView()

    async def scenario():
        outbox = asyncio.Queue()
        forward = module.view_forwarder(asyncio.get_running_loop(), outbox)
        writer = threading.Thread(target=forward, args=(view,))
        writer.start()
        writer.join()
        queued_before_loop_ran = outbox.qsize()
        await asyncio.sleep(0.01)
        return queued_before_loop_ran, outbox.get_nowait()

    queued_before_loop_ran, frame = asyncio.run(scenario())

    assert queued_before_loop_ran == 0
    assert frame["type"] == "view"
    assert frame["chats"] == []
