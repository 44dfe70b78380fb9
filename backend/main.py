from __future__ import annotations

import os
import time
import json
import logging
import asyncio
import hmac
import hashlib
from contextlib import asynccontextmanager
from typing import Callable, Dict, Optional, List, Any

from fastapi import (
    FastAPI,
    WebSocket,
    WebSocketDisconnect,
    HTTPException,
    Request,
    Header,
    Depends,
    UploadFile,
    File,
    Form,
    Query as QueryParam,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from attachments import (
    AttachmentUploader,
    CloudinaryBlobStorage,
    ImageAttachment,
    ImageFile,
    MAX_FILE_SIZE_BYTES,
    parse_dimension,
    probe_dimensions,
    select_strategy,
)
from errors import (
    ChatError,
    ChatNotFound,
    FileTooLarge,
    MalformedRequest,
    MissingFile,
    ProfileMissing,
    TransportError,
)
from profiles import Identity, IdentityResolver, ProfileEditor, UserProfile, profile_defaults
from realtime import MemoryStore, PostgresStore, RealtimeStore
from workspace import WorkspaceSession, WorkspaceView


LOGGER = logging.getLogger("chatsync.api")


# =========================
# Config
# =========================
JWT_SECRET = (os.environ.get("JWT_SECRET") or "").strip()
if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET env is required")
if len(JWT_SECRET) < 16:
    raise RuntimeError("JWT_SECRET must be at least 16 characters")

DATABASE_URL = (os.environ.get("DATABASE_URL") or "").strip()
# Normalize for psycopg
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = "postgresql://" + DATABASE_URL[len("postgres://"):]

WS_HEARTBEAT_INTERVAL_SECONDS = float(os.environ.get("WS_HEARTBEAT_INTERVAL_SECONDS", "20"))
WS_HEARTBEAT_TIMEOUT_SECONDS = float(os.environ.get("WS_HEARTBEAT_TIMEOUT_SECONDS", "45"))

UNIQUE_FIELDS = {"users": ("username",)}


def parse_cors_origins(value: Optional[str]) -> List[str]:
    if value is None or not value.strip():
        return ["http://localhost"]

    origins = [origin.strip() for origin in value.split(",") if origin.strip()]
    if not origins:
        return ["http://localhost"]

    # Keep order while removing accidental duplicates from CSV input.
    return list(dict.fromkeys(origins))


CORS_ORIGINS = parse_cors_origins(os.environ.get("CORS_ORIGINS"))


# =========================
# Cloudinary config (optional: inline uploads without it)
# =========================
CLOUDINARY_CLOUD_NAME = (os.environ.get("CLOUDINARY_CLOUD_NAME") or "").strip()
CLOUDINARY_API_KEY = (os.environ.get("CLOUDINARY_API_KEY") or "").strip()
CLOUDINARY_API_SECRET = (os.environ.get("CLOUDINARY_API_SECRET") or "").strip()

_cloudinary_values = (CLOUDINARY_CLOUD_NAME, CLOUDINARY_API_KEY, CLOUDINARY_API_SECRET)
if any(_cloudinary_values) and not all(_cloudinary_values):
    raise RuntimeError(
        "Cloudinary env vars incomplete: set all of CLOUDINARY_CLOUD_NAME, CLOUDINARY_API_KEY, "
        "CLOUDINARY_API_SECRET or none of them"
    )

BLOB_STORAGE = (
    CloudinaryBlobStorage(CLOUDINARY_CLOUD_NAME, CLOUDINARY_API_KEY, CLOUDINARY_API_SECRET)
    if all(_cloudinary_values)
    else None
)
UPLOADER = AttachmentUploader(select_strategy(BLOB_STORAGE))


# =========================
# Store
# =========================
def build_store(database_url: str) -> RealtimeStore:
    if database_url:
        return PostgresStore(database_url, unique=UNIQUE_FIELDS)
    LOGGER.warning(
        "DATABASE_URL env is missing. Using an in-memory store for this process; "
        "data is lost on restart and not shared between instances."
    )
    return MemoryStore(unique=UNIQUE_FIELDS)


STORE = build_store(DATABASE_URL)


def resolver() -> IdentityResolver:
    return IdentityResolver(STORE)


def editor() -> ProfileEditor:
    return ProfileEditor(STORE)


def now_ts() -> int:
    return int(time.time())


# =========================
# Identity tokens (HS256, issued by the identity provider)
# =========================
def b64url(data: bytes) -> str:
    import base64
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64urldecode(data: str) -> bytes:
    import base64
    pad = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode((data + pad).encode("ascii"))


def jwt_verify(token: str) -> dict:
    try:
        header_b64, payload_b64, sig_b64 = token.split(".", 2)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token")

    msg = f"{header_b64}.{payload_b64}".encode("ascii")
    expected = hmac.new(JWT_SECRET.encode(), msg, hashlib.sha256).digest()
    if not hmac.compare_digest(b64url(expected), sig_b64):
        raise HTTPException(status_code=401, detail="Bad signature")

    try:
        payload = json.loads(b64urldecode(payload_b64))
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if int(payload.get("exp", 0)) < now_ts():
        raise HTTPException(status_code=401, detail="Token expired")
    if not str(payload.get("sub") or "").strip():
        raise HTTPException(status_code=401, detail="Invalid token")
    return payload


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None
    scheme, value = parts[0].strip(), parts[1].strip()
    if scheme.lower() != "bearer" or not value:
        return None
    return value


def get_token(request: Request, authorization: Optional[str] = Header(default=None)) -> str:
    token = _extract_bearer(authorization)
    if token:
        return token
    token_q = (request.query_params.get("token") or "").strip()
    if token_q:
        return token_q
    raise HTTPException(status_code=401, detail="Missing token")


def identity_from_token(token: str) -> Identity:
    payload = jwt_verify(token)
    email = str(payload.get("email") or "").strip() or None
    return Identity(id=str(payload["sub"]).strip(), email=email)


def get_current_identity(token: str = Depends(get_token)) -> Identity:
    return identity_from_token(token)


def require_profile(identity: Identity) -> UserProfile:
    profile = resolver().resolve(identity)
    if profile is None:
        raise ProfileMissing()
    return profile


def extract_user_id_from_request(request: Request) -> Optional[str]:
    token = _extract_bearer(request.headers.get("authorization"))
    if not token:
        token = (request.query_params.get("token") or "").strip()
    if not token:
        return None
    try:
        return str(jwt_verify(token).get("sub") or "").strip() or None
    except HTTPException:
        return None


def get_build_meta() -> Dict[str, str]:
    version = (os.environ.get("APP_VERSION") or os.environ.get("VERSION") or "unknown").strip() or "unknown"
    commit = (
        os.environ.get("APP_COMMIT")
        or os.environ.get("COMMIT_SHA")
        or os.environ.get("RENDER_GIT_COMMIT")
        or "unknown"
    ).strip() or "unknown"
    return {"version": version, "commit": commit}


def view_payload(view: WorkspaceView) -> Dict[str, Any]:
    return view.model_dump(mode="json")


# =========================
# App
# =========================
@asynccontextmanager
async def _lifespan(app: FastAPI):
    if isinstance(STORE, PostgresStore):
        STORE.init_schema()
    LOGGER.info("upload strategy=%s store=%s", UPLOADER.strategy.name, type(STORE).__name__)
    yield


app = FastAPI(lifespan=_lifespan)


@app.exception_handler(ChatError)
async def chat_error_handler(_request: Request, exc: ChatError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "code": exc.error},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started = time.perf_counter()
    user_id = extract_user_id_from_request(request)
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        latency_ms = round((time.perf_counter() - started) * 1000, 2)
        LOGGER.info(
            json.dumps(
                {
                    "method": request.method,
                    "path": request.url.path,
                    "status": status_code,
                    "latency_ms": latency_ms,
                    "user_id": user_id,
                },
                ensure_ascii=False,
            )
        )


@app.get("/api/health")
def healthcheck():
    return {"ok": True, "ts": now_ts(), **get_build_meta()}


# =========================
# Schemas
# =========================
class ProfileCreateIn(BaseModel):
    display_name: str
    username: str


class ProfileUpdateIn(BaseModel):
    display_name: str
    username: str
    avatar_url: Optional[str] = None


class ChatCreateIn(BaseModel):
    name: str = ""
    participant_ids: List[str] = []
    initial_message: Optional[str] = None


class MessageCreateIn(BaseModel):
    text: Optional[str] = None
    attachments: List[ImageAttachment] = []


class ChatSelectIn(BaseModel):
    chat_id: Optional[str] = None


# =========================
# Profile API
# =========================
@app.get("/api/me")
def me(identity: Identity = Depends(get_current_identity)):
    profile = resolver().resolve(identity)
    return {
        "profile": (profile.model_dump() if profile else None),
        "defaults": profile_defaults(identity.email),
    }


@app.post("/api/profile")
async def create_profile(data: ProfileCreateIn, identity: Identity = Depends(get_current_identity)):
    profile = resolver().create_profile(identity, data.display_name, data.username)
    return {"profile": profile.model_dump()}


@app.patch("/api/profile")
async def update_profile(data: ProfileUpdateIn, identity: Identity = Depends(get_current_identity)):
    profile = require_profile(identity)
    updated = editor().update(profile, data.display_name, data.username, data.avatar_url)
    return {"profile": updated.model_dump()}


@app.get("/api/people")
def list_people(identity: Identity = Depends(get_current_identity)):
    require_profile(identity)
    return {"people": [p.model_dump() for p in resolver().list_people()]}


# =========================
# Chats API (one short-lived session per request)
# =========================
def open_session(identity: Identity, selected_chat_id: Optional[str] = None) -> WorkspaceSession:
    session = WorkspaceSession(STORE, require_profile(identity)).open()
    if selected_chat_id:
        session.select_chat(selected_chat_id)
    return session


@app.get("/api/workspace")
async def workspace_view(
    selected_chat_id: Optional[str] = QueryParam(None),
    identity: Identity = Depends(get_current_identity),
):
    session = open_session(identity, selected_chat_id)
    try:
        return {"view": view_payload(session.view)}
    finally:
        session.close()


@app.post("/api/chats")
async def create_chat(data: ChatCreateIn, identity: Identity = Depends(get_current_identity)):
    session = open_session(identity)
    try:
        chat_id = session.create_chat(data.name, data.participant_ids, data.initial_message)
    finally:
        session.close()
    return {"ok": True, "chat_id": chat_id}


@app.post("/api/chats/{chat_id}/messages")
async def send_message(chat_id: str, data: MessageCreateIn, identity: Identity = Depends(get_current_identity)):
    session = open_session(identity, chat_id)
    try:
        # resolution falls back to another chat when this one is not visible
        if session.resolved_chat_id != chat_id:
            raise ChatNotFound()
        message = session.send_message(data.text, data.attachments)
    finally:
        session.close()
    return {"ok": True, "message": message.model_dump(mode="json")}


# =========================
# Uploads (image attachments)
# =========================
@app.post("/api/uploads")
async def upload_image(
    file: Optional[UploadFile] = File(None),
    width: Optional[str] = Form(None),
    height: Optional[str] = Form(None),
    identity: Identity = Depends(get_current_identity),
):
    if file is None:
        raise MissingFile()
    if file.size is not None and file.size > MAX_FILE_SIZE_BYTES:
        raise FileTooLarge()

    data = await file.read()
    image = ImageFile(name=(file.filename or "image").strip(), data=data, content_type=file.content_type or "")
    if image.size > MAX_FILE_SIZE_BYTES:
        raise FileTooLarge()

    w, h = parse_dimension(width), parse_dimension(height)
    if w is None and h is None:
        w, h = probe_dimensions(data)

    attachment = UPLOADER.upload(image, w, h)
    LOGGER.info("upload by=%s id=%s", identity.id, attachment.id)
    return attachment.model_dump(exclude_none=True)


# =========================
# WebSocket: live workspace
# =========================
def error_frame(exc: ChatError, request_id: Any = None) -> dict:
    return {"type": "error", "request_id": request_id, "error": exc.message, "code": exc.error}


def view_forwarder(loop: asyncio.AbstractEventLoop, outbox: asyncio.Queue) -> Callable[[WorkspaceView], None]:
    """
    Views produced by this socket's own intents run on the loop thread and are
    queued at once, ahead of the intent's `ok` frame. Views from writers on other
    threads are handed over to the loop.
    """

    def forward(view: WorkspaceView) -> None:
        frame = {"type": "view", **view_payload(view)}
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            outbox.put_nowait(frame)
        else:
            loop.call_soon_threadsafe(outbox.put_nowait, frame)

    return forward


@app.websocket("/ws/workspace")
async def ws_workspace(ws: WebSocket):
    """
    Client connects with ?token=...
    Receives:
      - view  (whenever the projected workspace changes)
      - error {error, code, request_id}
      - ok    {request_id, ...}
      - ping
    Sends:
      - select_chat {chat_id}
      - create_chat {name, participant_ids, initial_message}
      - send_message {text, attachments}
      - pong
    """
    token = (ws.query_params.get("token") or "").strip()
    if not token:
        await ws.close(code=4401)
        return

    try:
        identity = identity_from_token(token)
    except HTTPException:
        await ws.close(code=4401)
        return

    try:
        profile = require_profile(identity)
    except ChatError:
        await ws.close(code=4403)
        return

    await ws.accept()

    outbox: asyncio.Queue = asyncio.Queue()
    session = WorkspaceSession(STORE, profile, on_view=view_forwarder(asyncio.get_running_loop(), outbox))
    try:
        session.open()
    except ChatError as exc:
        await ws_send_safe(ws, error_frame(exc))
        await ws.close(code=1011)
        return

    last_pong_at = time.monotonic()
    stop = asyncio.Event()

    async def sender_loop() -> None:
        while not stop.is_set():
            payload = await outbox.get()
            await ws_send_safe(ws, payload)

    async def heartbeat_loop() -> None:
        try:
            while not stop.is_set():
                await asyncio.sleep(WS_HEARTBEAT_INTERVAL_SECONDS)
                if stop.is_set():
                    break
                if (time.monotonic() - last_pong_at) > WS_HEARTBEAT_TIMEOUT_SECONDS:
                    await ws.close(code=1011, reason="heartbeat timeout")
                    break
                await ws_send_safe(ws, {"type": "ping", "ts": now_ts()})
        except Exception:
            LOGGER.debug("heartbeat stopped user=%s", identity.id)

    tasks = [asyncio.create_task(sender_loop()), asyncio.create_task(heartbeat_loop())]

    try:
        while True:
            raw = await ws.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                continue
            if not isinstance(data, dict):
                await outbox.put(error_frame(MalformedRequest()))
                continue

            t = data.get("type")
            if t == "pong":
                last_pong_at = time.monotonic()
                continue

            request_id = data.get("request_id")
            try:
                result = handle_workspace_intent(session, t, data)
            except ChatError as exc:
                await outbox.put(error_frame(exc, request_id))
                continue
            except Exception:
                LOGGER.exception("workspace intent failed user=%s type=%s", identity.id, t)
                await outbox.put(error_frame(TransportError(), request_id))
                continue
            if result is not None:
                await outbox.put({"type": "ok", "request_id": request_id, **result})
    except WebSocketDisconnect:
        pass
    finally:
        stop.set()
        for task in tasks:
            task.cancel()
        session.close()


def _intent_body(model, data: Any):
    if not isinstance(data, dict):
        raise MalformedRequest()
    try:
        return model.model_validate(data)
    except SchemaError as e:
        raise MalformedRequest() from e


def handle_workspace_intent(session: WorkspaceSession, intent: Optional[str], data: Any) -> Optional[dict]:
    if intent == "select_chat":
        body = _intent_body(ChatSelectIn, data)
        session.select_chat(body.chat_id)
        return {"chat_id": session.resolved_chat_id}

    if intent == "create_chat":
        body = _intent_body(ChatCreateIn, data)
        chat_id = session.create_chat(body.name, body.participant_ids, body.initial_message)
        return {"chat_id": chat_id}

    if intent == "send_message":
        body = _intent_body(MessageCreateIn, data)
        message = session.send_message(body.text, body.attachments)
        return {"message_id": message.id}

    return None


async def ws_send_safe(ws: WebSocket, payload: dict) -> None:
    try:
        await ws.send_text(json.dumps(payload))
    except Exception:
        # will be cleaned on next disconnect
        pass
