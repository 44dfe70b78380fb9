from __future__ import annotations

import logging
import re
import time
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from errors import (
    InvalidDisplayName,
    InvalidEmail,
    InvalidUsername,
    ProfileExists,
    ProfileReadFailed,
    ProfileWriteFailed,
    UsernameTaken,
)
from realtime import Query, RealtimeStore, StoreError, UniqueConstraintError, Upsert

LOGGER = logging.getLogger("chatsync.profiles")

USERS = "users"
USERNAME_MAX_LENGTH = 32

ACCENT_PALETTE: Tuple[str, ...] = (
    "from-rose-500 to-pink-500",
    "from-sky-500 to-cyan-500",
    "from-amber-500 to-orange-500",
    "from-violet-500 to-fuchsia-500",
    "from-emerald-500 to-teal-500",
    "from-indigo-500 to-blue-500",
    "from-lime-500 to-emerald-500",
    "from-slate-500 to-slate-700",
)

_NON_SLUG_RE = re.compile(r"[^a-z0-9-]+")
_DASH_RUN_RE = re.compile(r"-{2,}")
_LOCAL_PART_SPLIT_RE = re.compile(r"[.\-_]")


def now_ms() -> int:
    return int(time.time() * 1000)


class Identity(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: Optional[str] = None


class UserProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: Optional[str] = None
    display_name: str
    username: str
    handle: Optional[str] = None
    accent: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: Optional[int] = None


# =========================
# Username / display-name helpers
# =========================
def slugify_username(value: str) -> str:
    slug = _NON_SLUG_RE.sub("-", (value or "").strip().lower())
    slug = _DASH_RUN_RE.sub("-", slug).strip("-")
    return slug[:USERNAME_MAX_LENGTH]


def _local_part(email: Optional[str]) -> str:
    return (email or "").split("@")[0].strip()


def default_display_name(email: Optional[str]) -> str:
    local = _local_part(email)
    if not local:
        return "New User"
    tokens = [t for t in _LOCAL_PART_SPLIT_RE.split(local) if t]
    return " ".join(t[0].upper() + t[1:] for t in tokens)


def default_username(email: Optional[str]) -> str:
    return slugify_username(_local_part(email) or "user") or "user"


def profile_defaults(email: Optional[str]) -> Dict[str, str]:
    return {"display_name": default_display_name(email), "username": default_username(email)}


def format_handle(username: str) -> str:
    return username if username.startswith("@") else f"@{username}"


def normalize_email(value: Optional[str]) -> str:
    email = (value or "").strip().lower()
    if not email or "@" not in email:
        raise InvalidEmail()
    return email


def _hash_seed(seed: str) -> int:
    # 32-bit signed rolling hash over UTF-16 code units
    h = 0
    raw = seed.encode("utf-16-le")
    for i in range(0, len(raw), 2):
        h = (h * 31 + int.from_bytes(raw[i:i + 2], "little")) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def pick_accent(seed: Optional[str]) -> str:
    if not seed:
        return ACCENT_PALETTE[-1]
    return ACCENT_PALETTE[_hash_seed(seed) % len(ACCENT_PALETTE)]


def _clean_display_name(display_name: Optional[str]) -> str:
    name = (display_name or "").strip()
    if not name:
        raise InvalidDisplayName()
    return name


def _clean_username(username: Optional[str]) -> str:
    slug = slugify_username(username or "")
    if not slug:
        raise InvalidUsername()
    return slug


def ensure_username_available(store: RealtimeStore, username: str) -> None:
    """
    Advisory read-before-write. The store's unique index on users.username is what
    actually holds under concurrent writers; this only gives an early, friendly error.
    """
    try:
        existing = store.query_once(Query.on(USERS, limit=1, username=username))
    except StoreError as e:
        raise ProfileReadFailed() from e
    if existing:
        raise UsernameTaken()


def _write_profile(store: RealtimeStore, profile_id: str, fields: Dict[str, object]) -> None:
    try:
        store.transact([Upsert(USERS, profile_id, fields)])
    except UniqueConstraintError as e:
        LOGGER.info("username conflict on write id=%s username=%s", profile_id, fields.get("username"))
        raise UsernameTaken() from e
    except StoreError as e:
        LOGGER.warning("profile write failed id=%s: %s", profile_id, e)
        raise ProfileWriteFailed() from e


# =========================
# Identity resolver
# =========================
class IdentityResolver:
    def __init__(self, store: RealtimeStore, clock: Callable[[], int] = now_ms):
        self.store = store
        self.clock = clock

    def resolve(self, identity: Identity) -> Optional[UserProfile]:
        try:
            rows = self.store.query_once(Query.on(USERS, limit=1, id=identity.id))
        except StoreError as e:
            raise ProfileReadFailed() from e
        return UserProfile.model_validate(rows[0]) if rows else None

    def create_profile(self, identity: Identity, display_name: str, username: str) -> UserProfile:
        name = _clean_display_name(display_name)
        slug = _clean_username(username)
        email = normalize_email(identity.email) if identity.email else None

        if self.resolve(identity) is not None:
            raise ProfileExists()
        ensure_username_available(self.store, slug)

        profile = UserProfile(
            id=identity.id,
            email=email,
            display_name=name,
            username=slug,
            handle=format_handle(slug),
            accent=pick_accent(email or identity.id),
            created_at=self.clock(),
        )
        _write_profile(self.store, profile.id, profile.model_dump())
        LOGGER.info("profile created id=%s username=%s", profile.id, profile.username)
        return profile

    def list_people(self) -> List[UserProfile]:
        try:
            rows = self.store.query_once(Query.on(USERS))
        except StoreError as e:
            raise ProfileReadFailed() from e
        return sort_people(UserProfile.model_validate(r) for r in rows if r.get("id"))


def sort_people(people) -> List[UserProfile]:
    return sorted(people, key=lambda p: ((p.display_name or p.username).casefold(), p.id))


# =========================
# Profile editor
# =========================
class ProfileEditor:
    def __init__(self, store: RealtimeStore):
        self.store = store

    def update(
        self,
        profile: UserProfile,
        display_name: str,
        username: str,
        avatar_url: Optional[str] = None,
    ) -> UserProfile:
        name = _clean_display_name(display_name)
        slug = _clean_username(username)

        if slug != profile.username:
            ensure_username_available(self.store, slug)

        fields = {
            "display_name": name,
            "username": slug,
            "handle": format_handle(slug),
            "avatar_url": (avatar_url or "").strip() or None,
        }
        _write_profile(self.store, profile.id, fields)
        LOGGER.info("profile updated id=%s username=%s", profile.id, slug)
        return profile.model_copy(update=fields)
