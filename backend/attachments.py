from __future__ import annotations

import base64
import logging
import math
import os
import re
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from io import BytesIO
from typing import Optional, Tuple

import cloudinary
import cloudinary.uploader
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, ConfigDict

from errors import FileTooLarge, UploadFailed

LOGGER = logging.getLogger("chatsync.uploads")

MAX_FILE_SIZE_BYTES = 5 * 1024 * 1024
DEFAULT_CONTENT_TYPE = "application/octet-stream"
DURABLE_KEY_PREFIX = "chat-images"
INLINE_ID_PREFIX = "inline-"

_UNSAFE_KEY_RE = re.compile(r"[^A-Za-z0-9_-]+")


class ImageAttachment(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    url: str
    width: Optional[int] = None
    height: Optional[int] = None
    name: Optional[str] = None
    size: Optional[int] = None


@dataclass(frozen=True)
class ImageFile:
    name: str
    data: bytes
    content_type: str = ""

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def declared_type(self) -> str:
        return (self.content_type or "").strip() or DEFAULT_CONTENT_TYPE


@dataclass(frozen=True)
class BlobRef:
    url: str
    pathname: str


def random_token() -> str:
    return secrets.token_urlsafe(16)


# =========================
# Blob storage
# =========================
class BlobStorage(ABC):
    @abstractmethod
    def put(self, key: str, data: bytes, *, access: str = "public", content_type: str = DEFAULT_CONTENT_TYPE) -> BlobRef:
        ...


class CloudinaryBlobStorage(BlobStorage):
    def __init__(self, cloud_name: str, api_key: str, api_secret: str):
        cloudinary.config(
            cloud_name=cloud_name,
            api_key=api_key,
            api_secret=api_secret,
            secure=True,
        )

    def put(self, key: str, data: bytes, *, access: str = "public", content_type: str = DEFAULT_CONTENT_TYPE) -> BlobRef:
        # a data URI carries the declared content type through to Cloudinary
        payload = f"data:{content_type};base64,{base64.b64encode(data).decode('ascii')}"
        res = cloudinary.uploader.upload(
            payload,
            public_id=key,
            resource_type="image",
            type="upload",
            access_mode=access,
            overwrite=False,
        )
        return BlobRef(url=res.get("secure_url") or res.get("url"), pathname=res.get("public_id") or key)


# =========================
# Strategies
# =========================
class AttachmentStrategy(ABC):
    name = "base"

    @abstractmethod
    def store(self, file: ImageFile, width: Optional[int], height: Optional[int]) -> ImageAttachment:
        ...


def durable_key(filename: str) -> str:
    # Cloudinary appends the detected format to the public id, so the extension is dropped
    stem = os.path.splitext(os.path.basename(filename or ""))[0]
    safe = _UNSAFE_KEY_RE.sub("-", stem).strip("-") or "image"
    return f"{DURABLE_KEY_PREFIX}/{random_token()}-{safe}"


class DurableStrategy(AttachmentStrategy):
    name = "durable"

    def __init__(self, storage: BlobStorage):
        self.storage = storage

    def store(self, file: ImageFile, width: Optional[int], height: Optional[int]) -> ImageAttachment:
        key = durable_key(file.name)
        try:
            blob = self.storage.put(key, file.data, access="public", content_type=file.declared_type)
        except Exception as e:
            LOGGER.error("blob upload failed key=%s: %s", key, e)
            raise UploadFailed() from e
        return ImageAttachment(
            id=blob.pathname,
            url=blob.url,
            width=width,
            height=height,
            name=file.name,
            size=file.size,
        )


class InlineStrategy(AttachmentStrategy):
    name = "inline"

    def store(self, file: ImageFile, width: Optional[int], height: Optional[int]) -> ImageAttachment:
        encoded = base64.b64encode(file.data).decode("ascii")
        return ImageAttachment(
            id=f"{INLINE_ID_PREFIX}{random_token()}",
            url=f"data:{file.declared_type};base64,{encoded}",
            width=width,
            height=height,
            name=file.name,
            size=file.size,
        )


def select_strategy(storage: Optional[BlobStorage]) -> AttachmentStrategy:
    if storage is not None:
        return DurableStrategy(storage)
    return InlineStrategy()


class AttachmentUploader:
    def __init__(self, strategy: AttachmentStrategy):
        self.strategy = strategy

    def upload(self, file: ImageFile, width: Optional[int] = None, height: Optional[int] = None) -> ImageAttachment:
        if file.size > MAX_FILE_SIZE_BYTES:
            raise FileTooLarge()
        attachment = self.strategy.store(file, width, height)
        LOGGER.info("image stored strategy=%s id=%s size=%s", self.strategy.name, attachment.id, file.size)
        return attachment


# =========================
# Dimensions (best effort)
# =========================
def parse_dimension(value: Optional[str]) -> Optional[int]:
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        number = float(raw)
    except ValueError:
        return None
    if not math.isfinite(number) or number < 0:
        return None
    return int(number)


def probe_dimensions(data: bytes) -> Tuple[Optional[int], Optional[int]]:
    try:
        with Image.open(BytesIO(data)) as img:
            width, height = img.size
    except (UnidentifiedImageError, OSError, ValueError) as e:
        LOGGER.debug("image probe failed: %s", e)
        return None, None
    return width, height
