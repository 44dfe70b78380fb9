from __future__ import annotations

from typing import Optional


class ChatError(Exception):
    """
    Base for every failure an operation reports to the presentation layer.
    `message` is user-facing text, `error` a stable machine code.
    """

    status_code = 400
    error = "chat_error"
    message = "Something went wrong. Try again."

    def __init__(self, message: Optional[str] = None):
        self.message = message or type(self).message
        super().__init__(self.message)


# =========================
# Validation (recovered locally, no network call)
# =========================
class ValidationError(ChatError):
    error = "validation_error"
    message = "Check the form and try again."


class InvalidEmail(ValidationError):
    error = "invalid_email"
    message = "Enter a valid email address."


class InvalidDisplayName(ValidationError):
    error = "invalid_display_name"
    message = "Tell us your name so others recognize you."


class InvalidUsername(ValidationError):
    error = "invalid_username"
    message = "Pick a username with at least one letter or number."


class InvalidChatName(ValidationError):
    error = "invalid_chat_name"
    message = "Name your chat before creating it."


class MissingParticipants(ValidationError):
    error = "missing_participants"
    message = "Select at least one participant."


class EmptyMessage(ValidationError):
    error = "empty_message"
    message = "Add text or an image before sending."


class NoActiveChat(ValidationError):
    error = "no_active_chat"
    message = "Select a chat before sending messages."


class MissingFile(ValidationError):
    error = "missing_file"
    message = "Missing file"


class MalformedRequest(ValidationError):
    error = "malformed_request"
    message = "That request could not be read. Reload and try again."


# =========================
# Conflicts
# =========================
class ConflictError(ChatError):
    status_code = 409
    error = "conflict"
    message = "That value is already in use."


class UsernameTaken(ConflictError):
    error = "username_taken"
    message = "That username is taken. Try another."


class ProfileExists(ConflictError):
    error = "profile_exists"
    message = "A profile already exists for this account."


# =========================
# Not found
# =========================
class NotFoundError(ChatError):
    status_code = 404
    error = "not_found"
    message = "Not found."


class ProfileMissing(NotFoundError):
    error = "profile_missing"
    message = "Create your profile first."


class ChatNotFound(NotFoundError):
    error = "chat_not_found"
    message = "Chat not found."


# =========================
# Size limits (rejected before upload)
# =========================
class SizeLimitError(ChatError):
    error = "size_limit"
    message = "File is too large."


class FileTooLarge(SizeLimitError):
    error = "file_too_large"
    message = "Images must be 5MB or smaller."


# =========================
# Transport (network/store failures, no automatic retry)
# =========================
class TransportError(ChatError):
    status_code = 500
    error = "transport_error"
    message = "Something went wrong. Try again."


class ProfileReadFailed(TransportError):
    error = "profile_read_failed"
    message = "Unable to load your profile. Try again."


class ProfileWriteFailed(TransportError):
    error = "profile_write_failed"
    message = "Unable to save your profile."


class UploadFailed(TransportError):
    error = "upload_failed"
    message = "Unable to upload image right now."


class TransactionFailed(TransportError):
    error = "transaction_failed"
    message = "Unable to save changes right now. Try again."
