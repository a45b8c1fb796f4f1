"""Error taxonomy shared by the REST routes and the websocket hub.

Every coordinator failure is a ``ChatError`` carrying a stable ``kind``, the
HTTP status the REST layer answers with, and a message that is safe to show
to end users. ``NotFound`` and ``Unauthorized`` deliberately share one
message and one status so callers cannot tell a missing room from a wrong
password.
"""

ACCESS_DENIED_MESSAGE = "Room not found or incorrect password"


class ChatError(Exception):
    kind = "internal"
    status_code = 500
    public_message = "Something went wrong. Please try again."

    def __init__(self, detail: str = None, *, public_message: str = None):
        super().__init__(detail or self.public_message)
        self.detail = detail or self.public_message
        if public_message is not None:
            self.public_message = public_message

    def to_dict(self) -> dict:
        return {"message": self.public_message, "kind": self.kind}


class ValidationError(ChatError):
    kind = "validation"
    status_code = 422
    public_message = "Invalid request"

    def __init__(self, detail: str = None):
        # validation details describe the caller's own input, so show them
        super().__init__(detail, public_message=detail or self.public_message)


class NotFound(ChatError):
    kind = "not_found"
    status_code = 404
    public_message = ACCESS_DENIED_MESSAGE


class RoomExpired(NotFound):
    kind = "expired"
    status_code = 410
    public_message = "Room has expired"


class Unauthorized(ChatError):
    kind = "not_found"
    status_code = 404
    public_message = ACCESS_DENIED_MESSAGE


class RoomFull(ChatError):
    kind = "full"
    status_code = 403
    public_message = "Room is full"


class RateLimited(ChatError):
    kind = "rate_limited"
    status_code = 429
    public_message = "Rate limit exceeded. Please slow down."


class Conflict(ChatError):
    kind = "conflict"
    status_code = 409
    public_message = "Request conflicts with the current room state. Please try again."


class InternalError(ChatError):
    pass


class StorageError(ChatError):
    """Backend failure (connection loss, timeout, bad reply)."""

    kind = "storage"
