"""Relay error taxonomy."""


class RelayError(Exception):
    """Base class for failures the relay reports to its callers."""

    code = "relay_error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class IdentityNotFound(RelayError):
    code = "identity_not_found"

    def __init__(self, identity_id: str):
        super().__init__(f"Identity {identity_id} not found")
        self.identity_id = identity_id


class MessageNotFound(RelayError):
    code = "message_not_found"

    def __init__(self, message_id: str):
        super().__init__(f"Message {message_id} not found")
        self.message_id = message_id


class IdentityExists(RelayError):
    code = "identity_exists"

    def __init__(self, identity_id: str):
        super().__init__(f"Identity {identity_id} already exists")
        self.identity_id = identity_id


class Unauthorized(RelayError):
    """The connection may not perform the requested action."""

    code = "unauthorized"


class IdentityBlocked(Unauthorized):
    code = "blocked"

    def __init__(self, identity_id: str):
        super().__init__(f"Identity {identity_id} is blocked")
        self.identity_id = identity_id


class InvalidRequest(RelayError):
    code = "invalid_request"


class InvalidMerge(InvalidRequest):
    code = "invalid_merge"


class IdentityIssueFailed(RelayError):
    code = "identity_issue_failed"


class StoreUnavailable(RelayError):
    """A persistence call failed; the caller may retry."""

    code = "store_unavailable"


class NotificationError(RelayError):
    """The external bot channel rejected or failed a notification."""

    code = "notification_failed"


class PushDeliveryError(RelayError):
    code = "push_failed"

    def __init__(self, detail: str, permanent: bool = False):
        super().__init__(detail)
        self.permanent = permanent
