from __future__ import annotations


class RelayError(Exception):
    pass


class FeedError(RelayError):
    """A failed fetch or auth call against an upstream feed.

    Every category is recoverable: the poller records the failure and the
    next scheduled cycle tries again.
    """

    category = "error"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationFailed(FeedError):
    category = "authentication"


class Unauthorized(FeedError):
    category = "unauthorized"


class RateLimited(FeedError):
    category = "rate_limited"


class TransientError(FeedError):
    category = "transient"


class BadRequest(FeedError):
    category = "bad_request"


class MalformedResponse(BadRequest):
    category = "malformed"


class ConfigurationInvalid(RelayError):
    pass


class DuplicateFeedID(RelayError):
    pass


class FeedNotFound(RelayError):
    pass


class UnknownFeedType(RelayError):
    pass


class PermissionDenied(RelayError):
    pass


class AdapterError(RelayError):
    pass
