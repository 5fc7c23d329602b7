"""Exception hierarchy shared by the session client and the org cache."""

from __future__ import annotations


class B6PError(Exception):
    """Root of every error raised by b6p_session."""


class InitializationError(B6PError):
    pass


class ManagerNotInitializedError(InitializationError):
    def __init__(self, manager: str) -> None:
        super().__init__(f"{manager} not initialized")
        self.manager = manager


# Authentication


class AuthenticationError(B6PError):
    pass


class CredentialsNotFoundError(AuthenticationError):
    def __init__(self, flag: str) -> None:
        super().__init__(f"no existing credentials found for flag: {flag}")
        self.flag = flag


# Session management


class SessionError(B6PError):
    pass


class SessionNotFoundError(SessionError):
    def __init__(self, origin: str) -> None:
        super().__init__(f"session not found for origin: {origin}")
        self.origin = origin


class HttpResponseError(SessionError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UnauthorizedError(SessionError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CsrfTokenNotFoundError(SessionError):
    def __init__(self) -> None:
        super().__init__("CSRF token not found")


class RequestTimeoutError(SessionError):
    def __init__(self) -> None:
        super().__init__("request timed out")


class RetryAttemptsExhaustedError(SessionError):
    def __init__(self, details: str) -> None:
        super().__init__(f"retry attempts exhausted: {details}")
        self.details = details


class SessionConsistencyError(SessionError):
    """The server broke the session contract; never retried."""


class SessionDataMissingError(SessionConsistencyError):
    def __init__(self) -> None:
        super().__init__("no existing session data found, and no cookies in response")


class SessionIdMissingError(SessionConsistencyError):
    def __init__(self) -> None:
        super().__init__("missing JSESSIONID")


# Org resolution


class OrgResolutionError(B6PError):
    pass


class OrgLookupError(OrgResolutionError):
    pass


class OrgNotFoundError(OrgResolutionError):
    def __init__(self, host: str) -> None:
        super().__init__(f"no cached org for host: {host}")
        self.host = host


class HelperEndpointError(OrgResolutionError):
    pass


class CacheIntegrityError(B6PError):
    def __init__(self, host: str, us: list[str]) -> None:
        super().__init__(f"org cache is invalid: host '{host}' is claimed by {', '.join(us)}")
        self.host = host
        self.us = list(us)
