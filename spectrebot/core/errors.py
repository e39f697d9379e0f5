"""Error taxonomy for the account session lifecycle."""


class SessionError(Exception):
    """Base class for session lifecycle errors."""

    def __init__(self, reason: str, *, username: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.username = username

    def __str__(self) -> str:
        if self.username:
            return f"[{self.username}] {self.reason}"
        return self.reason


class RefreshFailed(SessionError):
    """Identity provider rejected or could not complete a refresh-token exchange."""


class ValidationFailed(SessionError):
    """Token validation call failed or reported the token as invalid."""


class ConnectFailed(SessionError):
    """Chat transport could not be established."""


class StoreError(SessionError):
    """Account store read or write failed."""
