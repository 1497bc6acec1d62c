from __future__ import annotations


class SitecronError(Exception):
    pass


class ConfigurationError(SitecronError):
    """No endpoint secret configured, or configuration is invalid."""


class AuthenticationError(SitecronError):
    pass


class RateLimitError(SitecronError):
    pass


class ConcurrencyError(SitecronError):
    """Execution lock is held, or the last run was too recent."""


class DirectoryError(SitecronError):
    """The site directory could not be read. Nothing was dispatched."""


class DispatchError(SitecronError):
    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class UnitExecutionError(SitecronError):
    def __init__(self, message: str, response_code: int | None = None) -> None:
        super().__init__(message)
        self.response_code = response_code
