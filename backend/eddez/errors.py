from __future__ import annotations


class EddezError(RuntimeError):
    pass


class OfflineError(EddezError):
    """The client has no connectivity; raised before any network call."""


class ConfigurationError(EddezError):
    """The server is missing the upstream model credential."""


class UpstreamError(EddezError):
    """Every model endpoint failed, or the upstream answered with garbage."""


class InvalidTransitionError(EddezError):
    pass


class ApiError(EddezError):
    def __init__(self, message: str, *, status_code: int | None = None, detail: object | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail
