from __future__ import annotations


class MappingError(Exception):
    """
    Base for every failure the service turns into an HTTP response.
    Carries the status code the way HTTPException does, so the web layer
    needs one handler for the whole taxonomy.
    """

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(MappingError):
    status_code = 400


class NotFound(MappingError):
    status_code = 404


class Conflict(MappingError):
    status_code = 409


class CorruptRecord(MappingError):
    status_code = 500


class UpstreamFailure(MappingError):
    status_code = 500


class GatewayTimeout(UpstreamFailure):
    status_code = 504


class ConfigurationError(MappingError):
    status_code = 500


class StoreUnavailable(MappingError):
    status_code = 503
