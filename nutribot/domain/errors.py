from __future__ import annotations

from enum import StrEnum


class DomainError(Exception):
    def __init__(self, message: str, *, context: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.context: dict[str, object] = dict(context or {})


class DomainValidationError(DomainError):
    pass


class DomainInvariantError(DomainError):
    pass


class DomainDependencyError(DomainError):
    pass


class DomainConfigurationError(DomainError):
    pass


class DomainNotFoundError(DomainError):
    pass


class UserNotFoundError(DomainNotFoundError):
    def __init__(self, identifier: str | int, *, context: dict[str, object] | None = None) -> None:
        if isinstance(identifier, int):
            message = f"user with id {identifier} not found"
        else:
            message = f"user with phone {identifier} not found"
        super().__init__(message, context={"identifier": identifier, **(context or {})})
        self.identifier = identifier


class DuplicateUserError(DomainInvariantError):
    pass


class UserDirectoryError(DomainDependencyError):
    pass


class DeliveryFailureKind(StrEnum):
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    DNS = "dns"
    HTTP_STATUS = "http_status"


class DeliveryValidationError(DomainValidationError):
    def __init__(self, message: str, *, field: str, value: object) -> None:
        super().__init__(message, context={"field": field, "value": value})
        self.field = field
        self.value = value


class DeliveryConfigurationError(DomainConfigurationError):
    def __init__(self, message: str, *, config_key: str) -> None:
        super().__init__(message, context={"config_key": config_key})
        self.config_key = config_key


class DeliveryError(DomainDependencyError):
    """Classified failure of an outbound reply dispatch."""

    def __init__(
        self,
        message: str,
        *,
        kind: DeliveryFailureKind,
        channel_id: str,
        url: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(
            message,
            context={
                "failure_kind": str(kind),
                "channel_id": channel_id,
                "url": url,
                "status_code": status_code,
            },
        )
        self.kind = kind
        self.channel_id = channel_id
        self.url = url
        self.status_code = status_code
        self.response_body = response_body

    @property
    def retryable(self) -> bool:
        if self.kind != DeliveryFailureKind.HTTP_STATUS:
            return True
        return self.status_code is not None and (self.status_code >= 500 or self.status_code == 429)
