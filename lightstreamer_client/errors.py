"""
Custom exceptions for the Lightstreamer client.

Exception hierarchy:
- LightstreamerError (base)
  - ProtocolError: the server rejected an operation with a numeric code
    - AuthenticationError, UnknownAdapterSetError, ... (one class per known code)
    - MetadataAdapterError: custom error raised by the server's metadata adapter
  - SyncError: session is no longer valid and a new one must be created
  - SessionEndError: the server terminated the session
  - RequestError: HTTP transport failure
  - ConfigurationError: invalid configuration
  - SubscriptionError: invalid subscription input or usage
  - NotConnectedError: the operation needs a connected session
"""

from __future__ import annotations

from typing import Any, Optional


class LightstreamerError(Exception):
    """Base exception for all Lightstreamer client errors."""

    def __init__(
        self,
        message: str = "",
        *,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.component = component
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.component:
            parts.append(f"[component={self.component}]")
        if self.details:
            parts.append(f"[details={self.details}]")
        return " ".join(p for p in parts if p)


class ProtocolError(LightstreamerError):
    """Raised when the server explicitly rejects an operation."""

    code: Optional[int] = None
    default_message = "Lightstreamer protocol error"

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[int] = None,
        *,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        if code is not None:
            self.code = code
        super().__init__(message or self.default_message, component=component, details=details)


class AuthenticationError(ProtocolError):
    """The session username and password check failed."""

    code = 1
    default_message = "Authentication failed"


class UnknownAdapterSetError(ProtocolError):
    """The requested adapter set is unknown."""

    code = 2
    default_message = "Unknown adapter set"


class IncompatibleSessionError(ProtocolError):
    """The session was created with a different and incompatible protocol."""

    code = 3
    default_message = "Incompatible session"


class LicensedMaximumSessionsReachedError(ProtocolError):
    code = 7
    default_message = "Licensed maximum number of sessions reached"


class ConfiguredMaximumSessionsReachedError(ProtocolError):
    code = 8
    default_message = "Configured maximum number of sessions reached"


class ConfiguredMaximumServerLoadReachedError(ProtocolError):
    code = 9
    default_message = "Configured maximum server load reached"


class NewSessionsTemporarilyBlockedError(ProtocolError):
    code = 10
    default_message = "Creation of new sessions is temporarily blocked"


class StreamingNotAvailableError(ProtocolError):
    """Streaming is not available under the current license terms."""

    code = 11
    default_message = "Streaming is not available"


class TableModificationNotAllowedError(ProtocolError):
    """The table is configured for unfiltered dispatching and can't be modified."""

    code = 13
    default_message = "Table modification not allowed"


class InvalidDataAdapterError(ProtocolError):
    code = 17
    default_message = "Invalid data adapter"


class UnknownTableError(ProtocolError):
    code = 19
    default_message = "Unknown table"


class InvalidItemError(ProtocolError):
    code = 21
    default_message = "Invalid item"


class InvalidItemForFieldsError(ProtocolError):
    code = 22
    default_message = "Invalid item for fields"


class InvalidFieldError(ProtocolError):
    code = 23
    default_message = "Invalid field"


class UnsupportedModeForItemError(ProtocolError):
    code = 24
    default_message = "Unsupported mode for item"


class InvalidSelectorError(ProtocolError):
    code = 25
    default_message = "Invalid selector"


class UnfilteredDispatchingNotAllowedForItemError(ProtocolError):
    code = 26
    default_message = "Unfiltered dispatching not allowed for item"


class UnfilteredDispatchingNotSupportedForItemError(ProtocolError):
    code = 27
    default_message = "Unfiltered dispatching not supported for item"


class UnfilteredDispatchingNotAllowedByLicenseError(ProtocolError):
    code = 28
    default_message = "Unfiltered dispatching not allowed by license"


class RawModeNotAllowedByLicenseError(ProtocolError):
    code = 29
    default_message = "RAW mode not allowed by license"


class SubscriptionsNotAllowedByLicenseError(ProtocolError):
    code = 30
    default_message = "Subscriptions not allowed by license"


class InvalidProgressiveNumberError(ProtocolError):
    """The progressive number of a custom message was invalid."""

    code = 32
    default_message = "Invalid progressive number"


class IllegalMessageError(ProtocolError):
    code = 34
    default_message = "Illegal message"


class MessagesSkippedByTimeoutError(ProtocolError):
    """One or more messages in a sequence were skipped after waiting too long for a predecessor."""

    code = 39
    default_message = "Messages skipped by timeout"


class ClientVersionNotSupportedError(ProtocolError):
    code = 60
    default_message = "Client version not supported"


class MetadataAdapterError(ProtocolError):
    """Raised when the server's metadata adapter rejects a request with a custom error."""

    def __init__(
        self,
        message: str,
        code: int,
        *,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.adapter_error_message = message
        self.adapter_error_code = int(code)
        super().__init__(message, self.adapter_error_code, component=component, details=details)


class SyncError(LightstreamerError):
    """The session ID is no longer valid; a new session must be created."""

    def __init__(self) -> None:
        super().__init__("Session sync error, a new session is required")


class SessionEndError(LightstreamerError):
    """Raised when the server terminates the session."""

    def __init__(self, cause_code: Optional[int] = None) -> None:
        self.cause_code = cause_code
        message = "Session terminated by server"
        if cause_code is not None:
            message = f"{message}, cause code: {cause_code}"
        super().__init__(message)


class NotConnectedError(LightstreamerError):
    """Raised when an operation needs a connected session."""

    def __init__(self, operation: Optional[str] = None) -> None:
        details = {"operation": operation} if operation else None
        super().__init__("Session is not connected", component="Session", details=details)


class RequestError(LightstreamerError):
    """Raised when an HTTP request fails at the transport level or with an unexpected status."""

    def __init__(
        self,
        message: str,
        http_code: Optional[int] = None,
        *,
        url: Optional[str] = None,
        component: Optional[str] = None,
    ) -> None:
        self.request_error_message = message
        self.http_code = http_code
        details: dict[str, Any] = {}
        if url:
            details["url"] = url
        text = f"{http_code}: {message}" if http_code else message
        super().__init__(text, component=component, details=details)


class ConfigurationError(LightstreamerError):
    """Raised when configuration is invalid."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.field = field
        self.value = value
        details = details or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, component=component, details=details)


class SubscriptionError(LightstreamerError):
    """Raised on invalid subscription input, such as an unknown item name."""

    def __init__(
        self,
        message: str,
        *,
        subscription_id: Optional[int] = None,
        item: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.subscription_id = subscription_id
        self.item = item
        details = details or {}
        if subscription_id is not None:
            details["subscription_id"] = subscription_id
        if item:
            details["item"] = item
        super().__init__(message, component=component, details=details)


ERROR_CODE_TO_CLASS: dict[int, type[ProtocolError]] = {
    1: AuthenticationError,
    2: UnknownAdapterSetError,
    3: IncompatibleSessionError,
    7: LicensedMaximumSessionsReachedError,
    8: ConfiguredMaximumSessionsReachedError,
    9: ConfiguredMaximumServerLoadReachedError,
    10: NewSessionsTemporarilyBlockedError,
    11: StreamingNotAvailableError,
    13: TableModificationNotAllowedError,
    17: InvalidDataAdapterError,
    19: UnknownTableError,
    21: InvalidItemError,
    22: InvalidItemForFieldsError,
    23: InvalidFieldError,
    24: UnsupportedModeForItemError,
    25: InvalidSelectorError,
    26: UnfilteredDispatchingNotAllowedForItemError,
    27: UnfilteredDispatchingNotSupportedForItemError,
    28: UnfilteredDispatchingNotAllowedByLicenseError,
    29: RawModeNotAllowedByLicenseError,
    30: SubscriptionsNotAllowedByLicenseError,
    32: InvalidProgressiveNumberError,
    33: InvalidProgressiveNumberError,
    34: IllegalMessageError,
    39: MessagesSkippedByTimeoutError,
    60: ClientVersionNotSupportedError,
}


def build_error(message: Optional[str], code: Any) -> ProtocolError:
    """
    Build the error instance for a Lightstreamer error message and numeric code.

    Known codes map to their specific class (the server's message text is kept as the
    error message when present). Codes of zero or below are metadata adapter errors.
    Anything else becomes a generic ProtocolError formatted as "<code>: <message>".
    """
    try:
        numeric_code = int(str(code).strip())
    except (TypeError, ValueError):
        return ProtocolError(f"{code}: {message}")

    error_class = ERROR_CODE_TO_CLASS.get(numeric_code)
    if error_class is not None:
        return error_class(message or None, numeric_code)
    if numeric_code <= 0:
        return MetadataAdapterError(message or "", numeric_code)
    return ProtocolError(f"{numeric_code}: {message}", numeric_code)
