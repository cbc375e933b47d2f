"""Domain-specific errors for heatmatctl."""

from __future__ import annotations

import re

FATAL_ATT_ERROR = 0x0E

_ATT_CODE_RE = re.compile(r"\b0x([0-9a-f]{2})\b", re.IGNORECASE)


class HeatmatError(Exception):
    """Base error for heatmatctl."""


class ConfigurationError(HeatmatError):
    """Raised when the device configuration is missing or malformed."""


class VariantValidationError(HeatmatError):
    """Raised when a device variant file does not conform to schema or semantics."""


class TransportError(HeatmatError):
    """Base transport error."""

    def __init__(self, message: str, *, att_error: int | None = None) -> None:
        super().__init__(message)
        self.att_error = att_error


class DeviceDiscoveryError(TransportError):
    """Raised when the adapter cannot run discovery."""


class TransportConnectError(TransportError):
    """Raised on GATT connect failures."""


class TransportSendError(TransportError):
    """Raised when writing an attribute fails."""


class TransportReadError(TransportError):
    """Raised when reading an attribute fails."""


class FatalAttributeError(TransportSendError):
    """Raised when the link reports an attribute-protocol error that cannot be retried."""


class ProtocolError(HeatmatError):
    """Base error for malformed packets."""


class CorruptedPacketError(ProtocolError):
    """Raised when a packet is too short or fails its checksum."""


class CharacteristicsMissingError(HeatmatError):
    """Raised when the mandatory characteristics cannot be resolved."""


class InvalidTransitionError(HeatmatError):
    """Raised when a state change is not part of the connection lifecycle."""


class CommunicationError(HeatmatError):
    """Raised to the consumer when a request could not reach the device."""


class NotConnectedError(CommunicationError):
    """Raised when a command is issued while the session is not ready."""


def attribute_error_code(exc: BaseException) -> int | None:
    """Extract the ATT error code from a transport error, if one is reported."""
    code = getattr(exc, "att_error", None)
    if code is not None:
        return code
    match = _ATT_CODE_RE.search(str(exc))
    if match is None:
        return None
    return int(match.group(1), 16)


def is_fatal_attribute_error(exc: BaseException) -> bool:
    if isinstance(exc, FatalAttributeError):
        return True
    return attribute_error_code(exc) == FATAL_ATT_ERROR
