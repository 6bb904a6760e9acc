"""Error taxonomy for the signaling service."""

from __future__ import annotations


class SignalingError(Exception):
    """Base class for errors reported back to a signaling client."""


class InvalidCode(SignalingError):
    def __init__(self, code: object):
        self.code = code
        super().__init__(f"Invalid access code format: {code}. Must be 6 digits")


class RoomFull(SignalingError):
    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Room {code} is full (maximum 2 clients)")


class InvalidMessage(SignalingError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid message: {reason}")


class NotConfigured(SignalingError):
    """Raised when TURN credentials are requested without a shared secret."""

    def __init__(self) -> None:
        super().__init__("TURN_SECRET not configured")


class ConfigurationError(Exception):
    """Raised at startup when the environment does not validate."""


__all__ = [
    "SignalingError",
    "InvalidCode",
    "RoomFull",
    "InvalidMessage",
    "NotConfigured",
    "ConfigurationError",
]
