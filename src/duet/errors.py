from __future__ import annotations


class DuetError(Exception):
    """Base class for every error raised by duet."""


class ProtocolError(DuetError):
    pass


class DecryptionError(DuetError):
    """Raised when an envelope cannot be opened with the current key.

    Always a soft failure: stale keys show up naturally while peers race
    through a reconnect, so callers log and drop the frame.
    """


class HandshakeError(DuetError):
    pass


class HandshakeTimeoutError(HandshakeError):
    pass


class NotPairedError(DuetError):
    pass


class TurnTimeoutError(DuetError):
    pass


class BackendError(DuetError):
    pass


class PairingError(DuetError):
    pass


class ConfigError(DuetError):
    pass


_USER_MESSAGES = {
    HandshakeTimeoutError: "Pairing failed. Check that the server is running and scan the code again.",
    HandshakeError: "Pairing failed.",
    NotPairedError: "Not paired with a server yet.",
    TurnTimeoutError: "The response timed out.",
    DecryptionError: "A message could not be decrypted.",
    BackendError: "The command failed to run.",
    PairingError: "That pairing code is not valid.",
    ProtocolError: "Lost connection to the server.",
    ConfigError: "The configuration is invalid.",
}


def user_message(exc: BaseException) -> str:
    """Plain sentence suitable for speaking or displaying to the user."""
    for cls in type(exc).__mro__:
        if cls in _USER_MESSAGES:
            return _USER_MESSAGES[cls]
    return "Something went wrong."
