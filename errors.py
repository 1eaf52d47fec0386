from typing import Optional


class P2PError(Exception):
    pass


class MalformedMessage(P2PError, ValueError):
    """Raised when a datagram does not decode into a valid envelope."""
    pass


class TransportError(P2PError):
    """Raised when the shared datagram socket can no longer send."""
    pass


class RegistrationTimeout(P2PError):
    """Raised when the tracker never acknowledged our registration."""

    def __init__(self, attempts: int):
        super().__init__(f"Couldn't connect to the tracker after {attempts} tries.")
        self.attempts = attempts


class LookupFailure(P2PError):
    """Raised when a resource or its owner cannot be resolved."""

    def __init__(self, message: str, file_name: Optional[str] = None, content_hash: Optional[str] = None):
        super().__init__(message)
        self.file_name = file_name
        self.content_hash = content_hash


class IntegrityMismatch(P2PError):
    """
    A reassembled file whose hash differs from the advertised one.
    Reported to the user, never raised across the event loop.
    """

    def __init__(self, file_name: str, expected: str, actual: str):
        super().__init__(f"{file_name}: expected hash {expected}, got {actual}")
        self.file_name = file_name
        self.expected = expected
        self.actual = actual


class TransferAbandoned(P2PError):
    """Raised when a transfer stalls past its retry budget or the owner refuses it."""

    def __init__(self, message: str, peer: Optional[tuple] = None, content_hash: Optional[str] = None):
        super().__init__(message)
        self.peer = peer
        self.content_hash = content_hash
