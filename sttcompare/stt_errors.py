"""
Error taxonomy shared by capture, sessions and backend adapters.

All of them are RuntimeError subclasses, so callers catching RuntimeError
still see them.

A forced finalization after the session deadline is not an error: it is
reported as ``FinishReason.TIMEOUT_EXCEEDED`` on the session.
"""


class SttError(RuntimeError):
    """Base class for errors reported through a session's error listeners."""


class CaptureError(SttError):
    """Audio capture device/source is unavailable or failed while recording."""


class TransportError(SttError):
    """Sending audio to, or receiving results from, a backend failed."""


class ProtocolError(SttError):
    """Backend keeps sending payloads we cannot interpret."""
