"""Error taxonomy for the delivery pipeline.

Learn: Each class maps to one decision the pipeline makes:

- TransientBrokerError   → log and move on; the broker redelivers
- MalformedMessageError  → negative-ack once, never reprocess the same bytes
- NoLiveSessionError     → not a failure; route to the offline buffer
- SessionPushError       → isolated to one session; siblings unaffected
- DispatchFailed         → nothing delivered, nothing buffered; nack
- RegistryInvariantViolation → internal bug; never caught

RegistryInvariantViolation subclasses AssertionError on purpose so that
`except RelayError` blocks can't swallow it.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for expected pipeline errors."""


class TransientBrokerError(RelayError):
    """Network or timeout failure talking to the broker."""


class MalformedMessageError(RelayError):
    """A queue message body could not be parsed into a CompletionEvent."""


class NoLiveSessionError(RelayError):
    """A subject has no live session at dispatch time."""

    def __init__(self, subject_id: str):
        super().__init__(f"No live session for subject {subject_id}")
        self.subject_id = subject_id


class SessionPushError(RelayError):
    """A write to one session failed or timed out."""

    def __init__(self, session_id: str, reason: str, cause: Optional[BaseException] = None):
        super().__init__(f"Push to session {session_id} failed: {reason}")
        self.session_id = session_id
        self.reason = reason
        self.__cause__ = cause


class DispatchFailed(RelayError):
    """Zero sessions received the notification and it was not buffered."""


class AuthenticationError(RelayError):
    """Credential presented on connect was missing or invalid."""


class RegistryInvariantViolation(AssertionError):
    """The registry index and session table disagree."""
