from __future__ import annotations

# runlog record types for the failure taxonomy
LEG_DOWN = "leg_down"
LEG_CONNECT_FAILED = "leg_connect_failed"
UPSTREAM_MALFORMED = "upstream_malformed"
WIRE_MALFORMED = "wire_malformed"
FORWARD_FAILED = "forward_failed"
FORWARD_DROP = "forward_drop"
SETUP_FATAL = "setup_fatal"
PEER_REJECTED = "peer_rejected"

# forward_drop reasons
DROP_RETRY_FAILED = "retry_failed"
DROP_LEG_UNAVAILABLE = "leg_unavailable"

WARNING_RECORD_TYPES = frozenset(
    {
        LEG_DOWN,
        LEG_CONNECT_FAILED,
        UPSTREAM_MALFORMED,
        WIRE_MALFORMED,
        FORWARD_FAILED,
        FORWARD_DROP,
        SETUP_FATAL,
        PEER_REJECTED,
    }
)


class FeedLatencyError(Exception):
    pass


class SetupError(FeedLatencyError):
    """Session cannot start (bind/listen failure, invalid address). Never retried."""


class MalformedMessage(FeedLatencyError, ValueError):
    def __init__(self, message: str, *, reason: str, sample: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.sample = sample


class UpstreamDecodeError(MalformedMessage):
    pass


class EnvelopeDecodeError(MalformedMessage):
    pass


class ForwardDropped(FeedLatencyError):
    def __init__(self, sequence_id: int, reason: str) -> None:
        super().__init__(f"sequence_id={sequence_id} dropped: {reason}")
        self.sequence_id = sequence_id
        self.reason = reason
