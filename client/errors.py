from __future__ import annotations


class CallError(Exception):
    """Base class for failures raised by the call client."""


class DeviceUnavailable(CallError):
    """Required capture hardware is missing or could not be opened."""


class CandidateApplicationFailed(CallError):
    """A single remote candidate was rejected by the peer connection."""


class SignalingUnavailable(CallError, ConnectionError):
    """The relay connection is down, so negotiation cannot progress."""


class StaleNegotiationResult(CallError):
    """An async step finished after the call it belonged to was torn down."""


class NegotiationFailed(CallError):
    """A description could not be created or applied for the current call."""
