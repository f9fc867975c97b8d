"""
Errors raised while setting up or running a call session.
"""


class CallError(Exception):
    """Base exception for call session errors."""

    default_message = "The call failed."

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class MediaAccessError(CallError):
    """Raised when the camera/microphone is denied, missing or busy."""
    default_message = "Failed to access camera/microphone."


class OfferCreationError(CallError):
    """Raised when the peer connection cannot create an offer."""
    default_message = "Failed to create the call offer."


class DescriptionApplyError(CallError):
    """Raised when a local or remote session description is rejected."""
    default_message = "Failed to apply the session description."


class SignalingSendError(CallError):
    """Raised when the signaling transport refuses a message."""
    default_message = "Failed to reach the signaling server."


class IceNegotiationFailure(CallError):
    """Raised when connectivity checks fail permanently."""
    default_message = "Could not establish a connection with the peer."


class AlreadyInCallError(CallError):
    """Raised when a call is started while another one is active."""
    default_message = "A call is already in progress."
