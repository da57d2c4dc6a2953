"""Exception types raised across the copilot pipeline."""


class CopilotError(Exception):
    """Base for all pipeline errors."""


class BufferUnderflowError(CopilotError):
    """flush() called before the buffer reached its minimum chunk size."""


class ProviderConnectError(CopilotError):
    """A transcription channel failed to open (or timed out) during connect()."""


class CredentialError(ProviderConnectError):
    """Hosted credential fetch failed or returned no token."""


class RecordingStartError(CopilotError):
    """Recording could not start; the session stayed idle."""


class InvalidTransitionError(CopilotError):
    """Requested session transition is not valid from the current state."""

    def __init__(self, current: str, action: str) -> None:
        super().__init__(f"cannot {action} while {current}")
        self.current = current
        self.action = action


class LLMUnavailableError(CopilotError):
    """LLM credentials missing or text generation disabled."""
