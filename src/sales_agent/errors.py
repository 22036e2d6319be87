"""
Error kinds raised by the call orchestration core and its adapters.

Adapters convert vendor SDK failures into these; the orchestrator and the HTTP
layer decide how each one surfaces (in-call fallback vs structured response).
"""


class SalesAgentError(Exception):
    """Base class for all agent errors."""


class RecognitionError(SalesAgentError):
    """No usable transcript could be produced for the caller's audio."""


class GenerationError(SalesAgentError):
    """The language model call failed or returned nothing usable."""


class SynthesisError(SalesAgentError):
    """The preferred voice could not render the reply."""


class CarrierError(SalesAgentError):
    """Placing, updating or terminating a call with the carrier failed."""

    def __init__(self, message: str, *, code: object = None, more_info: str = "") -> None:
        super().__init__(message)
        self.code = code
        self.more_info = more_info


class NotFoundError(SalesAgentError):
    """An operation referenced a call that is not (or no longer) tracked."""

    def __init__(self, call_id: str, what: str = "Call") -> None:
        super().__init__(f"{what} not found: {call_id}")
        self.call_id = call_id
        self.what = what
