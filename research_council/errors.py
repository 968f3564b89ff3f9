"""Error taxonomy shared by the execution layer, negotiation and synthesis."""

from research_council.models import ErrorKind


class CouncilError(Exception):
    """Base for every error a public entry point may raise."""


class NoCredentialsError(CouncilError):
    """Raised when the credential pool is empty."""

    def __init__(self) -> None:
        super().__init__("No API keys provided. Set at least one key in .env.")


class TransientError(CouncilError):
    """A classified, retryable failure of a single attempt.

    Transports raise it; the executor absorbs it. Only the aggregate
    AllCredentialsExhausted leaves the execution layer.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        retry_after: float | None = None,
        status: int | None = None,
    ) -> None:
        self.kind = kind
        self.message = message
        self.retry_after = retry_after
        self.status = status
        super().__init__(f"{kind.value}: {message}")


class CancelledByUser(CouncilError):
    """The caller's cancellation signal fired. Never retried."""

    kind = ErrorKind.USER_CANCELLED

    def __init__(self, where: str = "request") -> None:
        self.where = where
        super().__init__(f"{where} was cancelled by the user")


class AllCredentialsExhausted(CouncilError):
    """Every attempt in the budget failed."""

    def __init__(self, operation: str, attempts: int, last_error: TransientError | None) -> None:
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        last = str(last_error) if last_error else "no attempt was made"
        super().__init__(
            f"All API keys failed for '{operation}' after {attempts} attempt(s). Last error: {last}"
        )


class NoUsableOutput(CouncilError):
    """A stage produced no usable content even after the executor's retries."""

    def __init__(self, stage: str, detail: str) -> None:
        self.stage = stage
        self.detail = detail
        super().__init__(f"[{stage}] {detail}")
