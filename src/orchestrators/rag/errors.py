"""Error taxonomy for the RAG pipeline.

Every error carries two messages: the exception text (logged, may contain
provider detail) and `user_message` (safe to return to the caller).
"""


class PipelineError(Exception):
    user_message = "Search failed. Please try again."

    def __init__(self, message: str, *, user_message: str | None = None):
        super().__init__(message)
        if user_message:
            self.user_message = user_message


class ValidationError(PipelineError):
    """Malformed request; rejected before any I/O."""

    user_message = "The search request is invalid."

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        joined = "; ".join(self.problems) or "invalid request"
        super().__init__(f"Invalid search request: {joined}", user_message=f"Invalid search request: {joined}")


class AuthError(PipelineError):
    """Missing or invalid identity. Never retried, never falls back."""

    user_message = "Authentication required."


class EmbeddingError(PipelineError):
    user_message = "Could not understand the query right now."


class RetrievalError(PipelineError):
    user_message = "Could not fetch search results."


class RerankError(PipelineError):
    """Always recovered inside the re-ranker; never reaches the caller."""


class PipelineTimeoutError(PipelineError):
    user_message = "Search took too long. Please try a simpler query."

    def __init__(self, checkpoint: str, elapsed: float, budget: float):
        self.checkpoint = checkpoint
        self.elapsed = elapsed
        self.budget = budget
        super().__init__(
            f"Budget checkpoint {checkpoint}: {elapsed:.1f}s of {budget:.0f}s used"
        )
