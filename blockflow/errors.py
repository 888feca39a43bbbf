"""
Exception hierarchy for the workflow engine.

Every error carries the originating block id (and the raw token for
reference failures) so callers can pinpoint a failure without re-deriving
execution context.
"""


class BlockflowError(Exception):
    """Base class for all engine errors."""

    recoverable: bool = False

    def __init__(self, message: str, block_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.block_id = block_id

    def to_dict(self) -> dict:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "block_id": self.block_id,
            "recoverable": self.recoverable,
        }


class StructuralError(BlockflowError):
    """Raised when a workflow graph is malformed. Only ever raised at load time."""

    def __init__(
        self,
        message: str,
        block_id: str | None = None,
        edge_id: str | None = None,
    ):
        super().__init__(message, block_id=block_id)
        self.edge_id = edge_id

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["edge_id"] = self.edge_id
        return data


class ReferenceResolutionError(BlockflowError):
    """Raised when a required reference cannot be resolved."""

    recoverable = True

    def __init__(self, token: str, block_id: str, reason: str = ""):
        message = f"Unresolved reference {token} in block '{block_id}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, block_id=block_id)
        self.token = token

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["token"] = self.token
        return data


class BlockExecutionError(BlockflowError):
    """Raised when a dispatched block handler fails."""

    recoverable = True

    def __init__(self, block_id: str, cause: BaseException | str):
        message = str(cause) if not isinstance(cause, BaseException) else _describe(cause)
        super().__init__(message, block_id=block_id)
        self.cause = cause if isinstance(cause, BaseException) else None


class CheckpointNotFoundError(BlockflowError):
    """Raised when a resume is requested for an unknown or expired execution id."""

    def __init__(self, execution_id: str):
        super().__init__(f"No paused execution found for '{execution_id}'")
        self.execution_id = execution_id


class ExecutionCancelledError(BlockflowError):
    """Cooperative cancellation observed at a dispatch boundary."""

    def __init__(self, block_id: str | None = None):
        super().__init__("Workflow execution was cancelled", block_id=block_id)


def _describe(error: BaseException) -> str:
    text = str(error)
    if not text:
        return type(error).__name__
    return text
