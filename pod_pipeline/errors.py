from __future__ import annotations


class PodPipelineError(RuntimeError):
    def __init__(self, *, message: str, status_code: int = 500) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class InvalidRequestError(PodPipelineError):
    def __init__(self, *, message: str) -> None:
        super().__init__(message=message, status_code=400)


class DesignNotFoundError(PodPipelineError):
    def __init__(self, *, design_id: str) -> None:
        super().__init__(message=f"Design not found: {design_id}", status_code=404)
        self.design_id = design_id


class DesignStateError(PodPipelineError):
    def __init__(self, *, message: str) -> None:
        super().__init__(message=message, status_code=409)


class FinalizeInProgressError(DesignStateError):
    def __init__(self, *, design_id: str) -> None:
        super().__init__(message=f"Design {design_id} is already being finalized")
        self.design_id = design_id


class RevisionTimeoutError(PodPipelineError):
    def __init__(self, *, message: str) -> None:
        super().__init__(message=message, status_code=504)
