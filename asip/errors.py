"""Error taxonomy for the ASIP pipeline.

Every failure the sequencer can persist onto a run derives from AsipError:
- configuration and resource errors are detected before any step runs
- research errors come from the long-running research capability
- extraction errors come from the validation engine and are never retried
- ConcurrentRunUpdateError signals that another invocation owns the run
"""

from typing import Any


class AsipError(Exception):
    """Base error with a machine-readable code and optional details."""

    code = "ASIP_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}


class ConfigurationError(AsipError):
    code = "CONFIGURATION_ERROR"


class ResourceNotFoundError(AsipError):
    code = "RESOURCE_NOT_FOUND"

    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            f"{resource_type} not found: {resource_id}",
            details={"resource_type": resource_type, "resource_id": resource_id},
        )


class RunNotFoundError(ResourceNotFoundError):
    code = "RUN_NOT_FOUND"

    def __init__(self, run_id: str):
        super().__init__("Run", run_id)


class HypothesisNotFoundError(ResourceNotFoundError):
    code = "HYPOTHESIS_NOT_FOUND"

    def __init__(self, hypothesis_id: str):
        super().__init__("Hypothesis", hypothesis_id)


class InvalidRunStateError(AsipError):
    code = "INVALID_RUN_STATE"

    def __init__(self, run_id: str, status: str, allowed: list[str]):
        super().__init__(
            f"Run {run_id} is {status}; expected one of: {', '.join(allowed)}",
            details={"run_id": run_id, "status": status, "allowed": allowed},
        )


class DeepResearchError(AsipError):
    code = "DEEP_RESEARCH_ERROR"


class ResearchFailedError(DeepResearchError):
    code = "RESEARCH_FAILED"


class ResearchTimeoutError(DeepResearchError):
    code = "RESEARCH_TIMEOUT"

    def __init__(self, interaction_id: str, timeout_seconds: float):
        super().__init__(
            f"Deep research {interaction_id} did not finish within "
            f"{int(timeout_seconds // 60)} minutes",
            details={"interaction_id": interaction_id, "timeout_seconds": timeout_seconds},
        )


class ResearchInsufficientError(AsipError):
    code = "RESEARCH_INSUFFICIENT"

    def __init__(self, expected: int, actual: int, retries: int):
        plural = "retry" if retries == 1 else "retries"
        super().__init__(
            f"Research produced too few hypotheses: expected {expected} hypotheses "
            f"but only {actual} were produced after {retries} {plural}",
            details={"expected": expected, "actual": actual, "retries": retries},
        )


class ExtractionParseError(AsipError):
    code = "EXTRACTION_PARSE_ERROR"


class ContentGenerationError(AsipError):
    code = "CONTENT_GENERATION_ERROR"


class ConcurrentRunUpdateError(AsipError):
    code = "CONCURRENT_RUN_UPDATE"

    def __init__(self, run_id: str, expected: dict[str, Any]):
        super().__init__(
            f"Run {run_id} was advanced by another invocation",
            details={"run_id": run_id, "expected": expected},
        )


def get_error_message(error: BaseException) -> str:
    """Human-readable message suitable for persisting onto a run."""
    if isinstance(error, AsipError):
        return error.message
    message = str(error)
    return message or error.__class__.__name__
