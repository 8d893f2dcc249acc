"""Bounded regenerate-and-revalidate combinator for the research step."""

import logging
from collections.abc import Awaitable, Callable

from asip.contracts.schemas import ValidationAction, ValidationResult
from asip.errors import ExtractionParseError, ResearchInsufficientError

logger = logging.getLogger(__name__)

ADDITIONAL_SEPARATOR = "\n\n[Additional hypotheses]\n"

Validate = Callable[[str, int], Awaitable[ValidationResult]]
Regenerate = Callable[[int, str], Awaitable[str]]


async def validate_with_retry(
    report: str,
    expected: int,
    validate: Validate,
    regenerate: Regenerate,
    max_retries: int = 1,
) -> tuple[str, ValidationResult]:
    """Validate a report, regenerating the missing count at most max_retries times.

    Args:
        report: Research report text
        expected: Required number of hypotheses
        validate: Extraction/validation callable
        regenerate: Called with (missing_count, report), returns additional text
        max_retries: Retry budget

    Returns:
        (final report, validation result with action continue)

    Raises:
        ExtractionParseError: the extraction could not be parsed
        ResearchInsufficientError: still short after the retry budget
    """
    result = await validate(report, expected)
    retries = 0

    while True:
        if result.action == ValidationAction.ERROR:
            raise ExtractionParseError(
                "; ".join(result.errors) or "Failed to extract hypotheses",
                details={"retries": retries},
            )
        if result.action == ValidationAction.CONTINUE:
            result.retried = retries > 0
            return report, result
        if retries >= max_retries:
            raise ResearchInsufficientError(expected, result.count, retries)

        missing = expected - result.count
        retries += 1
        logger.info(
            "Too few hypotheses (%d/%d); regenerating %d more (attempt %d/%d)",
            result.count,
            expected,
            missing,
            retries,
            max_retries,
        )
        additional = await regenerate(missing, report)
        report = report + ADDITIONAL_SEPARATOR + additional
        result = await validate(report, expected)
