"""Extraction and count validation for research reports.

A flash-tier completion turns the free-text report into a JSON list of
hypothesis skeletons. The count against the requested number decides the
action; empty fields are reported but never change it.
"""

import logging
from typing import Any, Protocol

from pydantic import ValidationError

from asip.contracts.schemas import (
    ExtractedHypothesis,
    ModelTier,
    ValidationAction,
    ValidationResult,
)
from asip.contracts.validators import parse_json_response
from asip.prompts.defaults import EXTRACTION_PROMPT, format_prompt

logger = logging.getLogger(__name__)


class CompletionClient(Protocol):
    async def complete_prompt(
        self, prompt: str, tier: ModelTier = ModelTier.PRO, use_search: bool = False
    ) -> str: ...


def _coerce_items(payload: Any) -> list[ExtractedHypothesis]:
    if isinstance(payload, dict) and isinstance(payload.get("hypotheses"), list):
        payload = payload["hypotheses"]
    if not isinstance(payload, list):
        raise ValueError("Extraction did not return a list of hypotheses")

    items = []
    for raw in payload:
        if not isinstance(raw, dict):
            raise ValueError(f"Unexpected hypothesis entry: {raw!r}")
        cleaned = {
            key: "" if raw.get(key) is None else str(raw.get(key))
            for key in ExtractedHypothesis.REQUIRED_FIELDS
        }
        items.append(ExtractedHypothesis(**cleaned))
    return items


def evaluate_extraction(items: list[ExtractedHypothesis], expected: int) -> ValidationResult:
    """Apply the count gate and field checks to already-extracted items."""
    result = ValidationResult(expected=expected, count=len(items))

    if len(items) > expected:
        accepted = items[:expected]
        result.notes.append(
            f"Generated {len(items)} hypotheses; kept the first {expected}"
        )
        result.action = ValidationAction.CONTINUE
    elif len(items) < expected:
        accepted = items
        result.errors.append(
            f"Too few hypotheses (expected {expected}, got {len(items)})"
        )
        result.action = ValidationAction.RETRY
    else:
        accepted = items
        result.action = ValidationAction.CONTINUE

    result.extracted = accepted
    result.count = len(accepted)

    field_errors = []
    for i, item in enumerate(accepted, start=1):
        for name in item.missing_fields():
            field_errors.append(f"Hypothesis {i}: missing {name}")
    result.errors.extend(field_errors)

    result.is_valid = result.action == ValidationAction.CONTINUE and not field_errors
    return result


class HypothesisExtractor:
    """Runs the extraction call and validates its output."""

    def __init__(self, client: CompletionClient):
        self.client = client

    async def extract_and_validate(
        self, report: str, expected: int, run_id: str | None = None
    ) -> ValidationResult:
        prompt = format_prompt(EXTRACTION_PROMPT, REPORT=report)
        response = await self.client.complete_prompt(prompt, ModelTier.FLASH)

        try:
            items = _coerce_items(parse_json_response(response))
        except (ValueError, ValidationError) as e:
            logger.warning("[Run %s] Hypothesis extraction failed: %s", run_id, e)
            return ValidationResult(
                expected=expected,
                errors=[f"Failed to extract hypotheses: {e}"],
                action=ValidationAction.ERROR,
            )

        result = evaluate_extraction(items, expected)
        logger.info(
            "[Run %s] Extracted %d hypotheses (expected %d): %s",
            run_id,
            len(items),
            expected,
            result.action.value,
        )
        return result
