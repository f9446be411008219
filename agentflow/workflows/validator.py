# /agentflow/workflows/validator.py

"""
Pure validation of a user's reply against the rules of one flow step.

All functions are:
- Pure (no side effects)
- Deterministic (same input = same output)
- No database access
- No AI calls
- No logging
- No state mutation

The caller decides what to do with an invalid result (retry prompt or AI
takeover); nothing here raises for bad input or bad configuration.
"""

import re
from enum import Enum
from typing import Optional, Any, TypedDict

from agentflow.config import strings
from agentflow.models.flow import AgentFlowStep, StepOption


class ValidationKind(str, Enum):
    OPTION_MATCH = "option_match"
    OPTION_VALIDATION_FAILED = "option_validation_failed"
    REGEX_MATCH = "regex_match"
    REGEX_VALIDATION_FAILED = "regex_validation_failed"
    REGEX_ERROR = "regex_error"
    REQUIRED_FIELD_EMPTY = "required_field_empty"
    TEXT_INPUT = "text_input"
    DEFAULT = "default"


class ValidationResult(TypedDict):
    """Result of validating one reply."""
    is_valid: bool
    captured_value: Optional[Any]
    next_step: Optional[str]
    kind: ValidationKind
    error: Optional[str]
    matched_option: Optional[StepOption]


def _result(
    is_valid: bool,
    kind: ValidationKind,
    captured_value: Any = None,
    next_step: Optional[str] = None,
    error: Optional[str] = None,
    matched_option: Optional[StepOption] = None,
) -> ValidationResult:
    return {
        "is_valid": is_valid,
        "captured_value": captured_value,
        "next_step": next_step,
        "kind": kind,
        "error": error,
        "matched_option": matched_option,
    }


def extract_next_step_from_postback(postback_text: Optional[str]) -> Optional[str]:
    """
    Extract the target step from a postback token.

    Args:
        postback_text: Token in the form "<nextStep>/<freeform>"

    Returns:
        The first path segment, or None for an empty/non-string token
    """
    if not postback_text or not isinstance(postback_text, str):
        return None
    head = postback_text.split("/")[0]
    return head or None


def get_regex_error_message(pattern: str) -> str:
    """Friendly rejection text for a known pattern, generic text otherwise."""
    return strings.REGEX_ERROR_MESSAGES.get(pattern, strings.VALIDATION_FORMAT)


def _match_option(step: AgentFlowStep, text: str, postback: Optional[str]) -> Optional[StepOption]:
    normalized = text.strip().lower()
    for option in step.interactive_options:
        if option.title and option.title.strip().lower() == normalized:
            return option
        if option.postback_text and option.postback_text in (text, postback):
            return option
    return None


def validate_step_response(
    step: AgentFlowStep,
    text: Optional[str],
    postback: Optional[str] = None,
) -> ValidationResult:
    """
    Validate a reply against the step's option set, regex or required flag.

    Args:
        step: The step awaiting input
        text: The user's text (may be empty)
        postback: Reply id of an interactive selection, if the provider sent one

    Returns:
        ValidationResult. Interactive steps match the first option whose title
        equals the text (case-insensitive, trimmed) or whose postback token equals
        the text/postback. Free-text steps check the regex when configured.
        A malformed regex yields kind REGEX_ERROR instead of raising.
    """
    text = text or ""

    if step.kind.is_interactive:
        option = _match_option(step, text, postback)
        if option is None:
            return _result(False, ValidationKind.OPTION_VALIDATION_FAILED, error=strings.VALIDATION_OPTION)
        return _result(
            True,
            ValidationKind.OPTION_MATCH,
            captured_value=option.title,
            next_step=extract_next_step_from_postback(option.postback_text),
            matched_option=option,
        )

    if step.regex:
        try:
            matched = re.search(step.regex, text) is not None
        except re.error:
            return _result(False, ValidationKind.REGEX_ERROR, error=strings.VALIDATION_BAD_PATTERN)
        if matched:
            return _result(True, ValidationKind.REGEX_MATCH, captured_value=text)
        if step.mandatory:
            return _result(
                False,
                ValidationKind.REGEX_VALIDATION_FAILED,
                error=get_regex_error_message(step.regex),
            )
        # Optional step with a non-matching answer: accepted as-is.
        return _result(
            True,
            ValidationKind.DEFAULT,
            captured_value=text,
            next_step=step.next_possible_steps[0] if step.next_possible_steps else None,
        )

    if step.mandatory and not text.strip():
        return _result(False, ValidationKind.REQUIRED_FIELD_EMPTY, error=strings.VALIDATION_REQUIRED)

    return _result(True, ValidationKind.TEXT_INPUT, captured_value=text)
