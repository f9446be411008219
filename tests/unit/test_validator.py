# tests/unit/test_validator.py

from agentflow.config import strings
from agentflow.models.flow import AgentFlowStep, ListItem, MessageContent, StepOption
from agentflow.workflows.validator import (
    ValidationKind,
    extract_next_step_from_postback,
    get_regex_error_message,
    validate_step_response,
)

EMAIL_REGEX = r"^[\w\.-]+@[\w\.-]+\.[a-zA-Z]{2,}$"


def text_step(**fields):
    return AgentFlowStep(agent_id="a1", step="step0", message_content=MessageContent(text="Question?"), **fields)


def quick_reply_step():
    return AgentFlowStep(
        agent_id="a1",
        step="step1",
        type_of_message="quick_reply",
        message_content=MessageContent(
            text="Pick one",
            options=[
                StepOption(title="Yes", postback_text="step2/yes"),
                StepOption(title="No", postback_text="stop/no"),
            ],
        ),
    )


class TestPostbackParsing:

    def test_first_segment_is_next_step(self):
        assert extract_next_step_from_postback("step2/yes") == "step2"
        assert extract_next_step_from_postback("stop") == "stop"

    def test_empty_or_non_string_is_none(self):
        assert extract_next_step_from_postback(None) is None
        assert extract_next_step_from_postback("") is None
        assert extract_next_step_from_postback("/orphan") is None
        assert extract_next_step_from_postback(42) is None


class TestRegexMessages:

    def test_known_pattern_gets_friendly_message(self):
        assert get_regex_error_message(EMAIL_REGEX) == "Please enter a valid email address."
        assert get_regex_error_message(r"^[0-9]+$") == "Please enter numbers only."

    def test_unknown_pattern_gets_generic_message(self):
        assert get_regex_error_message(r"^\d{3}$") == strings.VALIDATION_FORMAT


class TestInteractiveSteps:

    def test_title_match_is_case_insensitive_and_trimmed(self):
        result = validate_step_response(quick_reply_step(), "  yes ")
        assert result["is_valid"] is True
        assert result["kind"] == ValidationKind.OPTION_MATCH
        assert result["captured_value"] == "Yes"
        assert result["next_step"] == "step2"

    def test_postback_match(self):
        result = validate_step_response(quick_reply_step(), "", postback="stop/no")
        assert result["is_valid"] is True
        assert result["captured_value"] == "No"
        assert result["next_step"] == "stop"

    def test_postback_typed_as_text_matches(self):
        result = validate_step_response(quick_reply_step(), "step2/yes")
        assert result["matched_option"].title == "Yes"

    def test_no_match_fails_with_option_message(self):
        result = validate_step_response(quick_reply_step(), "maybe")
        assert result["is_valid"] is False
        assert result["kind"] == ValidationKind.OPTION_VALIDATION_FAILED
        assert result["error"] == strings.VALIDATION_OPTION
        assert result["captured_value"] is None

    def test_list_items_supply_options(self):
        step = AgentFlowStep(
            agent_id="a1",
            step="step3",
            type_of_message="list",
            message_content=MessageContent(
                title="Menu",
                body="Choose",
                items=[ListItem(title="Section", options=[StepOption(title="Pizza", postback_text="step4/pizza")])],
            ),
        )
        result = validate_step_response(step, "pizza")
        assert result["is_valid"] is True
        assert result["next_step"] == "step4"


class TestTextSteps:

    def test_regex_match_captures_text(self):
        result = validate_step_response(text_step(regex=EMAIL_REGEX, mandatory=True), "jane@example.com")
        assert result["is_valid"] is True
        assert result["kind"] == ValidationKind.REGEX_MATCH
        assert result["captured_value"] == "jane@example.com"
        assert result["next_step"] is None

    def test_mandatory_regex_failure(self):
        result = validate_step_response(text_step(regex=EMAIL_REGEX, mandatory=True), "not an email")
        assert result["is_valid"] is False
        assert result["kind"] == ValidationKind.REGEX_VALIDATION_FAILED
        assert result["error"] == "Please enter a valid email address."

    def test_optional_regex_failure_is_accepted(self):
        step = text_step(regex=r"^[0-9]+$", next_possible_steps=["step1"])
        result = validate_step_response(step, "abc")
        assert result["is_valid"] is True
        assert result["kind"] == ValidationKind.DEFAULT
        assert result["captured_value"] == "abc"
        assert result["next_step"] == "step1"

    def test_malformed_regex_never_raises(self):
        result = validate_step_response(text_step(regex="([unclosed", mandatory=True), "anything")
        assert result["is_valid"] is False
        assert result["kind"] == ValidationKind.REGEX_ERROR
        assert result["error"] == strings.VALIDATION_BAD_PATTERN

    def test_required_empty(self):
        result = validate_step_response(text_step(mandatory=True), "   ")
        assert result["kind"] == ValidationKind.REQUIRED_FIELD_EMPTY
        assert result["error"] == strings.VALIDATION_REQUIRED

    def test_free_text_accepts_anything(self):
        result = validate_step_response(text_step(), None)
        assert result["is_valid"] is True
        assert result["kind"] == ValidationKind.TEXT_INPUT
        assert result["captured_value"] == ""

    def test_validation_is_deterministic(self):
        step = text_step(regex=EMAIL_REGEX, mandatory=True)
        assert validate_step_response(step, "x@y.io") == validate_step_response(step, "x@y.io")
