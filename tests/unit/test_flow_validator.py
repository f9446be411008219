# tests/unit/test_flow_validator.py

from agentflow.models.flow import AgentFlowDefinition, AgentFlowStep, MessageContent, StepOption
from agentflow.workflows.flow_validator import validate_flow_definition


def definition(*steps):
    return AgentFlowDefinition(agent_id="a1", steps={s.step: s for s in steps}, total_steps=len(steps))


def step(key, text="Prompt", **fields):
    return AgentFlowStep(agent_id="a1", step=key, message_content=MessageContent(text=text), **fields)


def test_valid_flow_scores_100():
    report = validate_flow_definition(definition(
        step("step0", next_possible_steps=["step1"]),
        step("step1", next_possible_steps=["stop"]),
    ))
    assert report["is_valid"] is True
    assert report["issues"] == []
    assert report["reachable_steps"] == 2
    assert report["flow_health"]["validation_score"] == 100
    assert report["flow_health"]["all_steps_reachable"] is True


def test_missing_entry_and_dangling_reference():
    report = validate_flow_definition(definition(step("step1", next_possible_steps=["step9"])))
    assert report["is_valid"] is False
    assert "Missing required starting step: step0" in report["issues"]
    assert "Step step1: References non-existent step 'step9'" in report["issues"]
    assert report["flow_health"]["has_start_step"] is False


def test_bad_regex_and_missing_content():
    report = validate_flow_definition(definition(
        step("step0", text=None, regex="([oops", next_possible_steps=["stop"]),
    ))
    assert "Step step0: Missing message content" in report["issues"]
    assert "Step step0: Invalid regex pattern '([oops'" in report["issues"]
    assert report["flow_health"]["validation_score"] == 60


def test_interactive_step_checks_options():
    report = validate_flow_definition(definition(
        step("step0", type_of_message="quick_reply", next_possible_steps=["step1"]),
        AgentFlowStep(
            agent_id="a1",
            step="step1",
            type_of_message="buttons",
            message_content=MessageContent(text="Pick", options=[StepOption(title=None), StepOption(title="B")]),
            next_possible_steps=["stop"],
        ),
    ))
    assert "Step step0: Interactive message missing options" in report["issues"]
    assert "Step step1: Option 0 missing title" in report["issues"]
    assert "Step step1: Option 1 missing postbackText" in report["warnings"]


def test_unreachable_and_terminal_steps_are_warnings():
    report = validate_flow_definition(definition(
        step("step0", next_possible_steps=["stop"]),
        step("orphan"),
    ))
    assert report["is_valid"] is True
    assert "Step orphan is not reachable from the flow" in report["warnings"]
    assert "Step orphan: No next steps defined (this will end the flow)" in report["warnings"]
    assert report["flow_health"]["validation_score"] == 90
