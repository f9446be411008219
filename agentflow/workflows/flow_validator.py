# /agentflow/workflows/flow_validator.py

"""
Static checks over an authored flow graph.

Authoring defects (missing step0, dangling next-step references, bad regex,
interactive steps without options) are reported here so they never have to be
discovered mid-conversation. Pure: takes a flow definition, returns a report.
"""

import re
from typing import Dict, List, Set, TypedDict

from agentflow.models.flow import AgentFlowDefinition, AgentFlowStep, ENTRY_STEP, STOP_STEP


class FlowHealth(TypedDict):
    has_start_step: bool
    has_end_steps: bool
    all_steps_reachable: bool
    validation_score: int


class FlowValidationReport(TypedDict):
    agent_id: str
    is_valid: bool
    issues: List[str]
    warnings: List[str]
    total_steps: int
    reachable_steps: int
    flow_health: FlowHealth


def _has_message_text(step: AgentFlowStep) -> bool:
    content = step.message_content
    # List steps carry their text in the body.
    return bool(content.text or content.content or content.body)


def _check_step(key: str, step: AgentFlowStep, steps: Dict[str, AgentFlowStep], issues: List[str], warnings: List[str]):
    if not _has_message_text(step):
        issues.append(f"Step {key}: Missing message content")

    if step.next_possible_steps:
        for next_step in step.next_possible_steps:
            if next_step != STOP_STEP and next_step not in steps:
                issues.append(f"Step {key}: References non-existent step '{next_step}'")
    elif key != ENTRY_STEP:
        warnings.append(f"Step {key}: No next steps defined (this will end the flow)")

    if step.regex:
        try:
            re.compile(step.regex)
        except re.error:
            issues.append(f"Step {key}: Invalid regex pattern '{step.regex}'")

    if step.kind.is_interactive:
        options = step.interactive_options
        if not options:
            issues.append(f"Step {key}: Interactive message missing options")
        for index, option in enumerate(options):
            if not option.title:
                issues.append(f"Step {key}: Option {index} missing title")
            if not option.postback_text:
                warnings.append(f"Step {key}: Option {index} missing postbackText")


def _reachable_from_entry(steps: Dict[str, AgentFlowStep]) -> Set[str]:
    reachable = {ENTRY_STEP}
    to_process = [ENTRY_STEP]
    while to_process:
        step = steps.get(to_process.pop())
        if not step:
            continue
        for next_step in step.next_possible_steps:
            if next_step != STOP_STEP and next_step not in reachable:
                reachable.add(next_step)
                to_process.append(next_step)
    return reachable


def validate_flow_definition(definition: AgentFlowDefinition) -> FlowValidationReport:
    """
    Validate an agent's flow graph.

    Issues make the flow invalid; warnings only lower the score.
    validation_score = max(0, 100 - 20 * issues - 5 * warnings).
    """
    steps = definition.steps
    issues: List[str] = []
    warnings: List[str] = []

    if ENTRY_STEP not in steps:
        issues.append(f"Missing required starting step: {ENTRY_STEP}")

    for key, step in steps.items():
        _check_step(key, step, steps, issues, warnings)

    reachable = _reachable_from_entry(steps)
    unreachable = [key for key in steps if key not in reachable]
    for key in unreachable:
        warnings.append(f"Step {key} is not reachable from the flow")

    return {
        "agent_id": definition.agent_id,
        "is_valid": not issues,
        "issues": issues,
        "warnings": warnings,
        "total_steps": len(steps),
        "reachable_steps": len(reachable),
        "flow_health": {
            "has_start_step": ENTRY_STEP in steps,
            "has_end_steps": any(not s.next_possible_steps for s in steps.values()),
            "all_steps_reachable": not unreachable,
            "validation_score": max(0, 100 - 20 * len(issues) - 5 * len(warnings)),
        },
    }
