# tests/unit/test_templates.py
from datetime import datetime

from agentflow.config import strings
from agentflow.models.flow import AgentFlowStep, ListItem, MessageContent, StepOption
from agentflow.models.messages import ListReply, QuickReply, TextReply
from agentflow.workflows.templates import (
    build_broadcast_reply_options,
    build_confirmation_prompt,
    build_restart_prompt,
    personalize_response,
    render_retry_response,
    render_step_response,
    replace_variables,
    replace_variables_in_content,
    with_text,
)

NOW = datetime(2024, 5, 17, 9, 30, 0)


class TestReplaceVariables:

    def test_captured_values_are_substituted(self):
        assert replace_variables("Hi {{email}}", {"email": "a@b.co"}) == "Hi a@b.co"

    def test_tokens_are_case_insensitive_and_tolerate_spaces(self):
        assert replace_variables("{{ City }} / {{CITY}}", {"city": "Pune"}) == "Pune / Pune"

    def test_name_falls_back_to_there(self):
        assert replace_variables("Hello {{name}}!", {}) == "Hello there!"
        assert replace_variables("Hello {{user_name}}!", {"user_name": "Ana"}) == "Hello Ana!"

    def test_unknown_tokens_become_empty(self):
        assert replace_variables("Code: {{missing}}.", {}) == "Code: ."

    def test_system_tokens(self):
        text = replace_variables("{{date}} {{time}} {{phone}}", {"phone": "9198"}, now=NOW)
        assert text == "2024-05-17 09:30:00 9198"

    def test_text_without_tokens_is_untouched(self):
        assert replace_variables("plain", {"x": 1}) == "plain"
        assert replace_variables("", {"x": 1}) == ""

    def test_nested_content(self):
        content = {"text": "Hi {{name}}", "options": [{"title": "{{plan}}"}], "count": 3}
        replaced = replace_variables_in_content(content, {"name": "Ana", "plan": "Gold"})
        assert replaced == {"text": "Hi Ana", "options": [{"title": "Gold"}], "count": 3}


class TestRenderStep:

    def test_text_step(self):
        step = AgentFlowStep(agent_id="a1", step="step0", message_content=MessageContent(text="Your email, {{name}}?"))
        assert render_step_response(step, {"user_name": "Ana"}) == TextReply(text="Your email, Ana?")

    def test_nested_content_text_is_used(self):
        step = AgentFlowStep(agent_id="a1", step="step0", message_content=MessageContent(content={"text": "Nested"}))
        assert render_step_response(step).text == "Nested"

    def test_missing_text_uses_default_prompt(self):
        step = AgentFlowStep(agent_id="a1", step="step0")
        assert render_step_response(step).text == strings.DEFAULT_STEP_PROMPT

    def test_quick_reply_step(self):
        step = AgentFlowStep(
            agent_id="a1",
            step="step1",
            type_of_message="quick_reply",
            message_content=MessageContent(text="Callback?", options=[StepOption(title="Yes", postback_text="step2/yes")]),
        )
        payload = render_step_response(step)
        assert isinstance(payload, QuickReply)
        assert payload.text == "Callback?"
        assert payload.options[0].postback_text == "step2/yes"

    def test_list_step_gets_default_button(self):
        step = AgentFlowStep(
            agent_id="a1",
            step="step3",
            type_of_message="list",
            message_content=MessageContent(title="Menu", body="Pick", items=[ListItem(title="Food")]),
        )
        payload = render_step_response(step)
        assert isinstance(payload, ListReply)
        assert payload.global_buttons[0].title == strings.DEFAULT_LIST_BUTTON
        assert payload.model_dump(by_alias=True)["globalButtons"][0]["title"] == strings.DEFAULT_LIST_BUTTON

    def test_retry_prefixes_reason(self):
        step = AgentFlowStep(agent_id="a1", step="step0", message_content=MessageContent(text="Email?"))
        payload = render_retry_response(step, "Please enter a valid email address.")
        assert payload.text == "❌ Please enter a valid email address.\n\nEmail?"

    def test_retry_without_reason_uses_fallback(self):
        step = AgentFlowStep(agent_id="a1", step="step0", message_content=MessageContent(text="Email?"))
        assert render_retry_response(step, None).text.startswith(f"❌ {strings.VALIDATION_RETRY_FALLBACK}")


class TestPrompts:

    def test_confirmation_prompt_tokens(self):
        prompt = build_confirmation_prompt("Did you mean 5pm?")
        assert prompt.text == "Did you mean 5pm?"
        assert [o.postback_text for o in prompt.options] == [strings.CONFIRM_YES_TOKEN, strings.CONFIRM_NO_TOKEN]

    def test_restart_prompt_continue_points_at_current_step(self):
        prompt = build_restart_prompt("Start over?", "step2")
        assert [o.postback_text for o in prompt.options] == [strings.RESTART_TOKEN, "step2"]

    def test_broadcast_options_are_capped_at_three(self):
        mapping = {"a": "1", "b": "2", "c": "3", "d": "4"}
        payload = build_broadcast_reply_options(mapping)
        assert [o.title for o in payload.options] == ["a", "b", "c"]

    def test_broadcast_without_mapping_is_text(self):
        assert build_broadcast_reply_options({}) == TextReply(text=strings.BROADCAST_DEFAULT_REPLY)

    def test_with_text_keeps_shape(self):
        quick = build_confirmation_prompt("old")
        replaced = with_text(quick, "new")
        assert replaced.text == "new"
        assert replaced.options == quick.options
        assert with_text(TextReply(text="old"), "new") == TextReply(text="new")

    def test_personalize_response(self):
        payload = QuickReply.model_validate({
            "content": {"text": "Hi {{name}}"},
            "options": [{"title": "{{plan}}", "postbackText": "step1/x"}],
        })
        personalized = personalize_response(payload, {"user_name": "Ana", "plan": "Gold"})
        assert personalized.text == "Hi Ana"
        assert personalized.options[0].title == "Gold"
        assert personalized.options[0].postback_text == "step1/x"
