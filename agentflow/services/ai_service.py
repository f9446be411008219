# /agentflow/services/ai_service.py

import json
import re
import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol

from google import genai
from google.genai.types import GenerateContentConfig
from openai import AsyncOpenAI, AsyncAzureOpenAI

from agentflow.config import strings
from agentflow.config.persona import DEFAULT_AI_CHARACTER, DEFAULT_GLOBAL_RULES, FLOW_SYSTEM_PROMPT_TEMPLATE
from agentflow.config.settings import settings
from agentflow.exceptions import AIProviderError
from agentflow.models.ai import AIResponse, AIResponseKind, ALLOWED_AI_TYPES
from agentflow.models.domain import Agent
from agentflow.models.flow import AgentFlowStep
from agentflow.utils.metrics import ai_requests_counter
from agentflow.utils.retry import RetryPolicy, retry_async

# This service turns a step, the agent persona and the user's message into a
# classification request for a chat-completion model, and turns whatever the
# model answers into a well-formed AIResponse.

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "gpt"
_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class ChatClient(Protocol):
    async def complete(self, messages: List[Dict[str, str]], model: str, max_tokens: int, temperature: float) -> str: ...


class OpenAIChatClient:
    """OpenAI or Azure OpenAI chat completions. Azure is used when an https endpoint and key are configured."""

    def __init__(self, client=None):
        if client is not None:
            self.client = client
        elif settings.uses_azure_openai:
            self.client = AsyncAzureOpenAI(
                api_key=settings.azure_openai_api_key,
                azure_endpoint=settings.azure_openai_endpoint,
                api_version=settings.azure_openai_api_version,
            )
        elif settings.openai_api_key:
            self.client = AsyncOpenAI(api_key=settings.openai_api_key)
        else:
            self.client = None

    async def complete(self, messages, model, max_tokens, temperature) -> str:
        if not self.client:
            raise AIProviderError("gpt", "OPENAI_API_KEY not configured")
        response = await self.client.chat.completions.create(
            model=model, messages=messages, max_tokens=max_tokens, temperature=temperature
        )
        return response.choices[0].message.content or ""


class GeminiChatClient:
    def __init__(self, client=None, default_model: str = settings.ai_gemini_model):
        self.client = client or (genai.Client(api_key=settings.gemini_api_key) if settings.gemini_api_key else None)
        self.default_model = default_model

    async def complete(self, messages, model, max_tokens, temperature) -> str:
        if not self.client:
            raise AIProviderError("gemini", "GEMINI_API_KEY not configured")
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        contents = [
            {"role": "model" if m["role"] == "assistant" else "user", "parts": [{"text": m["content"]}]}
            for m in messages if m["role"] != "system"
        ]
        if not model.startswith("gemini"):
            model = self.default_model
        response = await asyncio.to_thread(
            self.client.models.generate_content,
            model=model,
            contents=contents,
            config=GenerateContentConfig(
                system_instruction=system,
                temperature=temperature,
                max_output_tokens=max_tokens,
                response_mime_type="application/json",
            ),
        )
        return response.text or ""


def _fallback(msg: str = strings.AI_DID_NOT_UNDERSTAND) -> AIResponse:
    return AIResponse(type=AIResponseKind.INVALID_INPUT, msg=msg, confidence=0.1)


def parse_ai_response(raw: Any) -> AIResponse:
    """
    Turn raw model output into an AIResponse. Never raises.

    The first {...} span is parsed as JSON. Missing type or an unknown type
    becomes invalidinput, a missing msg gets a generic prompt, confidence is
    clamped to [0, 1] (0.5 when absent).
    """
    try:
        match = _JSON_OBJECT.search(raw if isinstance(raw, str) else "")
        if not match:
            logger.warning("AI response doesn't contain a JSON object, using fallback")
            return _fallback()
        parsed = json.loads(match.group(0))
        if not isinstance(parsed, dict):
            return _fallback()

        kind = parsed.get("type")
        if kind not in ALLOWED_AI_TYPES:
            logger.warning(f"AI response has invalid type: {kind}")
            kind = AIResponseKind.INVALID_INPUT.value

        msg = parsed.get("msg")
        if not msg or not isinstance(msg, str):
            msg = strings.AI_MISSING_MESSAGE

        try:
            confidence = float(parsed.get("confidence", 0.5))
        except (TypeError, ValueError):
            confidence = 0.5
        if confidence != confidence:  # NaN
            confidence = 0.5
        confidence = max(0.0, min(1.0, confidence))

        return AIResponse(type=AIResponseKind(kind), msg=msg, value=parsed.get("value"), confidence=confidence)
    except Exception as e:
        logger.error(f"Error parsing AI response: {e}")
        return _fallback(strings.AI_PROCESSING_ERROR)


def build_system_prompt(step: AgentFlowStep, agent: Optional[Agent], user_context: Dict[str, Any]) -> str:
    content = step.message_content
    prompt_text = content.prompt_text
    options = step.interactive_options
    return FLOW_SYSTEM_PROMPT_TEMPLATE.format(
        step=step.step,
        step_type=step.type_of_message,
        purpose=step.purpose or "N/A",
        variable=step.variable or "N/A",
        mandatory="Yes" if step.mandatory else "No",
        regex=step.regex or "None",
        ai_character=(agent.ai_character if agent and agent.ai_character else DEFAULT_AI_CHARACTER),
        global_rules=(agent.global_rules if agent and agent.global_rules else DEFAULT_GLOBAL_RULES),
        user_name=user_context.get("name") or "Unknown",
        current_step=user_context.get("current_step") or step.step,
        captured_data=json.dumps(user_context.get("captured_data") or {}, default=str, sort_keys=True),
        repeat_count=user_context.get("repeat_count", 0),
        expected_format=f'Expected Response Format: Based on "{prompt_text}"' if prompt_text else "",
        available_options=(
            "Available Options: " + ", ".join(o.title or "" for o in options) if options else ""
        ),
        allowed_types="|".join(ALLOWED_AI_TYPES),
    )


class AIBridge:
    def __init__(
        self,
        clients: Dict[str, ChatClient],
        repository=None,
        policy: Optional[RetryPolicy] = None,
        default_provider: str = DEFAULT_PROVIDER,
        history_limit: int = 10,
    ):
        self.clients = clients
        self.repository = repository
        self.policy = policy or RetryPolicy(
            attempts=settings.ai_max_attempts,
            base_delay=settings.ai_base_delay_seconds,
            timeout=settings.ai_timeout_seconds,
        )
        self.default_provider = default_provider
        self.history_limit = history_limit

    def select_provider(self, requested: Optional[str]) -> str:
        """Unsupported providers (claude, grok, anything unknown) degrade to the default."""
        provider = (requested or self.default_provider).lower()
        if provider not in self.clients:
            if requested:
                logger.info(f"AI provider '{requested}' not available, using {self.default_provider}")
            return self.default_provider
        return provider

    async def build_history(self, end_user_id: Optional[str]) -> List[Dict[str, str]]:
        if not (self.repository and end_user_id):
            return []
        try:
            conversations = await self.repository.find_active_conversations_for_user(end_user_id)
        except Exception as e:
            logger.error(f"Error getting conversation threads: {e}")
            return []
        conversations.sort(key=lambda c: c.updated_at, reverse=True)
        threads = [
            {"role": "assistant", "content": f"Previously captured {key}: {value}"}
            for conversation in conversations
            for key, value in conversation.state.captured_variables.items()
        ]
        return threads[: self.history_limit]

    async def classify(
        self,
        step: AgentFlowStep,
        text: str,
        agent: Optional[Agent],
        user_context: Dict[str, Any],
    ) -> AIResponse:
        """
        Ask the model to classify the user's message for this step.
        Raises AIProviderError once retries are exhausted; parsing never raises.
        """
        ai_config = step.ai_config or {}
        provider = self.select_provider(ai_config.get("ai_provider") or ai_config.get("provider"))
        client = self.clients.get(provider)
        if client is None:
            raise AIProviderError(provider, "No AI client configured")

        messages = [{"role": "system", "content": build_system_prompt(step, agent, user_context)}]
        messages.extend(await self.build_history(user_context.get("end_user_id")))
        messages.append({"role": "user", "content": text})

        model = ai_config.get("model") or settings.ai_default_model
        max_tokens = ai_config.get("max_tokens")
        max_tokens = int(settings.ai_max_tokens if max_tokens is None else max_tokens)
        temperature = ai_config.get("temperature")
        temperature = float(settings.ai_temperature if temperature is None else temperature)

        try:
            raw = await retry_async(client.complete, messages, model, max_tokens, temperature, policy=self.policy)
        except Exception as e:
            ai_requests_counter.labels(provider=provider, status="error").inc()
            logger.error(f"AI call to {provider} failed after {self.policy.attempts} attempts: {e}")
            if isinstance(e, AIProviderError):
                raise
            raise AIProviderError(provider, str(e)) from e

        ai_requests_counter.labels(provider=provider, status="success").inc()
        response = parse_ai_response(raw)
        logger.info(f"AI response processed: type={response.type.value}, confidence={response.confidence}")
        return response


def build_ai_clients() -> Dict[str, ChatClient]:
    clients: Dict[str, ChatClient] = {"gpt": OpenAIChatClient()}
    if settings.gemini_api_key:
        clients["gemini"] = GeminiChatClient()
    return clients
