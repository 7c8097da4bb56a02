"""
Generation Engine — LLM-powered text for conversation jobs.

Takes a GenerationRequest (job type + conversation context) and produces
the bot turn or summary using Claude or OpenAI. Handles:
- First message of a new conversation
- Reply to the latest user message
- Follow-up on an unfinished exchange (the user's last answer)
- Conversation summary

Unlike a chat front-end there is no canned fallback here: a failed or
empty generation raises GenerationBackendFailure and the job is retried
by the queue.
"""
from __future__ import annotations

import abc
import json
from typing import Any, Optional

import structlog

from config.settings import LLMConfig, get_settings
from models.errors import GenerationBackendFailure
from models.schemas import (
    ConversationContext, ConversationType, GeneratedText, GenerationRequest,
    JobType, MessageType,
)

logger = structlog.get_logger()

HISTORY_WINDOW = 10


class GenerationBackend(abc.ABC):
    """Text-generation collaborator used by the workers."""

    @abc.abstractmethod
    async def generate(self, request: GenerationRequest) -> GeneratedText:
        ...

    async def close(self) -> None:
        pass


class LLMGenerationBackend(GenerationBackend):
    """
    Generates job text using Claude or OpenAI.
    Prompt and length depend on the job type and the conversation type.
    """

    def __init__(self, config: LLMConfig = None, client: Any = None):
        self.config = config or get_settings().llm
        self._client = client
        self._provider = self.config.provider

    @property
    def is_openai(self) -> bool:
        return self._provider == "openai"

    @property
    def model(self) -> str:
        return self.config.model

    def _get_client(self):
        if self._client is None:
            if self.is_openai:
                from openai import AsyncOpenAI
                self._client = AsyncOpenAI(api_key=self.config.api_key)
            else:
                import anthropic
                self._client = anthropic.AsyncAnthropic(api_key=self.config.api_key)
            logger.info("llm_client_initialized", provider=self._provider, model=self.config.model)
        return self._client

    async def _call_llm(
        self,
        system: str,
        messages: list[dict[str, str]],
        max_tokens: int = None,
        temperature: float = None,
    ) -> str:
        """Unified LLM call that handles both Anthropic and OpenAI APIs."""
        client = self._get_client()
        max_tokens = max_tokens or self.config.max_tokens
        temperature = temperature if temperature is not None else self.config.temperature

        if self.is_openai:
            # OpenAI: system prompt is a message in the messages list
            oai_messages = [{"role": "system", "content": system}] + messages
            response = await client.chat.completions.create(
                model=self.config.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=oai_messages,
            )
            return response.choices[0].message.content or ""

        # Anthropic: system prompt is a separate parameter
        response = await client.messages.create(
            model=self.config.model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
            messages=messages,
        )
        return response.content[0].text if response.content else ""

    async def generate(self, request: GenerationRequest) -> GeneratedText:
        system = self._build_system_prompt(request)
        messages = self._build_messages(request)
        temperature = 0.3 if request.job_type == JobType.SUMMARY else None

        try:
            text = await self._call_llm(system=system, messages=messages, temperature=temperature)
        except Exception as e:
            logger.error("llm_generation_failed",
                         provider=self._provider,
                         job_type=request.job_type.value,
                         conversation_id=request.context.id,
                         error=str(e))
            raise GenerationBackendFailure(f"{self._provider} call failed: {e}") from e

        text = (text or "").strip()
        if not text:
            raise GenerationBackendFailure(
                f"{self._provider} returned no text for conversation {request.context.id}"
            )
        return GeneratedText(text=text, model=self.config.model)

    async def close(self) -> None:
        if self._client is not None and hasattr(self._client, "close"):
            await self._client.close()

    # ── Prompt Construction ───────────────────────────────────

    def _build_system_prompt(self, request: GenerationRequest) -> str:
        context = request.context

        if request.job_type == JobType.SUMMARY:
            return (
                "Summarize this coaching conversation in 3-5 sentences. Focus on: "
                "the topics covered, what the user expressed about themselves, and "
                "any next steps agreed on. Write in the language of the conversation."
            )

        focus = {
            ConversationType.BILAN: "You guide the user through a skills assessment (bilan). "
                                    "Ask one question at a time about their experience, motivations and goals.",
            ConversationType.ACTIVITY: "You accompany the user through a guided activity. "
                                       "Help them reflect on it and go one step further.",
            ConversationType.RECOMMENDATION: "You help the user pick relevant next steps "
                                             "from what they shared so far.",
            ConversationType.UNFINISHED_EXCHANGE: "You pick up a conversation the user left "
                                                  "unfinished and help them close it.",
        }

        lines = [
            "You are a warm, professional career coach.",
            focus.get(context.type, ""),
        ]
        if context.activity_data:
            activity = context.activity_data
            lines.append(f"\nActivity: {activity.title}")
            if activity.description:
                lines.append(activity.description)
        if context.ai_rules:
            rules = sorted((r for r in context.ai_rules if r.is_active),
                           key=lambda r: r.priority, reverse=True)
            if rules:
                lines.append("\nRules to follow:")
                lines.extend(f"- {r.name}: {r.description}" for r in rules)
        if context.metadata:
            lines.append(f"\nContext: {json.dumps(context.metadata, default=str)}")

        lines.append(
            "\nGUIDELINES:\n"
            "- Keep each reply short (2-5 sentences)\n"
            "- Reply in the language the user writes in\n"
            "- End with a single clear question when the exchange should continue"
        )
        return "\n".join(line for line in lines if line)

    def _build_messages(self, request: GenerationRequest) -> list[dict[str, str]]:
        """Build the message history for the LLM."""
        context = request.context

        if request.job_type == JobType.SUMMARY:
            transcript = "\n".join(
                f"{'User' if m.type == MessageType.USER else 'Assistant'}: {m.content}"
                for m in context.messages
            )
            return [{"role": "user", "content": f"Conversation:\n{transcript or '(empty)'}"}]

        messages = []
        for m in context.messages[-HISTORY_WINDOW:]:
            role = "assistant" if m.type == MessageType.BOT else "user"
            messages.append({"role": role, "content": m.content})

        if request.job_type == JobType.RESPONSE and request.user_message:
            if not messages or messages[-1]["content"] != request.user_message:
                messages.append({"role": "user", "content": request.user_message})
        elif request.job_type == JobType.UNFINISHED_EXCHANGE:
            messages.append({"role": "user", "content": (
                f"My last answer before I left was: {request.last_answer}\n"
                "Let's continue from there."
            )})

        # Ensure messages alternate and start with user
        if not messages:
            messages = [{"role": "user", "content": "Please start the conversation."}]
        elif messages[0]["role"] == "assistant":
            messages.insert(0, {"role": "user", "content": "[Conversation started]"})

        return messages


def create_generation_backend(config: Optional[LLMConfig] = None) -> GenerationBackend:
    return LLMGenerationBackend(config)
