"""
Chat Model - Generative model provider with product and handoff tools.

The orchestrator only sees the ChatModel protocol; OpenAIChatModel is the
production implementation over the openai async client.
"""

import json
import math
import time
from collections.abc import AsyncGenerator, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import openai
from openai import AsyncOpenAI
from pydantic import ValidationError
from structlog import get_logger

from shopchat.exceptions import MirrorError, ModelProviderError, ModelTimeoutError
from shopchat.models.api import ConversationSummary, MessageRole, ProductSort
from shopchat.models.domain import (
    ModelChunk,
    ModelReply,
    ModelRequest,
    ProductSnapshot,
    StoredMessage,
)
from shopchat.observability import metrics
from shopchat.services.catalog import ProductCatalog
from shopchat.services.mirror import RealtimeMirror

logger = get_logger(__name__)

SYSTEM_PROMPT = (
    "You are a friendly sales assistant for a Shopify store. Help shoppers find "
    "products and answer their questions in the language they write in. Use "
    "recommend_products whenever the shopper is looking for something; product "
    "cards are rendered for you, so do not repeat titles or prices unless asked. "
    "If the shopper asks for a human, call request_human_support. Never mention "
    "tools, databases or configuration."
)

SUMMARY_PROMPT = (
    "Analyze the following conversation between a customer and an AI sales "
    "assistant. Reply with a JSON object with the fields customerName (string or "
    "null), overview, intent, sentiment (Positive, Neutral or Negative), "
    "sentimentScore (0-100), priority (Low, Medium or High), tags (at most 3 "
    "strings), keyQuotes (1-2 customer statements), suggestedAction and "
    "resolutionStatus (Escalated, Requires Follow-up or Informational)."
)

HANDOFF_CONFIRMATION = (
    "I have submitted your request. A human agent will join the chat shortly. Please wait."
)
HANDOFF_FAILURE = (
    "I'm having trouble connecting you to a human right now. "
    "Please try contacting us via email."
)

TOOLS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "recommend_products",
            "description": (
                "Search the store catalogue when the shopper asks for a recommendation, "
                "a specific product, best sellers or new arrivals."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "search_query": {
                        "type": "string",
                        "description": "Product type or keywords; 'best selling' for generic asks.",
                    },
                    "min_price": {"type": "number"},
                    "max_price": {"type": "number"},
                    "sort": {"type": "string", "enum": [s.value for s in ProductSort]},
                },
                "required": ["search_query"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "request_human_support",
            "description": (
                "Call immediately when the shopper asks for a human, an agent or support."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "reason": {
                        "type": "string",
                        "description": "Why the shopper wants a human.",
                    },
                },
                "required": ["reason"],
            },
        },
    },
]


def price_argument(value: Any) -> float | None:
    """Tool price bound as a finite float; anything else means no bound."""
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    return price if math.isfinite(price) else None


class ChatModel(Protocol):
    """What the orchestrator needs from a generative model."""

    async def generate(self, request: ModelRequest) -> ModelReply:
        """Complete reply for one turn."""
        ...

    def stream(self, request: ModelRequest) -> AsyncGenerator[ModelChunk, None]:
        """Text deltas, then one final chunk with products and token usage."""
        ...

    async def summarize(self, messages: Sequence[StoredMessage]) -> ConversationSummary:
        """Structured summary of a conversation."""
        ...


@dataclass
class _PendingToolCall:
    """Tool call assembled from streamed deltas."""

    id: str = ""
    name: str = ""
    arguments: str = ""


class OpenAIChatModel:
    """ChatModel over the OpenAI chat completions API with one tool round."""

    def __init__(
        self,
        client: AsyncOpenAI,
        catalog: ProductCatalog,
        mirror: RealtimeMirror,
        model: str = "gpt-4o-mini",
        summary_model: str = "gpt-4o-mini",
        temperature: float = 1.0,
        max_output_tokens: int = 2048,
        timeout_seconds: float = 30.0,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        self.client = client
        self.catalog = catalog
        self.mirror = mirror
        self.model = model
        self.summary_model = summary_model
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.timeout_seconds = timeout_seconds
        self.system_prompt = system_prompt

    async def generate(self, request: ModelRequest) -> ModelReply:
        """Run the model, execute any tool calls, then ask for the final answer."""
        messages = self._build_messages(request)
        started = time.perf_counter()
        try:
            response = await self._complete(messages, tools=True)
            tokens = response.usage.total_tokens if response.usage else 0
            message = response.choices[0].message
            products: tuple[ProductSnapshot, ...] = ()

            if message.tool_calls:
                messages.append(message.model_dump(exclude_none=True))
                for call in message.tool_calls:
                    content, found = await self._run_tool(
                        request, call.id, call.function.name, call.function.arguments
                    )
                    products += found
                    messages.append({"role": "tool", "tool_call_id": call.id, "content": content})
                response = await self._complete(messages, tools=False)
                tokens += response.usage.total_tokens if response.usage else 0
                message = response.choices[0].message
        except openai.APITimeoutError as e:
            raise ModelTimeoutError(self.timeout_seconds) from e
        except openai.OpenAIError as e:
            raise ModelProviderError(str(e)) from e
        finally:
            metrics.record_model_call("generate", time.perf_counter() - started)

        return ModelReply(text=message.content or "", products=products, tokens_used=tokens)

    async def stream(self, request: ModelRequest) -> AsyncGenerator[ModelChunk, None]:
        """Stream text deltas; tool rounds happen between the two streamed calls."""
        messages = self._build_messages(request)
        started = time.perf_counter()
        tokens = 0
        products: tuple[ProductSnapshot, ...] = ()
        try:
            pending: dict[int, _PendingToolCall] = {}
            stream = await self._complete(messages, tools=True, stream=True)
            try:
                async for chunk in stream:
                    if chunk.usage:
                        tokens += chunk.usage.total_tokens
                    if not chunk.choices:
                        continue
                    delta = chunk.choices[0].delta
                    if delta.content:
                        yield ModelChunk(text=delta.content)
                    for call in delta.tool_calls or []:
                        entry = pending.setdefault(call.index, _PendingToolCall())
                        if call.id:
                            entry.id = call.id
                        if call.function and call.function.name:
                            entry.name += call.function.name
                        if call.function and call.function.arguments:
                            entry.arguments += call.function.arguments
            finally:
                await stream.close()

            if pending:
                calls = [pending[i] for i in sorted(pending)]
                messages.append(
                    {
                        "role": "assistant",
                        "tool_calls": [
                            {
                                "id": c.id,
                                "type": "function",
                                "function": {"name": c.name, "arguments": c.arguments},
                            }
                            for c in calls
                        ],
                    }
                )
                for c in calls:
                    content, found = await self._run_tool(request, c.id, c.name, c.arguments)
                    products += found
                    messages.append({"role": "tool", "tool_call_id": c.id, "content": content})

                stream = await self._complete(messages, tools=False, stream=True)
                try:
                    async for chunk in stream:
                        if chunk.usage:
                            tokens += chunk.usage.total_tokens
                        if chunk.choices and chunk.choices[0].delta.content:
                            yield ModelChunk(text=chunk.choices[0].delta.content)
                finally:
                    await stream.close()
        except openai.APITimeoutError as e:
            raise ModelTimeoutError(self.timeout_seconds) from e
        except openai.OpenAIError as e:
            raise ModelProviderError(str(e)) from e
        finally:
            metrics.record_model_call("stream", time.perf_counter() - started)

        yield ModelChunk(final=True, products=products, tokens_used=tokens)

    async def summarize(self, messages: Sequence[StoredMessage]) -> ConversationSummary:
        """Summarize a conversation; failures yield the neutral fallback summary."""
        conversation = "\n".join(f"{m.role.value}: {m.content}" for m in messages)
        started = time.perf_counter()
        try:
            response = await self.client.chat.completions.create(
                model=self.summary_model,
                messages=[
                    {"role": "system", "content": SUMMARY_PROMPT},
                    {"role": "user", "content": f"Conversation:\n{conversation}"},
                ],
                response_format={"type": "json_object"},
            )
            content = response.choices[0].message.content
            if not content:
                raise ValueError("No summary generated")
            return ConversationSummary.model_validate_json(content)
        except (openai.OpenAIError, ValidationError, ValueError) as e:
            logger.error("conversation_summary_failed", error=str(e))
            return ConversationSummary.fallback()
        finally:
            metrics.record_model_call("summarize", time.perf_counter() - started)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _build_messages(self, request: ModelRequest) -> list[dict[str, Any]]:
        prompt = self.system_prompt
        preview = request.preview
        if preview is not None:
            if preview.tone:
                prompt += f"\nTone: {preview.tone}."
            if preview.language:
                prompt += f"\nAlways reply in {preview.language}."
            if preview.custom_instructions:
                prompt += f"\n{preview.custom_instructions}"

        messages: list[dict[str, Any]] = [{"role": "system", "content": prompt}]
        for turn in request.history:
            # System notices are rendered to the model as assistant turns.
            role = "user" if turn.role == MessageRole.USER else "assistant"
            messages.append({"role": role, "content": turn.content})
        messages.append({"role": "user", "content": request.message})
        return messages

    async def _complete(self, messages: list[dict[str, Any]], tools: bool, stream: bool = False):
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_output_tokens,
            "tools": TOOLS,
        }
        if not tools:
            # Final answer round: tool history stays valid, no new calls.
            kwargs["tool_choice"] = "none"
        if stream:
            kwargs["stream"] = True
            kwargs["stream_options"] = {"include_usage": True}
        return await self.client.chat.completions.create(**kwargs)

    async def _run_tool(
        self, request: ModelRequest, call_id: str, name: str, raw_arguments: str
    ) -> tuple[str, tuple[ProductSnapshot, ...]]:
        """Execute one tool call; returns the tool message content and any products."""
        try:
            arguments = json.loads(raw_arguments or "{}")
        except json.JSONDecodeError:
            logger.warning("tool_arguments_invalid", tool=name, call_id=call_id)
            return "Invalid arguments.", ()
        if not isinstance(arguments, dict):
            logger.warning("tool_arguments_invalid", tool=name, call_id=call_id)
            arguments = {}

        if name == "recommend_products":
            try:
                sort = ProductSort(arguments.get("sort") or ProductSort.RELEVANCE)
            except ValueError:
                sort = ProductSort.RELEVANCE
            products = await self.catalog.search(
                request.shop,
                str(arguments.get("search_query", "")),
                min_price=price_argument(arguments.get("min_price")),
                max_price=price_argument(arguments.get("max_price")),
                sort=sort,
            )
            payload = [
                {
                    "id": p.product_id,
                    "title": p.title,
                    "price": p.price,
                    "handle": p.handle,
                    "image": p.image,
                    "similarity": p.score,
                }
                for p in products
            ]
            return json.dumps(payload), products

        if name == "request_human_support":
            reason = str(arguments.get("reason") or "User requested human agent")
            try:
                await self.mirror.request_human_support(request.shop, request.session_id, reason)
            except MirrorError as e:
                logger.error("human_handoff_failed", session_id=request.session_id, error=str(e))
                return HANDOFF_FAILURE, ()
            return HANDOFF_CONFIRMATION, ()

        logger.warning("unknown_tool_call", tool=name, call_id=call_id)
        return f"Unknown tool: {name}", ()
