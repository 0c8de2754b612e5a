"""
Chat relay between a chat client and an OpenAI-compatible model provider.

Per request:
- compress the outbound history (CompressionOrchestrator)
- inject confirmed long-term memories where the module allows it
- stream the upstream reply through StreamSplitter into answer / reasoning
- persist the assembled reply, including partial replies on cancellation

All per-request state lives in a RequestContext passed by parameter; the
relay itself only holds configuration and store handles.
"""

import logging
import os
import threading
import warnings
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional

from dotenv import load_dotenv
from langchain.chat_models import init_chat_model
from langchain_core.messages import BaseMessage, SystemMessage

from .memory import (
    CompressionOrchestrator,
    CompressionResult,
    ConversationSummarizer,
    InMemoryCompressionCache,
    InMemoryMemoryStore,
    InMemoryTurnStore,
    MemoryConfig,
    MemoryExtractionPipeline,
    MemoryExtractor,
    PostgresCompressionCache,
    PostgresMemoryStore,
    PostgresTurnStore,
)
from .memory.condenser import build_memory_message
from .memory.extraction import ExtractionResult
from .modules import Module, profile_for
from .stream import StreamEventEmitter, StreamSplitter

logger = logging.getLogger(__name__)


# .env overrides the process environment, as in local development
load_dotenv(override=True)


DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_PROVIDER = "openai"
SUMMARIZER_TEMPERATURE = 0.3
SUMMARIZER_MAX_TOKENS = 2000
EXTRACTOR_TEMPERATURE = 0.2
EXTRACTOR_MAX_TOKENS = 700
THINKING_BUDGET = 1024

# (conversation_id, answer, reasoning, partial) -> None
ReplySink = Callable[[Optional[str], str, str, bool], None]


def get_credentials() -> tuple[Optional[str], str]:
    """
    API credentials, generic variables first.

    - API Key: API_KEY > OPENROUTER_API_KEY
    - Base URL: API_BASE_URL > OpenRouter
    """
    api_key = os.getenv("API_KEY") or os.getenv("OPENROUTER_API_KEY")
    base_url = os.getenv("API_BASE_URL") or DEFAULT_BASE_URL
    return api_key, base_url


def _is_anthropic_model(model_name: str) -> bool:
    name = (model_name or "").lower()
    return "claude" in name or "anthropic" in name


def create_chat_model(model_name: str, reasoning: bool = False, **params):
    """
    Build a LangChain chat model for the provider.

    MODEL_PROVIDER selects the LangChain integration (default: openai, which
    speaks the OpenRouter protocol). None-valued params are left out.
    """
    api_key, base_url = get_credentials()
    provider = os.getenv("MODEL_PROVIDER", DEFAULT_PROVIDER).lower()

    init_kwargs = {k: v for k, v in params.items() if v is not None}
    if api_key:
        init_kwargs["api_key"] = api_key
    if base_url and provider == "openai":
        init_kwargs["base_url"] = base_url

    if reasoning:
        if provider == "anthropic" and _is_anthropic_model(model_name):
            init_kwargs["thinking"] = {"type": "enabled", "budget_tokens": THINKING_BUDGET}
            # Extended thinking requires temperature 1.0
            init_kwargs["temperature"] = 1.0
            init_kwargs.pop("top_p", None)
        else:
            init_kwargs["extra_body"] = {"reasoning": {"effort": "medium"}}

    return init_chat_model(model_name, model_provider=provider, **init_kwargs)


def _opt_float(value) -> Optional[float]:
    return float(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else None


@dataclass
class RelayRequest:
    """Inbound relay payload."""

    messages: list
    model: str
    conversation_id: Optional[str] = None
    module: Module = Module.CHITCHAT
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    reasoning: bool = False
    stream: bool = True
    is_first_message: bool = False

    @classmethod
    def from_payload(cls, payload: dict) -> "RelayRequest":
        """Build a request from the JSON body; camelCase keys are accepted."""
        if not isinstance(payload, dict):
            raise ValueError("Request body must be a JSON object")
        messages = payload.get("messages")
        if not isinstance(messages, list):
            raise ValueError("messages must be a list")
        model = payload.get("model") or payload.get("modelId")
        if not isinstance(model, str) or not model.strip():
            raise ValueError("model is required")
        max_tokens = payload.get("max_tokens")
        return cls(
            messages=[
                m for m in messages
                if isinstance(m, dict) and m.get("role") in ("user", "assistant", "system")
            ],
            model=model.strip(),
            conversation_id=payload.get("conversationId") or payload.get("conversation_id"),
            module=Module.parse(payload.get("module")),
            temperature=_opt_float(payload.get("temperature")),
            top_p=_opt_float(payload.get("top_p")),
            max_tokens=int(max_tokens) if isinstance(max_tokens, int) and max_tokens > 0 else None,
            reasoning=bool(payload.get("reasoning", False)),
            stream=bool(payload.get("stream", True)),
            is_first_message=bool(
                payload.get("isFirstMessage", payload.get("is_first_message", False))
            ),
        )


@dataclass
class RequestContext:
    """State owned by one inbound request."""

    request: RelayRequest
    config: MemoryConfig
    user_id: Optional[str] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    splitter: StreamSplitter = field(default_factory=StreamSplitter)
    compression: Optional[CompressionResult] = None
    persisted: bool = False

    def cancel(self):
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class ChatRelay:
    """
    Usage:
        relay = ChatRelay()
        ctx = relay.create_context(payload, user_id="u1", settings=row)
        for event in relay.stream_reply(ctx):
            ...  # forward to the client; ctx.cancel() to stop generation
    """

    def __init__(
        self,
        config: Optional[MemoryConfig] = None,
        turn_store=None,
        cache=None,
        memory_store=None,
        reply_sink: Optional[ReplySink] = None,
        model_factory: Optional[Callable] = None,
    ):
        self.config = config or MemoryConfig.from_env()
        self.model_factory = model_factory or create_chat_model
        self.reply_sink = reply_sink

        if turn_store is None or cache is None or memory_store is None:
            pg_conn = self._connect_postgres()
            if pg_conn is not None:
                turn_store = turn_store or PostgresTurnStore(pg_conn)
                cache = cache or PostgresCompressionCache(pg_conn)
                memory_store = memory_store or PostgresMemoryStore(pg_conn)
        self.turn_store = turn_store or InMemoryTurnStore()
        self.cache = cache or InMemoryCompressionCache()
        self.memory_store = memory_store or InMemoryMemoryStore()

    @staticmethod
    def _connect_postgres():
        """
        PostgreSQL connection from DATABASE_URL, or None.

        Without DATABASE_URL the relay runs on in-process stores.
        """
        db_url = os.getenv("DATABASE_URL")
        if not db_url:
            return None
        try:
            from psycopg import Connection
            from psycopg.rows import dict_row

            return Connection.connect(
                db_url,
                autocommit=True,
                prepare_threshold=0,
                row_factory=dict_row,
            )
        except Exception as e:
            warnings.warn(
                f"Failed to connect to PostgreSQL: {e}. Falling back to in-memory stores."
            )
            return None

    def create_context(
        self,
        payload,
        user_id: Optional[str] = None,
        settings: Optional[dict] = None,
    ) -> RequestContext:
        request = payload if isinstance(payload, RelayRequest) else RelayRequest.from_payload(payload)
        return RequestContext(
            request=request,
            config=self.config.with_settings(settings),
            user_id=user_id,
        )

    def _create_summarizer(self, ctx: RequestContext) -> ConversationSummarizer:
        model_name = ctx.config.summarizer_model or ctx.request.model
        try:
            llm = self.model_factory(
                model_name,
                temperature=SUMMARIZER_TEMPERATURE,
                max_tokens=SUMMARIZER_MAX_TOKENS,
            )
        except Exception as e:
            logger.warning("Failed to create summarizer LLM: %s", e)
            llm = None
        return ConversationSummarizer(llm=llm)

    def prepare_messages(self, ctx: RequestContext) -> list[BaseMessage]:
        """Compressed outbound messages with the memory block injected."""
        request = ctx.request
        orchestrator = CompressionOrchestrator(
            config=ctx.config,
            turn_store=self.turn_store,
            cache=self.cache,
            summarizer=self._create_summarizer(ctx),
        )
        ctx.compression = orchestrator.apply(
            request.messages,
            request.conversation_id,
            request.model,
            request.module,
        )
        messages = list(ctx.compression.messages)

        if ctx.user_id and profile_for(request.module).injects_memories(request.is_first_message):
            try:
                contents = self.memory_store.fetch_confirmed_contents(ctx.user_id)
            except Exception as e:
                logger.warning("Failed to load memories for %s: %s", ctx.user_id, e)
                contents = []
            block = build_memory_message(contents)
            if block is not None:
                position = 0
                while (
                    position < len(messages)
                    and isinstance(messages[position], SystemMessage)
                    and messages[position].id != "compression-summary"
                ):
                    position += 1
                messages.insert(position, block)
        return messages

    def _create_upstream(self, ctx: RequestContext):
        request = ctx.request
        return self.model_factory(
            request.model,
            reasoning=request.reasoning,
            temperature=request.temperature,
            top_p=request.top_p,
            max_tokens=request.max_tokens,
        )

    def stream_reply(self, ctx: RequestContext) -> Iterator[dict]:
        """
        Event-level streaming.

        Yields:
            - {"type": "thinking", "content": "..."}
            - {"type": "text", "content": "..."}
            - {"type": "error", "message": "..."}
            - {"type": "done", "response": "...", "reasoning": "...", "cancelled": bool}

        If the consumer stops early, cancels the context, or the upstream
        call fails, whatever was assembled so far is still persisted.
        """
        emitter = StreamEventEmitter()
        messages = self.prepare_messages(ctx)
        model = self._create_upstream(ctx)
        completed = False

        try:
            for chunk in model.stream(messages):
                if ctx.cancelled:
                    break
                for kind, content in self._chunk_parts(chunk, ctx.splitter):
                    yield (emitter.thinking(content) if kind == "thinking" else emitter.text(content)).data
            else:
                completed = True
        except Exception as e:
            logger.warning("Upstream stream failed: %s", e)
            yield emitter.error(str(e)).data
            raise
        finally:
            if not completed:
                ctx.splitter.finish()
                self._persist(ctx, partial=True)

        if not completed:
            state = ctx.splitter.state
            yield emitter.done(state.answer, state.reasoning, cancelled=True).data
            return

        # A partial marker still held back at end of stream is dropped
        ctx.splitter.finish()
        self._persist(ctx, partial=False)
        state = ctx.splitter.state
        yield emitter.done(state.answer, state.reasoning).data

    def complete(self, ctx: RequestContext) -> dict:
        """Non-streaming call; the reply still goes through the splitter."""
        messages = self.prepare_messages(ctx)
        model = self._create_upstream(ctx)
        response = model.invoke(messages)
        list(self._chunk_parts(response, ctx.splitter))
        ctx.splitter.finish(flush_carry=True)
        self._persist(ctx, partial=False)
        state = ctx.splitter.state
        return {"response": state.answer, "reasoning": state.reasoning}

    @staticmethod
    def _chunk_parts(chunk, splitter: StreamSplitter) -> Iterator[tuple[str, str]]:
        """
        Route one message chunk into the splitter.

        Plain text goes through the <think> marker state machine; reasoning
        the provider already delivers separately (content blocks or
        reasoning_content) goes straight to the reasoning accumulator.
        """
        state = splitter.state
        extra = getattr(chunk, "additional_kwargs", None) or {}
        for key in ("reasoning_content", "reasoning"):
            value = extra.get(key)
            if isinstance(value, str) and value:
                state.reasoning += value
                yield "thinking", value

        content = getattr(chunk, "content", "")
        blocks = [content] if isinstance(content, str) else content if isinstance(content, list) else []
        for block in blocks:
            if isinstance(block, dict):
                btype = block.get("type", "")
                if btype in ("thinking", "reasoning"):
                    text = block.get("thinking") or block.get("reasoning") or ""
                    if text:
                        state.reasoning += text
                        yield "thinking", text
                    continue
                if btype != "text":
                    continue
                block = block.get("text") or ""
            if not isinstance(block, str) or not block:
                continue
            part = splitter.feed(block)
            if part.reasoning:
                yield "thinking", part.reasoning
            if part.answer:
                yield "text", part.answer

    def _persist(self, ctx: RequestContext, partial: bool):
        """Best-effort reply persistence; runs at most once per context."""
        if ctx.persisted or self.reply_sink is None:
            return
        ctx.persisted = True
        state = ctx.splitter.state
        if partial and not (state.answer or state.reasoning):
            return
        try:
            self.reply_sink(ctx.request.conversation_id, state.answer, state.reasoning, partial)
        except Exception as e:
            logger.warning(
                "Failed to persist %sreply for %s: %s",
                "partial " if partial else "", ctx.request.conversation_id, e,
            )

    def extract_memories(
        self,
        user_id: str,
        recent_turns: list,
        model_name: str,
        merge_enabled: Optional[bool] = None,
        settings: Optional[dict] = None,
    ) -> ExtractionResult:
        """Run the memory extraction pipeline over a recent-turns window."""
        config = self.config.with_settings(settings)
        try:
            llm = self.model_factory(
                model_name,
                temperature=EXTRACTOR_TEMPERATURE,
                max_tokens=EXTRACTOR_MAX_TOKENS,
            )
        except Exception as e:
            logger.warning("Failed to create extraction LLM: %s", e)
            llm = None
        pipeline = MemoryExtractionPipeline(MemoryExtractor(llm), self.memory_store, config)
        return pipeline.run(user_id, recent_turns, merge_enabled=merge_enabled)
