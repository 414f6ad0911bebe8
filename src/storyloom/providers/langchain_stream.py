"""LangChain adapter for narrative streaming."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from storyloom.observability import get_logger
from storyloom.pipeline.abort import AbortError
from storyloom.pipeline.phases.narrative import StreamChunk

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from langchain_core.language_models import BaseChatModel
    from langchain_core.messages import AIMessageChunk

    from storyloom.pipeline.phases.narrative import NarrativeRequest
    from storyloom.storage.models import StoryEntry

log = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are the narrator of an interactive story. Continue the story in response "
    "to the reader's latest action. Write in {pov} person, {tense} tense."
)


class ProviderError(Exception):
    """Raised when the model stream fails."""

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"{provider}: {message}")


def _entry_message(entry: StoryEntry) -> BaseMessage:
    if entry.type == "user_action":
        return HumanMessage(content=entry.content)
    if entry.type == "narration":
        return AIMessage(content=entry.content)
    return SystemMessage(content=entry.content)


def build_messages(request: NarrativeRequest, system_prompt: str) -> list[BaseMessage]:
    """Chat messages for a narrative request.

    Retrieved context is appended to the system prompt; story entries
    become alternating human/AI turns.
    """
    settings = request.story.settings
    system = system_prompt.format(pov=settings.pov, tense=settings.tense)
    if request.retrieved_context:
        system += "\n\n<story_context>\n" + request.retrieved_context + "\n</story_context>"
    return [SystemMessage(content=system), *(_entry_message(e) for e in request.entries)]


def _split_chunk(chunk: AIMessageChunk) -> tuple[str, str]:
    """(content, reasoning) text carried by a streamed chunk."""
    reasoning = str(chunk.additional_kwargs.get("reasoning_content") or "")
    content: Any = chunk.content
    if isinstance(content, str):
        return content, reasoning
    text: list[str] = []
    for part in content:
        if isinstance(part, str):
            text.append(part)
        elif part.get("type") == "text":
            text.append(part.get("text", ""))
        elif part.get("type") in ("reasoning", "thinking"):
            reasoning += part.get("reasoning") or part.get("thinking") or ""
    return "".join(text), reasoning


class LangChainNarrativeStreamer:
    """Implements ``stream_narrative`` over a LangChain chat model."""

    def __init__(
        self,
        model: BaseChatModel,
        *,
        provider: str = "langchain",
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> None:
        self._model = model
        self._provider = provider
        self._system_prompt = system_prompt

    async def stream_narrative(self, request: NarrativeRequest) -> AsyncIterator[StreamChunk]:
        """Yield chunks from the model, stopping as soon as the turn is aborted.

        Raises:
            AbortError: If the signal is set while streaming.
            ProviderError: If the model call fails.
        """
        signal = request.signal
        messages = build_messages(request, self._system_prompt)
        count = 0
        try:
            async for chunk in self._model.astream(messages):
                if signal.aborted:
                    raise AbortError(signal.reason)
                content, reasoning = _split_chunk(chunk)
                count += 1
                yield StreamChunk(content=content, reasoning=reasoning)
        except AbortError:
            raise
        except Exception as e:
            raise ProviderError(self._provider, f"Streaming failed: {e}") from e
        log.debug("narrative_stream_finished", provider=self._provider, chunks=count)
        yield StreamChunk(done=True)


def make_narrative_streamer(
    model: BaseChatModel, *, provider: str = "langchain", system_prompt: str | None = None
) -> LangChainNarrativeStreamer:
    """Wrap *model* so it can serve as the pipeline's narrative dependency."""
    return LangChainNarrativeStreamer(
        model, provider=provider, system_prompt=system_prompt or DEFAULT_SYSTEM_PROMPT
    )
