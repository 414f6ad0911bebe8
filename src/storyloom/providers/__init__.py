"""Model adapters for pipeline dependencies."""

from storyloom.providers.langchain_stream import (
    LangChainNarrativeStreamer,
    ProviderError,
    build_messages,
    make_narrative_streamer,
)

__all__ = [
    "LangChainNarrativeStreamer",
    "ProviderError",
    "build_messages",
    "make_narrative_streamer",
]
