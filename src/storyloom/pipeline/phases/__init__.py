"""Phases of a generation turn.

Each phase is a class whose ``execute(input)`` returns a
:class:`~storyloom.pipeline.streams.PhaseRun`: iterate it for events, then
read ``run.result``. Collaborators are passed in as a dependencies object
matching the phase's Protocol.
"""

from storyloom.pipeline.phases.background_image import (
    BackgroundImageDependencies,
    BackgroundImageInput,
    BackgroundImagePhase,
    BackgroundImageResult,
)
from storyloom.pipeline.phases.classification import (
    ClassificationDependencies,
    ClassificationInput,
    ClassificationPhase,
    ClassificationPhaseResult,
    ClassificationResult,
    SceneInfo,
)
from storyloom.pipeline.phases.image import (
    ImageDependencies,
    ImageGenerationContext,
    ImageInput,
    ImagePhase,
    ImageResult,
)
from storyloom.pipeline.phases.narrative import (
    MAX_EMPTY_RESPONSE_RETRIES,
    EmptyNarrativeError,
    NarrativeDependencies,
    NarrativeInput,
    NarrativePhase,
    NarrativeRequest,
    NarrativeResult,
    NarrativeRun,
    StreamChunk,
)
from storyloom.pipeline.phases.post import (
    ActionChoice,
    PostGenerationDependencies,
    PostGenerationInput,
    PostGenerationPhase,
    PostGenerationResult,
    Suggestion,
)
from storyloom.pipeline.phases.pre import (
    PreGenerationInput,
    PreGenerationPhase,
    PreGenerationResult,
)
from storyloom.pipeline.phases.retrieval import (
    RetrievalDependencies,
    RetrievalInput,
    RetrievalPhase,
)
from storyloom.pipeline.phases.translation import (
    TranslationDependencies,
    TranslationInput,
    TranslationPhase,
    TranslationResult,
)

__all__ = [
    "MAX_EMPTY_RESPONSE_RETRIES",
    "ActionChoice",
    "BackgroundImageDependencies",
    "BackgroundImageInput",
    "BackgroundImagePhase",
    "BackgroundImageResult",
    "ClassificationDependencies",
    "ClassificationInput",
    "ClassificationPhase",
    "ClassificationPhaseResult",
    "ClassificationResult",
    "ImageDependencies",
    "ImageGenerationContext",
    "ImageInput",
    "ImagePhase",
    "ImageResult",
    "EmptyNarrativeError",
    "NarrativeDependencies",
    "NarrativeInput",
    "NarrativePhase",
    "NarrativeRequest",
    "NarrativeResult",
    "NarrativeRun",
    "PostGenerationDependencies",
    "PostGenerationInput",
    "PostGenerationPhase",
    "PostGenerationResult",
    "PreGenerationInput",
    "PreGenerationPhase",
    "PreGenerationResult",
    "RetrievalDependencies",
    "RetrievalInput",
    "RetrievalPhase",
    "SceneInfo",
    "StreamChunk",
    "Suggestion",
    "TranslationDependencies",
    "TranslationInput",
    "TranslationPhase",
    "TranslationResult",
]
