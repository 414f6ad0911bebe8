"""Generation pipeline: phases, events, cancellation and configuration."""

from storyloom.pipeline.abort import AbortController, AbortError, AbortSignal
from storyloom.pipeline.config import (
    GenerationSettings,
    ImageSettings,
    ProjectConfig,
    ProjectConfigError,
    StorageConfig,
    TranslationSettings,
    create_default_config,
    load_project_config,
    write_project_config,
)
from storyloom.pipeline.context import (
    GenerationContext,
    MemoryConfig,
    RetrievalResult,
    UserAction,
    WorldState,
)
from storyloom.pipeline.events import (
    Aborted,
    ClassificationComplete,
    ErrorEvent,
    GenerationEvent,
    GenerationPhase,
    NarrativeChunk,
    NarrativeComplete,
    PhaseComplete,
    PhaseStart,
    describe_event,
)
from storyloom.pipeline.generation import (
    GenerationPipeline,
    PipelineConfig,
    PipelineDependencies,
    PipelineError,
    PipelineResult,
    PipelineRun,
)
from storyloom.pipeline.streams import PhaseReturn, PhaseRun, merge

__all__ = [
    "AbortController",
    "AbortError",
    "AbortSignal",
    "Aborted",
    "ClassificationComplete",
    "ErrorEvent",
    "GenerationContext",
    "GenerationEvent",
    "GenerationPhase",
    "GenerationPipeline",
    "GenerationSettings",
    "ImageSettings",
    "MemoryConfig",
    "NarrativeChunk",
    "NarrativeComplete",
    "PhaseComplete",
    "PhaseReturn",
    "PhaseRun",
    "PhaseStart",
    "PipelineConfig",
    "PipelineDependencies",
    "PipelineError",
    "PipelineResult",
    "PipelineRun",
    "ProjectConfig",
    "ProjectConfigError",
    "RetrievalResult",
    "StorageConfig",
    "TranslationSettings",
    "UserAction",
    "WorldState",
    "create_default_config",
    "describe_event",
    "load_project_config",
    "merge",
    "write_project_config",
]
