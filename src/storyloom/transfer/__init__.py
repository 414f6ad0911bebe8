"""Story export and ID-remapping import."""

from storyloom.transfer.remap import IdRemap
from storyloom.transfer.story_io import (
    EXPORT_VERSION,
    ImportResult,
    StoryExport,
    compare_versions,
    export_story,
    export_story_to_file,
    import_story,
    import_story_from_file,
    version_warnings,
)

__all__ = [
    "EXPORT_VERSION",
    "IdRemap",
    "ImportResult",
    "StoryExport",
    "compare_versions",
    "export_story",
    "export_story_to_file",
    "import_story",
    "import_story_from_file",
    "version_warnings",
]
