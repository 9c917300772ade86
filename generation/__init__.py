from .blocks import BlockEditError
from .profile import GenerationProfile, default_profile, load_profile
from .selector import RunCancelled
from .types import GenerationVariant, TaskDiagnostics, TaskRunResult, TranscriptSegment

__all__ = [
    "BlockEditError",
    "GenerationProfile",
    "GenerationVariant",
    "RunCancelled",
    "TaskDiagnostics",
    "TaskRunResult",
    "TranscriptSegment",
    "default_profile",
    "load_profile",
]
