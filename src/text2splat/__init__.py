from .config import PipelineConfig, RetryPolicy, SamplingPolicy
from .errors import ErrorKind, StageError
from .models import ArtifactKind, JobStage, JobStatus, PipelineJob
from .orchestrator import PipelineOrchestrator
from .runner import CancelToken, StageResult, StageRunner

__all__ = [
    "ArtifactKind",
    "CancelToken",
    "ErrorKind",
    "JobStage",
    "JobStatus",
    "PipelineConfig",
    "PipelineJob",
    "PipelineOrchestrator",
    "RetryPolicy",
    "SamplingPolicy",
    "StageError",
    "StageResult",
    "StageRunner",
]
