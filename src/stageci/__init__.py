from .dsl import build, checkout, matrix, pipeline, stage, StageBuilder
from .model import PipelineSpec, RunReport, RunStatus, StageResult, StageSpec, StageStatus
from .runner import PipelineRun, execute

__all__ = [
    "build", "checkout", "matrix", "pipeline", "stage", "StageBuilder",
    "PipelineSpec", "RunReport", "RunStatus", "StageResult", "StageSpec", "StageStatus",
    "PipelineRun", "execute",
]
