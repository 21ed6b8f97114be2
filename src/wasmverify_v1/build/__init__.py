from .executor import BuildExecutor, BuildResult, artifact_suffix, search_artifacts
from .runner import ContainerRunner, LocalRunner, StepRunner, run_process
from .source import GitSourceFetcher, SourceFetcher

__all__ = [
    "BuildExecutor",
    "BuildResult",
    "artifact_suffix",
    "search_artifacts",
    "ContainerRunner",
    "LocalRunner",
    "StepRunner",
    "run_process",
    "GitSourceFetcher",
    "SourceFetcher",
]
