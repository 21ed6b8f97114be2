from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ArtifactSearchPolicy(BaseModel):
    max_candidates: int = 20
    max_depth: int = 12
    skip_dirs: List[str] = Field(default_factory=lambda: [".git", "node_modules"])


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="WASMVERIFY_", frozen=True)

    repo_url: str = "https://github.com/dfinity/ic.git"
    build_image: str = "ghcr.io/dfinity/ic-build:latest"
    container_engine: str = "docker"
    container_args: List[str] = Field(default_factory=list)
    runner: Literal["container", "local"] = "container"
    work_root: Optional[str] = None
    git_bin: str = "git"
    shell: str = "bash"

    source_timeout_s: float = 30.0
    inference_timeout_s: float = 120.0
    fetch_timeout_s: float = 900.0
    step_timeout_s: float = 4 * 3600.0
    run_budget_s: Optional[float] = None

    artifact_search: ArtifactSearchPolicy = Field(default_factory=ArtifactSearchPolicy)

    dashboard_url: str = "https://ic-api.internetcomputer.org/api/v3/proposals"
    inference_model: str = "gemini-2.0-flash"
    inference_endpoint: str = "https://generativelanguage.googleapis.com/v1beta/models"
    inference_api_key: Optional[str] = None
    inference_temperature: float = 0.1
    inference_max_output_tokens: int = 1024

    def image_is_pinned(self) -> bool:
        return "@sha256:" in self.build_image

    def environment_id(self) -> str:
        if self.runner == "local":
            return f"local:{self.shell}"
        return f"{self.container_engine}:{self.build_image}"
