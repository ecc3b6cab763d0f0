from typing import List, Optional, Union
from pathlib import Path
from pydantic import AnyHttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when a required setting is missing or unusable."""
    pass


class Settings(BaseSettings):
    PROJECT_NAME: str = "Comfy Batch"
    APP_VERSION: str = "0.1.0"

    HOST: str = "0.0.0.0"
    PORT: int = 5000
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str = "sqlite:///./comfy_batch.db"

    # ComfyUI backend
    COMFYUI_URL: str = "http://127.0.0.1:8188"
    # Directory ComfyUI writes rendered images into, e.g. /opt/ComfyUI/output.
    # Left unset on purpose: the queue refuses to claim work until it is configured.
    COMFYUI_OUTPUT_DIR: Optional[str] = None
    # Exported ComfyUI workflow used as the request template
    WORKFLOW_PATH: Path = Path("comfy") / "workflow.json"
    # When set, the prepared workflow is dumped here before each submission
    WORKFLOW_DEBUG_PATH: Optional[Path] = None

    # Relocated artifacts end up in <GENERATED_IMAGES_DIR>/<projectId>/image_NN.png
    GENERATED_IMAGES_DIR: Path = Path("generated_images")
    ARTIFACT_EXTENSION: str = ".png"

    # Sampling parameters applied to every KSampler node
    SAMPLER_STEPS: int = 20
    SAMPLER_CFG: float = 7.5

    # Queue timing (seconds)
    SUBMIT_TIMEOUT: float = 30.0
    POLL_INTERVAL: float = 1.0
    POLL_MAX_ATTEMPTS: int = 60
    TICK_DELAY: float = 1.0

    # Startup sweep of jobs left in "processing" by a crashed worker
    STALE_JOB_GRACE_SECONDS: int = 300
    STALE_JOB_ACTION: str = "pending"

    BACKEND_CORS_ORIGINS: List[AnyHttpUrl] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

    model_config = SettingsConfigDict(
        env_prefix="COMFY_BATCH_",
        env_file=".env",
        extra="ignore",
        case_sensitive=True,
    )

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    @field_validator("ARTIFACT_EXTENSION")
    @classmethod
    def normalize_extension(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("ARTIFACT_EXTENSION must not be empty")
        return v if v.startswith(".") else f".{v}"

    @field_validator("STALE_JOB_ACTION")
    @classmethod
    def check_stale_action(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("pending", "failed"):
            raise ValueError("STALE_JOB_ACTION must be 'pending' or 'failed'")
        return v

    @property
    def output_dir(self) -> Path:
        """ComfyUI output directory; raises ConfigurationError when unset."""
        if not self.COMFYUI_OUTPUT_DIR or not self.COMFYUI_OUTPUT_DIR.strip():
            raise ConfigurationError(
                "COMFY_BATCH_COMFYUI_OUTPUT_DIR is not set; cannot watch for generated images."
            )
        return Path(self.COMFYUI_OUTPUT_DIR.strip())

    def get_project_dir(self, project_id: str) -> Path:
        """Get the directory holding relocated images for a project."""
        return self.GENERATED_IMAGES_DIR / project_id

    def ensure_dirs(self) -> None:
        """Create the generated images root if it doesn't exist."""
        self.GENERATED_IMAGES_DIR.mkdir(parents=True, exist_ok=True)


settings = Settings()
