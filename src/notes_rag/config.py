from __future__ import annotations

import os
from pathlib import Path
from typing import List, Literal, Optional, Tuple

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, model_validator

ProviderType = Literal["ollama", "openai", "sentence-transformers"]


class ReasoningMarker(BaseModel):
    start: str
    end: str


DEFAULT_REASONING_MARKERS: List[ReasoningMarker] = [
    ReasoningMarker(start="```reasoning", end="```"),
    ReasoningMarker(start="<reasoning>", end="</reasoning>"),
    ReasoningMarker(start="**Reasoning:**", end="\n\n"),
    ReasoningMarker(start="Thinking:", end="\n\n"),
    ReasoningMarker(start="reasoning:", end="\n\n"),
]

DEFAULT_SYSTEM_PROMPT = (
    "You are my text editor AI agent who provides concise and helpful responses."
)


def _default_api_key() -> str:
    return os.getenv("OPENAI_API_KEY") or "lm-studio"


class AppConfig(BaseModel):
    data_dir: Path = Field(default=Path("data"))
    storage_dir: Path = Field(default=Path("index"))

    provider_type: ProviderType = Field(default="ollama")
    server_address: str = Field(default="http://localhost:11434")
    embedding_model_name: str = Field(default="mxbai-embed-large")
    openai_api_key: str = Field(default_factory=_default_api_key)
    llm_model: str = Field(default="llama3")

    chunk_size: int = Field(default=1000, ge=50)
    chunk_overlap: int = Field(default=200, ge=0)
    top_k: int = Field(default=4, ge=1)
    min_similarity: float = Field(default=0.3, ge=-1.0, le=1.0)
    max_context_chars: int = Field(default=6000, ge=1000)
    embed_batch_size: int = Field(default=32, ge=1)

    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1024, ge=1)
    stream: bool = False
    request_timeout: float = Field(default=60.0, gt=0)
    max_retries: int = Field(default=3, ge=1)

    extract_reasoning_responses: bool = False
    reasoning_markers: List[ReasoningMarker] = Field(
        default_factory=lambda: list(DEFAULT_REASONING_MARKERS)
    )
    default_system_prompt: str = DEFAULT_SYSTEM_PROMPT
    persona: str = "default"
    max_conv_history: int = Field(default=0, ge=0)

    log_level: str = "INFO"
    log_file: Optional[Path] = None

    @model_validator(mode="after")
    def _check_overlap(self) -> "AppConfig":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        return self

    @property
    def data_dir_resolved(self) -> Path:
        return self.data_dir.resolve()

    @property
    def storage_dir_resolved(self) -> Path:
        return self.storage_dir.resolve()

    @property
    def snapshot_path(self) -> Path:
        return self.storage_dir_resolved / "embeddings.json"

    def embedding_fingerprint(self) -> Tuple[str, str]:
        return self.provider_type, self.embedding_model_name


def load_config(path: Optional[Path] = None) -> AppConfig:
    """
    Load configuration from a YAML file.

    If `path` is None, looks for `config.yaml` in the current working directory.
    Also loads environment variables from a `.env` file if present.
    """
    load_dotenv()

    if path is None:
        path = Path("config.yaml")

    if not path.exists():
        # Fall back to defaults if no config file is present.
        cfg = AppConfig()
    else:
        with path.open("r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

        try:
            cfg = AppConfig(**raw)
        except ValidationError as e:
            raise SystemExit(f"Invalid configuration in {path}:\n{e}") from e

    # Ensure directories exist
    cfg.data_dir_resolved.mkdir(parents=True, exist_ok=True)
    cfg.storage_dir_resolved.mkdir(parents=True, exist_ok=True)
    return cfg


__all__ = [
    "AppConfig",
    "ProviderType",
    "ReasoningMarker",
    "DEFAULT_REASONING_MARKERS",
    "DEFAULT_SYSTEM_PROMPT",
    "load_config",
]
