"""Configuration management for the ragprep pipeline."""

from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Layout analysis (Azure Document Intelligence)
    azure_doc_endpoint: str = ""
    azure_doc_key: str = ""
    azure_api_version: str = "2024-11-30"
    azure_model_id: str = "prebuilt-layout"
    azure_poll_interval: float = 1.0
    azure_max_poll_seconds: float = 600.0

    # Vision (OpenAI)
    openai_api_key: Optional[str] = None
    vision_model: str = "gpt-4o-mini"

    # Job store
    database_url: str = "sqlite:///ragprep_jobs.db"

    # Output
    output_root: str = "./out/jobs"
    vision_debug: bool = True

    # Processing
    render_dpi: int = 150
    max_workers: int = 4
    service_timeout_seconds: float = 120.0

    # Diagram detection
    enable_vision_segmentation: bool = False
    vision_trigger: Literal["caption", "empty_page"] = "caption"
    max_vision_pages: int = 20
    caption_pattern: str = r"^(Figure|Fig\.?|Diagram|Image)\s+[\dA-Z][\dA-Z.-]*\s*:?"

    # Enrichment
    handwriting_vision: bool = False
    caption_diagrams: bool = False

    # Quality
    low_confidence_threshold: float = 0.9
    diagram_confidence_threshold: float = 0.7
    vision_confirm_confidence: Optional[float] = None

    # Tables
    table_page_gap: int = 0
    table_preview_rows: int = 20

    # Narrative chunking
    narrative_max_chars: int = 4000
    narrative_overlap: int = 500

    # Logging
    log_level: str = "INFO"

    @property
    def vision_enabled(self) -> bool:
        """Whether any vision client can be built."""
        return bool(self.openai_api_key)

    @property
    def layout_configured(self) -> bool:
        """Whether the layout service endpoint and key are set."""
        return bool(self.azure_doc_endpoint and self.azure_doc_key)


settings = Settings()
