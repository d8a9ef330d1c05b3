import yaml
import re
from pydantic_settings import BaseSettings
from functools import lru_cache
from pathlib import Path
from typing import List, Optional
from dotenv import load_dotenv
import os

# Load .env from project root
project_root = Path(__file__).parent.parent.parent
env_path = project_root / ".env"
load_dotenv(env_path)


def substitute_env_vars(value):
    """
    Recursively substitute ${VAR_NAME} or ${VAR_NAME:-default} patterns
    with environment variable values.
    """
    if isinstance(value, str):
        pattern = r'\$\{([^}:]+)(?::-([^}]*))?\}'

        def replace_match(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else ""
            return os.environ.get(var_name, default_value)

        return re.sub(pattern, replace_match, value)
    elif isinstance(value, dict):
        return {k: substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [substitute_env_vars(item) for item in value]
    return value


def load_yaml_with_env(yaml_path: Path) -> dict:
    """Load YAML file with environment variable substitution."""
    if not yaml_path.exists():
        return {}

    with open(yaml_path) as f:
        raw_config = yaml.safe_load(f) or {}

    return substitute_env_vars(raw_config)


DOCX_MIMETYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


class ProcessingSettings(BaseSettings):
    max_retries: int = 3
    initial_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0
    backoff_jitter_seconds: float = 0.5
    dispatch: str = "background"  # background, queue
    job_timeout: int = 600


class UploadSettings(BaseSettings):
    max_size_mb: int = 50
    allowed_mimetypes: List[str] = [
        "application/pdf",
        DOCX_MIMETYPE,
        "image/png",
        "image/jpeg",
    ]

    @property
    def max_size_bytes(self) -> int:
        return self.max_size_mb * 1024 * 1024


class StorageSettings(BaseSettings):
    type: str = "local"
    bucket: str = "lab-uploads"
    base_path: str = "storage"


class DatabaseSettings(BaseSettings):
    url: str = "sqlite:///./lab_ingestion.db"


class GeminiSettings(BaseSettings):
    model: str = "gemini-1.5-flash"
    api_key: Optional[str] = None
    summary_timeout: float = 15.0
    summaries_enabled: bool = True
    # Ask Gemini for biomarkers the pattern extractor missed
    extraction_assist_enabled: bool = False
    extraction_timeout: float = 20.0


class RedisSettings(BaseSettings):
    url: str = "redis://localhost:6379/0"


class OcrSettings(BaseSettings):
    """Settings for the Tesseract OCR capability."""
    language: str = "eng"
    timeout: int = 30
    render_resolution: int = 300
    # Pages with fewer non-whitespace characters are treated as scanned
    scanned_page_min_chars: int = 25
    image_cleanup: bool = True


class PreprocessingSettings(BaseSettings):
    """Settings for lab text preprocessing."""
    column_gap_min_spaces: int = 3
    column_min_lines: int = 3
    column_min_line_share: float = 0.3
    column_entry_share: float = 0.6
    header_footer_scan_lines: int = 3
    header_footer_similarity: float = 90.0
    ocr_error_threshold_per_1000: float = 2.0


class ExtractionSettings(BaseSettings):
    """Settings for biomarker extraction."""
    vocabulary_path: str = str(project_root / "config" / "biomarkers.yaml")
    fuzzy_threshold: float = 0.88
    line_window: int = 2


class ProgressSettings(BaseSettings):
    backend: str = "memory"  # memory, redis
    ttl_seconds: int = 300


class TierLimitSettings(BaseSettings):
    max_uploads_per_year: Optional[int] = None


class Settings(BaseSettings):
    processing: ProcessingSettings = ProcessingSettings()
    upload: UploadSettings = UploadSettings()
    storage: StorageSettings = StorageSettings()
    database: DatabaseSettings = DatabaseSettings()
    gemini: GeminiSettings = GeminiSettings()
    redis: RedisSettings = RedisSettings()
    ocr: OcrSettings = OcrSettings()
    preprocessing: PreprocessingSettings = PreprocessingSettings()
    extraction: ExtractionSettings = ExtractionSettings()
    progress: ProgressSettings = ProgressSettings()
    tier_limits: TierLimitSettings = TierLimitSettings()

    class Config:
        env_file = ".env"
        env_nested_delimiter = "__"
        extra = "ignore"  # Ignore extra fields not in the model


@lru_cache()
def get_settings() -> Settings:
    """Load settings from YAML config file with environment variable substitution."""
    config_path = project_root / "config" / "settings.yaml"

    yaml_config = load_yaml_with_env(config_path)

    return Settings(**yaml_config)
