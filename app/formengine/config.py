from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


def _load_dotenv() -> None:
    repo_root = Path(__file__).resolve().parents[2]
    candidates = [repo_root / ".env", Path.cwd() / ".env"]
    for env_path in candidates:
        if not env_path.exists():
            continue
        try:
            for line in env_path.read_text().splitlines():
                stripped = line.strip()
                if not stripped or stripped.startswith("#") or "=" not in stripped:
                    continue
                key, value = stripped.split("=", 1)
                key = key.strip()
                value = value.strip().strip('"').strip("'")
                if key and key not in os.environ:
                    os.environ[key] = value
        except Exception:  # noqa: BLE001
            continue
        break


_load_dotenv()


def _env_url(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


@dataclass(frozen=True)
class ServiceConfig:
    registry_url: Optional[str] = _env_url("FORMENGINE_REGISTRY_URL")
    history_url: Optional[str] = _env_url("FORMENGINE_HISTORY_URL")
    extraction_url: Optional[str] = _env_url("FORMENGINE_EXTRACTION_URL")
    upload_url: Optional[str] = _env_url("FORMENGINE_UPLOAD_URL")
    submission_url: Optional[str] = _env_url("FORMENGINE_SUBMISSION_URL")
    search_url: Optional[str] = _env_url("FORMENGINE_SEARCH_URL")
    hints_url: Optional[str] = _env_url("FORMENGINE_HINTS_URL")
    timeout_s: float = float(os.getenv("FORMENGINE_HTTP_TIMEOUT", "20"))


@dataclass(frozen=True)
class UploadConfig:
    max_bytes: int = int(os.getenv("FORMENGINE_UPLOAD_MAX_BYTES", str(5 * 1024 * 1024)))
    # Longest image edge kept before upload; larger photos are downscaled.
    image_max_edge: int = int(os.getenv("FORMENGINE_IMAGE_MAX_EDGE", "1920"))
    allowed_types: tuple = (
        "image/png",
        "image/jpeg",
        "image/jpg",
        "image/webp",
        "image/gif",
        "application/pdf",
    )


@dataclass(frozen=True)
class SearchConfig:
    debounce_ms: int = int(os.getenv("FORMENGINE_SEARCH_DEBOUNCE_MS", "300"))
    min_query_length: int = 2
    limit: int = 10


@dataclass(frozen=True)
class AppConfig:
    log_level: str = os.getenv("FORMENGINE_LOG_LEVEL", "INFO")
    services: ServiceConfig = field(default_factory=ServiceConfig)
    upload: UploadConfig = field(default_factory=UploadConfig)
    search: SearchConfig = field(default_factory=SearchConfig)


CONFIG = AppConfig()
