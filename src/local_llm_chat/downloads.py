"""Fetches catalog model files from a Hugging Face compatible host."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, Dict

import requests

from .llm.types import ModelDescriptor, ModelFileError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def model_download_url(base_url: str, model: ModelDescriptor) -> str:
    return f"{base_url.rstrip('/')}/{model.source_repo.strip('/')}/resolve/main/{model.source_file.lstrip('/')}"


def _auth_headers(token: str | None) -> Dict[str, str]:
    token = token if token is not None else (os.getenv("HF_TOKEN") or os.getenv("HUGGING_FACE_HUB_TOKEN"))
    if token:
        return {"Authorization": f"Bearer {token}"}
    return {}


def download_model(
    model: ModelDescriptor,
    base_url: str = "https://huggingface.co",
    token: str | None = None,
    timeout_seconds: int = 60,
    on_progress: Callable[[int, int], None] | None = None,
) -> Path:
    """Streams the model file into place; the target only appears when complete."""
    if not model.source_repo or not model.source_file or not model.local_path:
        raise ModelFileError(f"model {model.id} is missing source_repo, source_file or local_path")

    target = Path(model.local_path)
    partial = target.with_name(target.name + ".part")
    url = model_download_url(base_url, model)
    target.parent.mkdir(parents=True, exist_ok=True)
    logger.info("Downloading %s -> %s", url, target)

    try:
        response = requests.get(url, headers=_auth_headers(token), stream=True, timeout=timeout_seconds)
    except requests.RequestException as exc:
        raise ModelFileError(f"download failed for {model.id}: {exc}") from exc

    if response.status_code >= 400:
        response.close()
        raise ModelFileError(f"download failed for {model.id}: HTTP {response.status_code} from {url}")

    total = int(response.headers.get("Content-Length") or 0)
    written = 0
    try:
        with partial.open("wb") as f:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if not chunk:
                    continue
                f.write(chunk)
                written += len(chunk)
                if on_progress is not None:
                    on_progress(written, total)
        partial.replace(target)
    except (OSError, requests.RequestException) as exc:
        partial.unlink(missing_ok=True)
        raise ModelFileError(f"download failed for {model.id}: {exc}") from exc
    finally:
        response.close()

    return target
