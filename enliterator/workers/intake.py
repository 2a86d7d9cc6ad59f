"""
Stage 1: Intake.

Stats each file, hashes it, classifies its media type and keeps a text
sample for the rights and extraction stages.
"""

import asyncio
import hashlib
import logging
import os
import re
from collections import Counter
from typing import Any, Optional

from enliterator.core.exceptions import ItemError
from enliterator.core.models import Item
from enliterator.core.pipeline.worker import ItemStageWorker, StageContext, StageResult

logger = logging.getLogger(__name__)

_CONFIG_NAMES = re.compile(r"^(gemfile|rakefile|dockerfile|makefile|procfile|guardfile|capfile|brewfile)")
_CONFIG_HINTS = re.compile(r"config|settings|database|credentials|secrets")
_CONFIG_MANIFESTS = {"package.json", "composer.json", "cargo.toml", "pyproject.toml"}

_EXTENSION_TYPES: dict[str, tuple[str, ...]] = {
    "code": (
        ".rb", ".py", ".js", ".ts", ".jsx", ".tsx", ".java", ".go", ".rs", ".cpp", ".c", ".h",
        ".php", ".swift", ".kt", ".scala", ".clj", ".ex", ".exs", ".erl", ".hs", ".ml", ".fs",
    ),
    "text": (".md", ".txt", ".rst", ".adoc", ".org", ".textile", ".rdoc", ".pod", ".man"),
    "config": (".yml", ".yaml", ".toml", ".ini", ".cfg", ".conf", ".properties", ".env"),
    "document": (".pdf", ".doc", ".docx", ".odt", ".rtf", ".tex", ".epub"),
    "image": (".jpg", ".jpeg", ".png", ".gif", ".svg", ".ico", ".bmp", ".tiff", ".webp"),
    "audio": (".mp3", ".wav", ".ogg", ".m4a", ".flac", ".aac", ".wma"),
    "video": (".mp4", ".mov", ".avi", ".wmv", ".flv", ".mkv", ".webm", ".m4v", ".mpg", ".mpeg"),
    "binary": (
        ".exe", ".dll", ".so", ".dylib", ".bin", ".dat", ".db", ".sqlite", ".zip", ".tar", ".gz", ".rar",
    ),
}
_BY_EXTENSION = {ext: media for media, exts in _EXTENSION_TYPES.items() for ext in exts}
_DATA_EXTENSIONS = {".json", ".xml", ".csv", ".tsv", ".jsonl", ".ndjson"}

TEXTUAL_MEDIA_TYPES = frozenset({"code", "text", "config", "data"})


def detect_media_type(file_path: str) -> str:
    """Classify a file by name and extension."""
    basename = os.path.basename(file_path).lower()
    extension = os.path.splitext(basename)[1]

    if _CONFIG_NAMES.match(basename):
        return "config"
    if extension in (".yml", ".yaml") and _CONFIG_HINTS.search(basename):
        return "config"
    if basename in _CONFIG_MANIFESTS:
        return "config"

    if extension in _DATA_EXTENSIONS:
        normalized = file_path.replace(os.sep, "/")
        if "/config/" in normalized or "/settings/" in normalized or re.search(r"config|settings|manifest", basename):
            return "config"
        return "data"

    return _BY_EXTENSION.get(extension, "unknown")


def _hash_and_sample(path: str, sample_bytes: int) -> tuple[str, bytes]:
    digest = hashlib.sha256()
    sample = b""
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            if len(sample) < sample_bytes:
                sample += chunk[: sample_bytes - len(sample)]
            digest.update(chunk)
    return digest.hexdigest(), sample


class IntakeWorker(ItemStageWorker):
    """Bundle discovery and file processing."""

    async def process_item(self, ctx: StageContext, item: Item) -> Optional[dict[str, Any]]:
        path = item.file_path
        if not os.path.isfile(path):
            raise ItemError(f"File not found: {path}")

        try:
            size = os.path.getsize(path)
            source_hash, raw_sample = await asyncio.to_thread(
                _hash_and_sample, path, ctx.settings.CONTENT_SAMPLE_BYTES
            )
        except OSError as e:
            raise ItemError(f"Could not read {path}: {e}") from e

        media_type = detect_media_type(path)
        content_sample = None
        if media_type in TEXTUAL_MEDIA_TYPES or media_type == "unknown":
            content_sample = raw_sample.decode("utf-8", errors="replace")

        await ctx.ledger.update_item(
            item.id,
            media_type=media_type,
            source_hash=source_hash,
            size_bytes=size,
            content_sample=content_sample,
        )
        return {"media_type": media_type, "size_bytes": size}

    async def finalize(self, ctx: StageContext, result: StageResult) -> StageResult:
        items = await ctx.ledger.get_items(ctx.batch_id)
        media_types = Counter(item.media_type for item in items)
        batch = await ctx.ledger.get_batch(ctx.batch_id)
        await ctx.ledger.update_batch(
            ctx.batch_id,
            statistics={
                **(batch.statistics if batch else {}),
                "media_types": dict(media_types),
                "total_bytes": sum(item.size_bytes or 0 for item in items),
            },
        )
        result.counters["media_types"] = dict(media_types)
        logger.info(f"Intake finished for batch {ctx.batch_id}: {dict(media_types)}")
        return result
