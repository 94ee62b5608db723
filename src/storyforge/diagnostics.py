"""Append-only JSON Lines log of illustration attempts.

Each attempt, final failure and end-of-run summary becomes one line in
``image-generation.jsonl``. The file is rotated to
``image-generation.previous.jsonl`` once it reaches the size threshold, so at
most one older generation of history is kept. Writing never raises: an I/O
problem is reported through :mod:`logging` and the generation carries on.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_core import PydanticSerializationError

from storyforge.utils import prompt_preview

logger = logging.getLogger(__name__)

LOG_FILE_NAME = "image-generation.jsonl"
MAX_LOG_FILE_SIZE_BYTES = 2_000_000


class DiagnosticEvent(str, Enum):
    ATTEMPT_FAILED = "attempt_failed"
    ATTEMPT_SUCCEEDED = "attempt_succeeded"
    GENERATION_FAILED_FINAL = "generation_failed_final"
    SESSION_SUMMARY = "session_summary"


class DiagnosticEntry(BaseModel):
    """One immutable line of the diagnostics log."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event: DiagnosticEvent
    provider: str
    prompt_preview: str = ""
    prompt_length: int = 0
    page_index: Optional[int] = None
    variant_label: Optional[str] = None
    variant_index: Optional[int] = None
    attempt_index: Optional[int] = None
    retryable: Optional[bool] = None
    error_type: Optional[str] = None
    error_description: Optional[str] = None
    duration_seconds: Optional[float] = None
    concept_count: Optional[int] = None
    concept_labels: Optional[List[str]] = None
    summary: Optional[Dict[str, Any]] = None

    def to_json_line(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True) + "\n"


class DiagnosticsLogger:
    """Serialized writer for the illustration diagnostics log."""

    def __init__(self, path: Path, max_bytes: int = MAX_LOG_FILE_SIZE_BYTES):
        self.path = Path(path).expanduser()
        self.max_bytes = max_bytes
        self._lock = asyncio.Lock()

    @property
    def backup_path(self) -> Path:
        return self.path.with_name(f"{self.path.stem}.previous{self.path.suffix}")

    async def log_attempt_failure(
        self,
        *,
        provider: str,
        prompt: str,
        error: BaseException,
        retryable: bool,
        variant_label: Optional[str] = None,
        variant_index: Optional[int] = None,
        attempt_index: Optional[int] = None,
        page_index: Optional[int] = None,
        duration_seconds: Optional[float] = None,
        concept_labels: Optional[List[str]] = None,
    ) -> None:
        await self.append(DiagnosticEntry(
            event=DiagnosticEvent.ATTEMPT_FAILED,
            provider=provider,
            prompt_preview=prompt_preview(prompt),
            prompt_length=len(prompt),
            page_index=page_index,
            variant_label=variant_label,
            variant_index=variant_index,
            attempt_index=attempt_index,
            retryable=retryable,
            error_type=_error_type(error),
            error_description=str(error),
            duration_seconds=duration_seconds,
            concept_count=len(concept_labels) if concept_labels is not None else None,
            concept_labels=concept_labels,
        ))

    async def log_attempt_success(
        self,
        *,
        provider: str,
        prompt: str,
        variant_label: Optional[str] = None,
        variant_index: Optional[int] = None,
        attempt_index: Optional[int] = None,
        page_index: Optional[int] = None,
        duration_seconds: Optional[float] = None,
        concept_labels: Optional[List[str]] = None,
    ) -> None:
        await self.append(DiagnosticEntry(
            event=DiagnosticEvent.ATTEMPT_SUCCEEDED,
            provider=provider,
            prompt_preview=prompt_preview(prompt),
            prompt_length=len(prompt),
            page_index=page_index,
            variant_label=variant_label,
            variant_index=variant_index,
            attempt_index=attempt_index,
            duration_seconds=duration_seconds,
            concept_count=len(concept_labels) if concept_labels is not None else None,
            concept_labels=concept_labels,
        ))

    async def log_final_failure(
        self,
        *,
        provider: str,
        prompt: str,
        error: BaseException,
        page_index: Optional[int] = None,
        duration_seconds: Optional[float] = None,
    ) -> None:
        await self.append(DiagnosticEntry(
            event=DiagnosticEvent.GENERATION_FAILED_FINAL,
            provider=provider,
            prompt_preview=prompt_preview(prompt),
            prompt_length=len(prompt),
            page_index=page_index,
            error_type=_error_type(error),
            error_description=str(error),
            duration_seconds=duration_seconds,
        ))

    async def log_session_summary(
        self,
        *,
        total_pages: int,
        success_count: int,
        failure_count: int,
        variant_success_counts: Dict[str, int],
        total_duration_seconds: float,
    ) -> None:
        attempts = sum(variant_success_counts.values()) or 1
        summary = {
            "totalPages": total_pages,
            "successCount": success_count,
            "failureCount": failure_count,
            "variantSuccessCounts": dict(sorted(variant_success_counts.items())),
            "variantSuccessRates": {
                label: round(count / attempts, 3)
                for label, count in sorted(variant_success_counts.items())
            },
            "totalDurationSeconds": round(total_duration_seconds, 2),
        }
        await self.append(DiagnosticEntry(
            event=DiagnosticEvent.SESSION_SUMMARY,
            provider="all",
            prompt_preview=json.dumps(summary, sort_keys=True),
            prompt_length=0,
            duration_seconds=total_duration_seconds,
            summary=summary,
        ))

    async def append(self, entry: DiagnosticEntry) -> None:
        """Write one entry. Failures are logged, never raised."""
        try:
            line = entry.to_json_line()
        except (ValueError, PydanticSerializationError) as e:
            logger.warning(f"Diagnostics entry for {entry.provider} could not be serialized: {e}")
            return
        async with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._rotate_if_needed()
                with open(self.path, "a", encoding="utf-8") as handle:
                    handle.write(line)
            except (OSError, ValueError) as e:
                logger.warning(f"Diagnostics append failed for {self.path}: {e}")

    def _rotate_if_needed(self) -> None:
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return
        if size < self.max_bytes:
            return
        backup = self.backup_path
        backup.unlink(missing_ok=True)
        self.path.rename(backup)
        logger.debug(f"Rotated diagnostics log to {backup}")

    def read_entries(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Entries currently in the log, oldest first; unreadable lines are skipped."""
        try:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning(f"Could not read diagnostics log {self.path}: {e}")
            return []

        entries = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                logger.debug("Skipping malformed diagnostics line")
        return entries[-limit:] if limit else entries


def _error_type(error: BaseException) -> str:
    return getattr(error, "error_type", None) or type(error).__name__
