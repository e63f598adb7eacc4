# Overview: Service-layer operations for transient import sessions.

"""
Ingestion Session Store

Decouples "what is in these files" from "apply it to the database". A
session holds uploaded file metadata, extracted candidate rows and warnings
in a TTL store under

    import.session.<tenant_id>.<session_id>

LIFECYCLE: created -> parsed -> committing -> committed. Every write refreshes
the TTL; an idle session expires passively and must be recreated. A commit
first claims the session (committing) in one atomic store update, so only one
caller ever applies its rows; a failed commit releases the claim. A committed
session keeps its record (so a second commit is rejected) until it expires or
is deleted.

CONCURRENCY: every mutation is a read-modify-write through the store's
update(), never a separate load and save.

Nothing here touches durable product or stock state.
"""

from __future__ import annotations

import logging
import os
import shutil
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from flask import current_app
from werkzeug.utils import secure_filename

from ..time_utils import to_utc_z, utcnow
from ..validation import ConflictError, ValidationError
from .extractors import BaseExtractor, ExtractionResult, UsageSample, extract_file
from .kv_store import MemoryTTLStore, RedisTTLStore
from .normalizer import CandidateRow, normalize_row


logger = logging.getLogger(__name__)

SESSION_KEY = "import.session.{tenant_id}.{session_id}"

STATUS_CREATED = "created"
STATUS_PARSED = "parsed"
STATUS_COMMITTING = "committing"
STATUS_COMMITTED = "committed"

OPEN_STATUSES = (STATUS_CREATED, STATUS_PARSED)


class ImportSessionNotFoundError(ValueError):
    """Session never existed, belongs to another tenant, or has expired."""


class ImportSessionError(ConflictError):
    """Operation not allowed in the session's current state."""


@dataclass
class UploadedFile:
    filename: str
    path: str
    mime: str | None = None
    size: int = 0


UsageRecorder = Callable[..., Any]


class ImportSessionStore:
    def __init__(
        self,
        kv: MemoryTTLStore | RedisTTLStore,
        *,
        upload_dir: str,
        extractors: dict[str, BaseExtractor],
        ttl_seconds: int = 3600,
        workers: int = 4,
        max_files: int = 5,
        record_usage: UsageRecorder | None = None,
    ):
        self.kv = kv
        self.upload_dir = upload_dir
        self.extractors = extractors
        self.ttl_seconds = ttl_seconds
        self.workers = max(1, workers)
        self.max_files = max_files
        self.record_usage = record_usage

    # -- state -----------------------------------------------------------

    @staticmethod
    def key(tenant_id: str, session_id: str) -> str:
        return SESSION_KEY.format(tenant_id=tenant_id, session_id=session_id)

    def _load(self, tenant_id: str, session_id: str) -> dict[str, Any]:
        state = self.kv.get(self.key(tenant_id, session_id))
        if state is None:
            raise ImportSessionNotFoundError("Import session not found or expired")
        return state

    def _save(self, tenant_id: str, session_id: str, state: dict[str, Any]) -> None:
        self.kv.set(self.key(tenant_id, session_id), state, self.ttl_seconds)

    @staticmethod
    def _check_status(state: dict[str, Any], allowed: Iterable[str]) -> None:
        status = state["status"]
        if status in allowed:
            return
        if status == STATUS_COMMITTED:
            raise ImportSessionError("Import session is already committed")
        if status == STATUS_COMMITTING:
            raise ImportSessionError("Import session is being committed")
        raise ImportSessionError(f"Import session is {status}")

    def _load_open(self, tenant_id: str, session_id: str) -> dict[str, Any]:
        state = self._load(tenant_id, session_id)
        self._check_status(state, OPEN_STATUSES)
        return state

    def _mutate(
        self,
        tenant_id: str,
        session_id: str,
        fn: Callable[[dict[str, Any]], None],
        allowed: Iterable[str] = OPEN_STATUSES,
    ) -> dict[str, Any]:
        """Apply fn to the stored state atomically; returns the new state."""

        def _apply(state: dict[str, Any] | None) -> dict[str, Any]:
            if state is None:
                raise ImportSessionNotFoundError("Import session not found or expired")
            self._check_status(state, allowed)
            fn(state)
            return state

        return self.kv.update(self.key(tenant_id, session_id), _apply, self.ttl_seconds)

    def create_session(self, tenant_id: str) -> str:
        session_id = uuid.uuid4().hex
        self._save(
            tenant_id,
            session_id,
            {
                "id": session_id,
                "tenant_id": tenant_id,
                "status": STATUS_CREATED,
                "files": [],
                "rows": [],
                "warnings": [],
                "source_type": None,
                "created_at": to_utc_z(utcnow()),
                "committed_at": None,
            },
        )
        return session_id

    def get_session(self, tenant_id: str, session_id: str) -> dict[str, Any]:
        return self._load(tenant_id, session_id)

    def get_preview(self, tenant_id: str, session_id: str) -> dict[str, Any]:
        state = self._load(tenant_id, session_id)
        return {
            "status": state["status"],
            "rows": state["rows"],
            "warnings": state["warnings"],
            "source_type": state["source_type"],
        }

    def delete_session(self, tenant_id: str, session_id: str) -> None:
        state = self._load(tenant_id, session_id)
        self.kv.delete(self.key(tenant_id, session_id))
        session_dir = os.path.join(self.upload_dir, "imports", state["id"])
        if state["status"] != STATUS_COMMITTED and os.path.isdir(session_dir):
            shutil.rmtree(session_dir, ignore_errors=True)

    # -- files -----------------------------------------------------------

    def _persist(self, session_id: str, upload: UploadedFile) -> UploadedFile:
        target_dir = os.path.join(self.upload_dir, "imports", session_id)
        os.makedirs(target_dir, exist_ok=True)
        stamp = utcnow().strftime("%Y%m%d%H%M%S%f")
        safe_name = secure_filename(upload.filename) or "upload"
        target = os.path.join(target_dir, f"{stamp}-{safe_name}")
        shutil.move(upload.path, target)
        size = upload.size or os.path.getsize(target)
        return UploadedFile(filename=upload.filename, path=target, mime=upload.mime, size=size)

    def _extract_all(self, files: list[UploadedFile]) -> list[ExtractionResult]:
        def _run(upload: UploadedFile) -> ExtractionResult:
            return extract_file(self.extractors, upload.path, filename=upload.filename, mime=upload.mime)

        if len(files) == 1:
            return [_run(files[0])]
        with ThreadPoolExecutor(max_workers=min(self.workers, len(files))) as pool:
            return list(pool.map(_run, files))

    def _meter(self, tenant_id: str, session_id: str, sample: UsageSample | None) -> None:
        if sample is None or self.record_usage is None:
            return
        self.record_usage(tenant_id=tenant_id, sample=sample, session_id=session_id)

    def upload_files(self, tenant_id: str, session_id: str, files: list[UploadedFile]) -> dict[str, Any]:
        """
        Store files durably, extract each one (in parallel), append rows.

        A failing file contributes a warning and a failed result; other
        files in the same call are unaffected. Extraction runs outside the
        store update, so concurrent uploads to one session both land.
        """
        if not files:
            raise ValidationError("At least one file is required")
        if len(files) > self.max_files:
            raise ValidationError(f"At most {self.max_files} files per upload")
        self._load_open(tenant_id, session_id)

        stored = [self._persist(session_id, f) for f in files]
        results = self._extract_all(stored)

        file_entries: list[dict[str, Any]] = []
        new_rows: list[dict[str, Any]] = []
        new_warnings: list[str] = []
        methods = set()
        for upload, result in zip(stored, results):
            # Usage is written here, on the request thread, never from workers
            self._meter(tenant_id, session_id, result.usage)
            file_entries.append(
                {
                    "filename": upload.filename,
                    "path": upload.path,
                    "mime": upload.mime,
                    "size": upload.size,
                    "method": result.method,
                    "success": result.success,
                    "rows": len(result.rows),
                }
            )
            if result.success:
                methods.add(result.method)
                new_rows.extend(r.to_dict() for r in result.rows)
            else:
                new_warnings.append(f"{upload.filename}: {result.error}")
            new_warnings.extend(result.warnings)

        def _apply(state: dict[str, Any]) -> None:
            state["files"].extend(file_entries)
            state["rows"].extend(new_rows)
            state["warnings"].extend(new_warnings)
            state["status"] = STATUS_PARSED
            state["source_type"] = self._merge_source_type(state["source_type"], methods)

        state = self._mutate(tenant_id, session_id, _apply)
        return {
            "files": state["files"],
            "rows": state["rows"],
            "warnings": state["warnings"],
            "parsed_rows": len(new_rows),
            "source_type": state["source_type"],
            "results": [r.to_dict() for r in results],
        }

    @staticmethod
    def _merge_source_type(current: str | None, methods: Iterable[str]) -> str | None:
        kinds = set(methods)
        if current:
            kinds.add(current)
        if not kinds:
            return current
        return kinds.pop() if len(kinds) == 1 else "mixed"

    # -- rows ------------------------------------------------------------

    def append_rows(
        self,
        tenant_id: str,
        session_id: str,
        rows: list[CandidateRow],
        *,
        warnings: list[str] | None = None,
        source_type: str | None = None,
    ) -> dict[str, Any]:
        new_rows = [r.to_dict() for r in rows]

        def _apply(state: dict[str, Any]) -> None:
            state["rows"].extend(new_rows)
            state["warnings"].extend(warnings or [])
            state["status"] = STATUS_PARSED
            state["source_type"] = self._merge_source_type(state["source_type"], [source_type] if source_type else [])

        return self._mutate(tenant_id, session_id, _apply)

    def replace_rows(self, tenant_id: str, session_id: str, rows: list[Any]) -> dict[str, Any]:
        """Store reviewer-edited rows, normalized again. Blank rows are dropped."""
        if not isinstance(rows, list):
            raise ValidationError("rows must be a list")
        normalized = [normalize_row(r, source="manual") for r in rows]
        kept = [r.to_dict() for r in normalized if not r.is_blank()]

        def _apply(state: dict[str, Any]) -> None:
            state["rows"] = kept
            if kept:
                state["status"] = STATUS_PARSED

        return self._mutate(tenant_id, session_id, _apply)

    # -- commit ----------------------------------------------------------

    def claim_for_commit(self, tenant_id: str, session_id: str) -> dict[str, Any]:
        """
        Move an open session to committing and return its state.

        Exactly one of several concurrent callers wins; the rest get
        ImportSessionError and must not write anything.
        """

        def _claim(state: dict[str, Any]) -> None:
            state["claimed_from"] = state["status"]
            state["status"] = STATUS_COMMITTING

        return self._mutate(tenant_id, session_id, _claim)

    def release_claim(self, tenant_id: str, session_id: str) -> None:
        """Reopen a session whose commit failed."""

        def _release(state: dict[str, Any]) -> None:
            state["status"] = state.pop("claimed_from", None) or STATUS_PARSED

        try:
            self._mutate(tenant_id, session_id, _release, allowed=(STATUS_COMMITTING,))
        except (ImportSessionNotFoundError, ImportSessionError) as exc:
            logger.warning("Could not release commit claim on session %s: %s", session_id, exc)

    def mark_committed(self, tenant_id: str, session_id: str, summary: dict[str, Any] | None = None) -> dict[str, Any]:
        def _apply(state: dict[str, Any]) -> None:
            state.pop("claimed_from", None)
            state["status"] = STATUS_COMMITTED
            state["committed_at"] = to_utc_z(utcnow())
            state["result"] = summary

        return self._mutate(tenant_id, session_id, _apply, allowed=OPEN_STATUSES + (STATUS_COMMITTING,))


def get_session_store() -> ImportSessionStore:
    return current_app.extensions["stockline.import_sessions"]
