"""
Audit Record Store

Append-only persistence of compliance audit entries derived from user action
events. Two on-disk layouts are provided:

- :class:`JsonDocumentAuditStore` keeps every entry in a single pretty-printed
  JSON array that is rewritten on each append. The new document is written to
  a temporary file and atomically swapped into place, so a failed write leaves
  the previous snapshot intact.
- :class:`JsonLinesAuditStore` appends one JSON object per line.

Both stores serialize appends within a process with an ``asyncio.Lock``.
Several processes appending to the same file are not coordinated; run a single
audit consumer per file.
"""

import asyncio
import itertools
import json
import logging
import os
import secrets
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import AuditLogFormat, AuditSettings
from .events import ActionKind, Event, Scalar
from .exceptions import AuditStoreError

logger = logging.getLogger(__name__)


class ComplianceFlag(str, Enum):
    """Compliance tags attached to every audit entry."""

    LOGGED = "LOGGED"
    SECURITY_EVENT = "SECURITY_EVENT"
    FINANCIAL_RECORD = "FINANCIAL_RECORD"
    PII_CHANGE = "PII_CHANGE"
    GDPR = "GDPR"


_KIND_FLAGS: dict[str, tuple[ComplianceFlag, ...]] = {
    ActionKind.LOGIN.value: (ComplianceFlag.SECURITY_EVENT,),
    ActionKind.PURCHASE.value: (ComplianceFlag.FINANCIAL_RECORD,),
    ActionKind.PROFILE_UPDATE.value: (ComplianceFlag.PII_CHANGE, ComplianceFlag.GDPR),
}


def compliance_flags(action_kind: str) -> list[ComplianceFlag]:
    """Compliance flags for an action kind, ``LOGGED`` first."""
    return [ComplianceFlag.LOGGED, *_KIND_FLAGS.get(action_kind, ())]


_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


class LogIdGenerator:
    """Generates ``AUDIT-<epoch-ms>-<counter>-<random>`` identifiers.

    The per-process counter keeps ids distinct when several are generated in
    the same millisecond; the random suffix keeps them distinct across
    processes.
    """

    def __init__(self, prefix: str = "AUDIT", random_length: int = 9):
        self.prefix = prefix
        self.random_length = random_length
        self._counter = itertools.count(1)

    def __call__(self) -> str:
        millis = int(time.time() * 1000)
        suffix = "".join(secrets.choice(_BASE36) for _ in range(self.random_length))
        return f"{self.prefix}-{millis}-{next(self._counter)}-{suffix}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEntry(BaseModel):
    """Immutable compliance record for one event.

    Serialized with the field names used by the audit document:
    ``logId``, ``action``, ``userId``, ``timestamp``, ``data``, ``compliance``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    log_id: str = Field(alias="logId")
    action_kind: str = Field(alias="action")
    subject_id: str = Field(alias="userId")
    occurred_at: datetime = Field(alias="timestamp")
    payload: dict[str, Scalar] = Field(default_factory=dict, alias="data")
    compliance_flags: list[ComplianceFlag] = Field(alias="compliance")
    event_id: str | None = Field(default=None, alias="eventId")
    recorded_at: datetime = Field(default_factory=_utcnow, alias="recordedAt")

    @classmethod
    def from_event(
        cls, event: Event, log_id: str, flags: Iterable[ComplianceFlag] | None = None
    ) -> "AuditEntry":
        if flags is None:
            flags = compliance_flags(event.action_kind)
        return cls(
            log_id=log_id,
            action_kind=event.action_kind,
            subject_id=event.subject_id,
            occurred_at=event.occurred_at,
            payload=dict(event.payload),
            compliance_flags=list(flags),
            event_id=event.event_id,
        )

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "AuditEntry":
        try:
            return cls.model_validate(document)
        except ValidationError as e:
            raise AuditStoreError(f"Invalid audit entry: {e}", cause=e) from e


class AuditRecordStore(ABC):
    """Append-only store of audit entries."""

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditEntry) -> None:
        """Durably persist one entry after all previously appended entries."""
        await self.append_many([entry])

    async def append_many(self, entries: Iterable[AuditEntry]) -> None:
        """Durably persist entries in order; all or none are written."""
        entries = list(entries)
        if not entries:
            return
        async with self._lock:
            await self._write(entries)
        logger.debug("Appended %d audit entries to %s", len(entries), self.path)

    @abstractmethod
    async def _write(self, entries: list[AuditEntry]) -> None:
        """Persist entries; called with the store lock held."""

    @abstractmethod
    async def read_all(self) -> list[AuditEntry]:
        """Return every stored entry in append order."""


class JsonDocumentAuditStore(AuditRecordStore):
    """Audit store kept as a single JSON array, rewritten atomically on append."""

    indent = 2

    async def read_all(self) -> list[AuditEntry]:
        return [AuditEntry.from_document(doc) for doc in await self._read_documents()]

    async def _read_documents(self) -> list[dict[str, Any]]:
        try:
            async with aiofiles.open(self.path, encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            return []
        except OSError as e:
            raise AuditStoreError(f"Cannot read audit log {self.path}: {e}", cause=e) from e

        if not content.strip():
            return []

        try:
            documents = json.loads(content)
        except json.JSONDecodeError as e:
            # Never overwrite a document we cannot parse
            raise AuditStoreError(f"Audit log {self.path} is corrupt: {e}", cause=e) from e

        if not isinstance(documents, list):
            raise AuditStoreError(f"Audit log {self.path} is not a JSON array")
        return documents

    async def _write(self, entries: list[AuditEntry]) -> None:
        documents = await self._read_documents()
        documents.extend(entry.to_document() for entry in entries)
        content = json.dumps(documents, indent=self.indent, ensure_ascii=False)

        tmp_path = self.path.with_name(f".{self.path.name}.{uuid.uuid4().hex}.tmp")
        try:
            await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(content)
                await f.flush()
                os.fsync(f.fileno())
            await aiofiles.os.replace(tmp_path, self.path)
        except OSError as e:
            await self._discard(tmp_path)
            raise AuditStoreError(f"Failed to write audit log {self.path}: {e}", cause=e) from e

    @staticmethod
    async def _discard(tmp_path: Path) -> None:
        try:
            await aiofiles.os.remove(tmp_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove temporary audit file %s: %s", tmp_path, e)


class JsonLinesAuditStore(AuditRecordStore):
    """Append-only audit log with one JSON object per line."""

    async def read_all(self) -> list[AuditEntry]:
        try:
            async with aiofiles.open(self.path, encoding="utf-8") as f:
                lines = await f.readlines()
        except FileNotFoundError:
            return []
        except OSError as e:
            raise AuditStoreError(f"Cannot read audit log {self.path}: {e}", cause=e) from e

        entries = []
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                document = json.loads(line)
            except json.JSONDecodeError:
                # Left behind by an interrupted append
                logger.warning("Skipping torn line %d in %s", number, self.path)
                continue
            entries.append(AuditEntry.from_document(document))
        return entries

    async def _write(self, entries: list[AuditEntry]) -> None:
        content = "".join(
            json.dumps(entry.to_document(), ensure_ascii=False) + "\n" for entry in entries
        )
        try:
            await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
            if await self._ends_with_torn_line():
                content = "\n" + content
            async with aiofiles.open(self.path, "a", encoding="utf-8") as f:
                await f.write(content)
                await f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise AuditStoreError(f"Failed to append to audit log {self.path}: {e}", cause=e) from e

    async def _ends_with_torn_line(self) -> bool:
        # New entries must start on a fresh line after an interrupted write
        try:
            async with aiofiles.open(self.path, "rb") as f:
                size = await f.seek(0, os.SEEK_END)
                if size == 0:
                    return False
                await f.seek(size - 1)
                return await f.read(1) != b"\n"
        except FileNotFoundError:
            return False


def create_audit_store(settings: AuditSettings) -> AuditRecordStore:
    """Build the audit store described by the audit settings."""
    if settings.format == AuditLogFormat.JSONL:
        return JsonLinesAuditStore(settings.path)
    return JsonDocumentAuditStore(settings.path)
