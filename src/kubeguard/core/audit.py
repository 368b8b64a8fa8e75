"""
Append-only, hash-chained audit log.

Each line is one JSON entry whose `hash` covers the previous entry's hash and
the entry's own canonical JSON. A sidecar `<log>.head` records the last seq
and hash so that cutting entries off the end is detected too.
"""

from __future__ import annotations

import getpass
import hashlib
import json
import os
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

import structlog

from kubeguard.core.errors import AuditUnavailableError
from kubeguard.core.store import FILE_MODE, atomic_write, locked

log = structlog.get_logger()

GENESIS_HASH = "0" * 64


class AuditAction(str, Enum):
    SWITCH = "Switch"
    COMMAND = "Command"
    DENY = "Deny"
    RESULT = "Result"
    ROTATE = "Rotate"


class AuditOutcome(str, Enum):
    ALLOWED = "Allowed"
    DENIED = "Denied"
    CONFIRMED_BY_USER = "ConfirmedByUser"
    ALLOWED_BY_OVERRIDE = "AllowedByOverride"


@dataclass(frozen=True)
class AuditEntry:
    """One immutable line of the audit log."""

    seq: int
    timestamp: str
    actor: str
    action: AuditAction
    target_context: str
    tier: str
    outcome: AuditOutcome
    reason: str
    command: str | None = None
    credential_ref: str | None = None
    exit_code: int | None = None
    prev_hash: str = GENESIS_HASH
    hash: str = ""

    def body(self) -> dict[str, Any]:
        """Everything the hash covers."""
        data = asdict(self)
        data.pop("hash")
        data["action"] = self.action.value
        data["outcome"] = self.outcome.value
        return data

    def compute_hash(self) -> str:
        return chain_hash(self.prev_hash, self.body())

    def to_json(self) -> str:
        data = self.body()
        data["hash"] = self.hash
        return canonical_json(data)

    @classmethod
    def from_json(cls, line: str) -> AuditEntry:
        """Parse one log line. Raises ValueError on anything malformed."""
        try:
            data = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid JSON: {exc}") from None
        if not isinstance(data, dict):
            raise ValueError("entry is not an object")
        try:
            data["action"] = AuditAction(data["action"])
            data["outcome"] = AuditOutcome(data["outcome"])
            return cls(**data)
        except (KeyError, TypeError) as exc:
            raise ValueError(f"malformed entry: {exc}") from None


def canonical_json(data: dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def chain_hash(prev_hash: str, body: dict[str, Any]) -> str:
    digest = hashlib.sha256()
    digest.update(prev_hash.encode("ascii"))
    digest.update(canonical_json(body).encode("utf-8"))
    return digest.hexdigest()


def default_actor() -> str:
    """Best-effort name of the OS user."""
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditLog:
    """The audit trail file plus its head sidecar.

    `append` is the only writer. Any failure to record raises
    AuditUnavailableError; callers treat that as fatal.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        clock: Callable[[], datetime] = _utcnow,
        actor: str | None = None,
    ) -> None:
        self.path = Path(path).expanduser()
        self.head_path = self.path.with_name(self.path.name + ".head")
        self._clock = clock
        self.actor = actor or default_actor()

    # === Writing ===

    def append(
        self,
        action: AuditAction,
        *,
        target_context: str,
        tier: str,
        outcome: AuditOutcome,
        reason: str,
        command: str | None = None,
        credential_ref: str | None = None,
        exit_code: int | None = None,
    ) -> AuditEntry:
        """Chain and durably write one entry. Returns the written entry."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with locked(self.path):
                seq, prev_hash = self._last()
                entry = self._build(
                    seq + 1,
                    prev_hash,
                    action=action,
                    target_context=target_context,
                    tier=tier,
                    outcome=outcome,
                    reason=reason,
                    command=command,
                    credential_ref=credential_ref,
                    exit_code=exit_code,
                )
                self._write(entry)
        except (OSError, ValueError) as exc:
            raise AuditUnavailableError(f"cannot write audit log {self.path}: {exc}") from exc
        log.debug("audit_appended", seq=entry.seq, action=entry.action.value, outcome=entry.outcome.value)
        return entry

    def _build(self, seq: int, prev_hash: str, **fields: Any) -> AuditEntry:
        entry = AuditEntry(
            seq=seq,
            timestamp=self._clock().astimezone(timezone.utc).isoformat(),
            actor=self.actor,
            prev_hash=prev_hash,
            **fields,
        )
        return replace(entry, hash=entry.compute_hash())

    def _write(self, entry: AuditEntry) -> None:
        fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, FILE_MODE)
        try:
            os.fchmod(fd, FILE_MODE)
            os.write(fd, (entry.to_json() + "\n").encode("utf-8"))
            os.fsync(fd)
        finally:
            os.close(fd)
        atomic_write(self.head_path, json.dumps({"seq": entry.seq, "hash": entry.hash}) + "\n")

    def _last(self) -> tuple[int, str]:
        """Seq and hash of the newest entry, from the head file if present."""
        head = self._read_head()
        if head is not None:
            return head
        entries = self._parse_all()
        if entries:
            return entries[-1].seq, entries[-1].hash
        return 0, GENESIS_HASH

    def _read_head(self) -> tuple[int, str] | None:
        try:
            text = self.head_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            data = json.loads(text)
            return int(data["seq"]), str(data["hash"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"corrupt head file {self.head_path}: {exc}") from None

    # === Reading ===

    def _lines(self) -> list[str]:
        try:
            with self.path.open(encoding="utf-8") as handle:
                return [line.rstrip("\n") for line in handle if line.strip()]
        except FileNotFoundError:
            return []

    def _parse_all(self) -> list[AuditEntry]:
        entries = []
        for index, line in enumerate(self._lines()):
            try:
                entries.append(AuditEntry.from_json(line))
            except ValueError as exc:
                raise ValueError(f"entry {index}: {exc}") from None
        return entries

    def entries(self) -> list[AuditEntry]:
        try:
            return self._parse_all()
        except (OSError, ValueError) as exc:
            raise AuditUnavailableError(f"cannot read audit log {self.path}: {exc}") from exc

    def tail(self, n: int = 10) -> list[AuditEntry]:
        """The newest `n` entries, oldest first."""
        if n <= 0:
            return []
        return self.entries()[-n:]

    def verify(self) -> tuple[bool, int | None]:
        """Walk the chain. Returns (True, None) or (False, first_broken_index).

        A first entry of action Rotate may chain from a non-genesis hash: it
        continues an archived log. Entries missing from the end are reported
        at the index where the first missing entry should be.
        """
        try:
            lines = self._lines()
            head = self._read_head()
        except (OSError, ValueError) as exc:
            raise AuditUnavailableError(f"cannot read audit log {self.path}: {exc}") from exc

        expected_prev = GENESIS_HASH
        expected_seq = 1
        last: AuditEntry | None = None
        for index, line in enumerate(lines):
            try:
                entry = AuditEntry.from_json(line)
            except ValueError:
                log.warning("audit_verify_failed", index=index, problem="unparseable")
                return False, index
            if index == 0 and entry.action is AuditAction.ROTATE:
                expected_prev = entry.prev_hash
                expected_seq = entry.seq
            problem = None
            if entry.prev_hash != expected_prev:
                problem = "prev_hash mismatch"
            elif entry.seq != expected_seq:
                problem = "seq out of order"
            elif entry.hash != entry.compute_hash():
                problem = "hash mismatch"
            if problem is not None:
                log.warning("audit_verify_failed", index=index, problem=problem)
                return False, index
            expected_prev = entry.hash
            expected_seq = entry.seq + 1
            last = entry

        if head is None:
            if last is not None:
                log.warning("audit_verify_failed", index=len(lines), problem="head missing")
                return False, len(lines)
            return True, None
        head_seq, head_hash = head
        if last is None or head_seq > last.seq:
            log.warning("audit_verify_failed", index=len(lines), problem="truncated")
            return False, len(lines)
        if head_seq != last.seq or head_hash != last.hash:
            log.warning("audit_verify_failed", index=len(lines) - 1, problem="head mismatch")
            return False, len(lines) - 1
        return True, None

    # === Rotation ===

    def rotate(self) -> Path | None:
        """Archive the log and start a new one chained from the archive.

        Returns the archive path, or None when there was nothing to archive.
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with locked(self.path):
                seq, prev_hash = self._last()
                archive = None
                if self.path.exists():
                    stamp = self._clock().astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
                    archive = self.path.with_name(f"{self.path.name}.{stamp}")
                    os.replace(self.path, archive)
                    if self.head_path.exists():
                        os.replace(self.head_path, archive.with_name(archive.name + ".head"))
                entry = self._build(
                    seq + 1,
                    prev_hash,
                    action=AuditAction.ROTATE,
                    target_context="",
                    tier="",
                    outcome=AuditOutcome.ALLOWED,
                    reason=f"rotated from {archive.name}" if archive else "new log",
                )
                self._write(entry)
        except (OSError, ValueError) as exc:
            raise AuditUnavailableError(f"cannot rotate audit log {self.path}: {exc}") from exc
        log.info("audit_rotated", archive=str(archive) if archive else None, seq=entry.seq)
        return archive
