"""
Image Batch — Result Ledger (append-only log + checkpoint)

Durably records every outcome exactly once:
  - results.jsonl       one JSON record per outcome, append-only
  - results.session.json  compact Session checkpoint, rewritten atomically
                          (temp file + os.replace) after every append

Appends are serialized by a single lock so concurrent completions never
interleave partial lines. A record is flushed and fsynced before the
checkpoint is rewritten, so checkpoint counts are always derivable from
the log. A write that keeps failing after write_retries attempts raises
LedgerWriteError, which is fatal for the batch. Before a retry the log is
truncated back to the end of the last complete record.

Resume:
    previous = ResultLedger.load_previous_outcomes("results.jsonl")
    ledger = ResultLedger("results.jsonl", backend="gemini")
    ledger.open(total_items=len(items), previous=previous, resume=True)
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from batch_engine.errors import BatchSetupError, LedgerClosedError, LedgerWriteError
from batch_engine.types import (
    ClassificationResult,
    ErrorClass,
    Failure,
    ItemStatus,
    Outcome,
    Session,
    Skipped,
    Success,
    WorkItem,
    utc_now_iso,
)

logger = logging.getLogger("image_batch.ledger")

SKIPPED_CODE = "SKIPPED"


def checkpoint_path_for(log_path: str | Path) -> Path:
    """results.jsonl -> results.session.json"""
    path = Path(log_path)
    name = path.name
    for suffix in (".jsonl", ".json"):
        if name.endswith(suffix):
            return path.with_name(name[: -len(suffix)] + ".session.json")
    return path.with_name(name + ".session.json")


# ═══════════════════════════════════════════════════════════════════
# Record encoding
# ═══════════════════════════════════════════════════════════════════

def outcome_to_record(item: WorkItem, outcome: Outcome, backend: str = "") -> dict[str, Any]:
    record: dict[str, Any] = {
        "id": item.id,
        "source": item.source,
        "status": outcome.status.value,
    }
    if isinstance(outcome, Success):
        record["result"] = outcome.result.to_dict()
    elif isinstance(outcome, Failure):
        record["error"] = {"message": outcome.message, "code": outcome.error_class.value}
    else:
        record["error"] = {"message": outcome.reason, "code": SKIPPED_CODE}
    record["attempts"] = outcome.attempts
    record["timestamp"] = utc_now_iso()
    if backend:
        record["backend"] = backend
    return record


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value[:-1] + "+00:00" if value.endswith("Z") else value)
    except ValueError:
        return None


def record_to_outcome(record: dict[str, Any]) -> Outcome:
    status = ItemStatus(record["status"])
    attempts = int(record.get("attempts", 1))
    if status == ItemStatus.SUCCESS:
        result = ClassificationResult.from_dict(record.get("result") or {})
        return Success(
            result=result,
            cost_usd=result.cost_usd,
            latency_ms=result.latency_ms,
            attempts=attempts,
            recorded_at=_parse_timestamp(record.get("timestamp")),
        )
    error = record.get("error") or {}
    if status == ItemStatus.SKIPPED:
        return Skipped(reason=error.get("message", ""))
    if status == ItemStatus.FAILED:
        try:
            error_class = ErrorClass(error.get("code", ErrorClass.UNKNOWN.value))
        except ValueError:
            error_class = ErrorClass.UNKNOWN
        return Failure(message=error.get("message", ""), error_class=error_class, attempts=attempts)
    raise ValueError(f"Not a terminal status: {status.value}")


# ═══════════════════════════════════════════════════════════════════
# Result Ledger
# ═══════════════════════════════════════════════════════════════════

class ResultLedger:
    """
    Append-only outcome log plus Session checkpoint.

    append_outcome() is the only mutation path for the Session.
    """

    def __init__(
        self,
        log_path: str | Path,
        backend: str = "",
        write_retries: int = 3,
        retry_delay: float = 0.1,
        fsync: bool = True,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.log_path = Path(log_path)
        self.checkpoint_path = checkpoint_path_for(self.log_path)
        self.backend = backend
        self.write_retries = max(1, write_retries)
        self.retry_delay = retry_delay
        self.fsync = fsync
        self._sleep = sleep_fn

        self._lock = threading.Lock()
        self._fh = None
        self._clean_offset: int | None = None   # end of the last complete record while a write is pending
        self._session: Session | None = None
        self._recorded: set[str] = set()
        self._closed = False

    # ── Lifecycle ────────────────────────────────────────────

    def open(
        self,
        total_items: int,
        previous: dict[str, Outcome] | None = None,
        resume: bool = False,
        overwrite: bool = False,
    ) -> Session:
        """
        Open the log for appending and write the initial checkpoint.

        With resume, the session id is carried over from the existing
        checkpoint and counters are seeded from `previous`. Without
        resume, an existing non-empty log is refused unless overwrite.
        """
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        previous = previous or {}
        exists = self.log_path.exists() and self.log_path.stat().st_size > 0

        if exists and not resume and not overwrite:
            raise BatchSetupError(
                f"Result log {self.log_path} already exists; "
                f"pass resume to continue it or overwrite to replace it"
            )

        prior_session = self.load_session(self.log_path) if resume else None
        session = Session.create(
            session_id=prior_session.session_id if prior_session else None,
            total_items=total_items,
        )
        if prior_session is not None:
            session.start_time = prior_session.start_time or session.start_time
        for outcome in previous.values():
            session.count(outcome.status)

        mode = "a" if resume else "w"
        try:
            self._fh = open(self.log_path, mode, encoding="utf-8")
            self._clean_offset = None
            if resume and exists and not self._ends_with_newline():
                # terminate a line truncated by a crash
                self._fh.write("\n")
                self._fh.flush()
        except OSError as e:
            raise BatchSetupError(f"Cannot open result log {self.log_path}: {e}") from e

        with self._lock:
            self._session = session
            self._recorded = set(previous)
            self._closed = False
            self._write_checkpoint()

        logger.info(
            "Result ledger opened: path=%s session=%s total=%d already_recorded=%d",
            self.log_path, session.session_id, total_items, len(previous),
        )
        return session

    def _ends_with_newline(self) -> bool:
        with open(self.log_path, "rb") as f:
            f.seek(-1, os.SEEK_END)
            return f.read(1) == b"\n"

    @property
    def session(self) -> Session:
        if self._session is None:
            raise RuntimeError("Result ledger is not open")
        return self._session

    @property
    def is_closed(self) -> bool:
        return self._closed

    def has_recorded(self, item_id: str) -> bool:
        with self._lock:
            return item_id in self._recorded

    def snapshot(self) -> Session:
        """A consistent copy of the Session counters."""
        with self._lock:
            return Session.from_dict(self.session.to_dict())

    # ── Append ───────────────────────────────────────────────

    def append_outcome(self, item: WorkItem, outcome: Outcome) -> Session:
        """
        Durably record one outcome and update the checkpoint.

        Raises:
            LedgerClosedError: after finalize()
            ValueError: the item already has a recorded outcome
            LedgerWriteError: the record could not be written
        """
        record = outcome_to_record(item, outcome, self.backend)
        line = json.dumps(record, ensure_ascii=False) + "\n"

        with self._lock:
            if self._closed or self._fh is None:
                raise LedgerClosedError(f"Result ledger {self.log_path} is closed")
            if item.id in self._recorded:
                raise ValueError(f"Outcome already recorded for item {item.id}")

            self._write_line(item.id, line)
            self._recorded.add(item.id)
            self.session.count(outcome.status)
            item.status = outcome.status
            try:
                self._write_checkpoint()
            except OSError as e:
                # the log line is durable; the checkpoint is rebuilt on the next append
                logger.warning("Checkpoint write failed (path=%s): %s", self.checkpoint_path, e)
            return Session.from_dict(self.session.to_dict())

    def _write_line(self, item_id: str, line: str) -> None:
        # Caller holds self._lock
        last_error: Exception | None = None
        for attempt in range(1, self.write_retries + 1):
            try:
                if self._clean_offset is None:
                    self._clean_offset = self._fh.tell()
                else:
                    # cut the fragment a failed write left behind
                    self._fh.truncate(self._clean_offset)
                self._fh.write(line)
                self._fh.flush()
                if self.fsync:
                    os.fsync(self._fh.fileno())
                self._clean_offset = None
                return
            except (OSError, ValueError) as e:
                last_error = e
                logger.warning(
                    "Result log write failed (attempt %d/%d, item=%s): %s",
                    attempt, self.write_retries, item_id, e,
                )
                if attempt < self.write_retries:
                    self._sleep(self.retry_delay * attempt)
        raise LedgerWriteError(item_id, last_error)

    # ── Checkpoint ───────────────────────────────────────────

    def _write_checkpoint(self) -> None:
        # Caller holds self._lock
        tmp = self.checkpoint_path.with_name(self.checkpoint_path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self.session.to_dict(), f, indent=2)
            f.flush()
            if self.fsync:
                os.fsync(f.fileno())
        os.replace(tmp, self.checkpoint_path)

    def flush_checkpoint(self) -> bool:
        """Best-effort checkpoint rewrite. Returns True on success."""
        with self._lock:
            if self._session is None:
                return False
            try:
                self._write_checkpoint()
                return True
            except OSError as e:
                logger.error("Checkpoint flush failed (path=%s): %s", self.checkpoint_path, e)
                return False

    def finalize(self) -> Session:
        """Stamp end_time, write the final checkpoint and close the log. Idempotent."""
        with self._lock:
            if self._closed:
                return Session.from_dict(self.session.to_dict())
            self._closed = True
            self.session.end_time = utc_now_iso()
            try:
                self._write_checkpoint()
            except OSError as e:
                logger.error("Final checkpoint write failed (path=%s): %s", self.checkpoint_path, e)
            if self._fh is not None:
                try:
                    self._fh.close()
                except OSError as e:
                    logger.error("Closing result log failed (path=%s): %s", self.log_path, e)
                self._fh = None
            session = Session.from_dict(self.session.to_dict())

        logger.info(
            "Result ledger finalized: session=%s completed=%d/%d success=%d failed=%d skipped=%d",
            session.session_id, session.completed_items, session.total_items,
            session.successful_items, session.failed_items, session.skipped_items,
        )
        return session

    # ── Resume ───────────────────────────────────────────────

    @staticmethod
    def load_previous_outcomes(log_path: str | Path) -> dict[str, Outcome]:
        """
        Read an existing log into {item_id: Outcome}.

        Malformed or truncated lines (e.g. a crash mid-write) are skipped
        with a warning. If an id appears twice, the first record wins.
        """
        path = Path(log_path)
        outcomes: dict[str, Outcome] = {}
        if not path.exists():
            return outcomes

        malformed = 0
        with open(path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                    item_id = record["id"]
                    outcome = record_to_outcome(record)
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                    malformed += 1
                    logger.warning("Skipping malformed log line %d in %s: %s", lineno, path, e)
                    continue
                if item_id in outcomes:
                    logger.warning("Duplicate record for item %s in %s, keeping the first", item_id, path)
                    continue
                outcomes[item_id] = outcome

        logger.info(
            "Loaded previous outcomes: path=%s records=%d malformed=%d",
            path, len(outcomes), malformed,
        )
        return outcomes

    @staticmethod
    def load_session(log_path: str | Path) -> Session | None:
        path = checkpoint_path_for(log_path)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return Session.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Ignoring unreadable checkpoint %s: %s", path, e)
            return None
