"""
Append-only audit trail for Steward.

Every governed action ends in exactly one audit record:
    - proposal:  the action needs approval and a proposal was made, or an
                 identical pending one was reused (deduplicated_into)
    - execution: a tool ran successfully
    - denial:    the guardrails refused, the tool refused, or a human rejected
    - failure:   the dispatcher reported ok=False (parse, unknown tool,
                 exception, timeout)

Design Principles:
    - Fire-and-forget: emit() never raises and never waits for the write
    - Ordered: one single-writer queue per (tenant_id, actor_id), so each
      actor's history is written in the order it happened. A writer exits
      when its queue drains and is started again by the next emit
    - Non-fatal: a failed write is logged on this module's logger and
      handed to the optional on_error hook; the primary action is unaffected
"""

import asyncio
import logging
import threading
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from steward.errors import AuditWriteError
from steward.schema import (
    ActionRequest,
    AuditKind,
    AuditRecord,
    GuardrailDecision,
    Proposal,
    ToolCallResult,
)

logger = logging.getLogger(__name__)

AuditKey = tuple[str, str]
ErrorHook = Callable[[AuditRecord, AuditWriteError], None]


@runtime_checkable
class AuditSink(Protocol):
    """Durable destination for audit records (called from a worker thread)."""

    def write_audit(self, record: AuditRecord) -> None:
        """Persist one record or raise."""
        ...


class InMemoryAuditSink:
    """Audit sink that keeps records in a list. Useful for tests and embedding."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: list[AuditRecord] = []

    def write_audit(self, record: AuditRecord) -> None:
        with self._lock:
            self._records.append(record)

    @property
    def records(self) -> list[AuditRecord]:
        with self._lock:
            return list(self._records)

    def for_tenant(self, tenant_id: str) -> list[AuditRecord]:
        return [r for r in self.records if r.tenant_id == tenant_id]


def _request_payload(request: ActionRequest | None) -> dict[str, Any] | None:
    return request.model_dump(mode="json", exclude_none=True) if request is not None else None


class AuditLog:
    """
    Asynchronous audit writer.

    Usage:
        audit = AuditLog(StewardDB("steward.db"))
        audit.emit(record)          # returns immediately
        await audit.flush()         # wait for queued writes
        await audit.aclose()        # flush and stop workers

    Outside a running event loop, emit() writes synchronously.

    Attributes:
        sink: Where records are written
        written: Number of records written successfully
        failed: Number of records that could not be written
    """

    def __init__(self, sink: AuditSink, on_error: ErrorHook | None = None) -> None:
        self.sink = sink
        self._on_error = on_error
        self._queues: dict[AuditKey, asyncio.Queue[AuditRecord]] = {}
        self._workers: dict[AuditKey, asyncio.Task[None]] = {}
        self._closed = False
        self.written = 0
        self.failed = 0

    # =========================================================================
    # Writing
    # =========================================================================

    def _write(self, record: AuditRecord) -> None:
        try:
            self.sink.write_audit(record)
        except Exception as e:
            self._report(
                record,
                AuditWriteError(record_id=record.record_id, underlying_error=str(e)),
            )
        else:
            self.written += 1

    def _report(self, record: AuditRecord, error: AuditWriteError) -> None:
        self.failed += 1
        logger.error(
            "Audit write failed for %s %s (%s/%s): %s",
            record.kind.value,
            record.action,
            record.tenant_id,
            record.actor_id,
            error.underlying_error or error.message,
        )
        if self._on_error is not None:
            try:
                self._on_error(record, error)
            except Exception:
                logger.exception("Audit on_error hook raised")

    async def _worker(self, key: AuditKey, queue: "asyncio.Queue[AuditRecord]") -> None:
        """Write one key's records in order, then exit once its queue drains."""
        try:
            while True:
                record = await queue.get()
                try:
                    await asyncio.to_thread(self._write, record)
                finally:
                    queue.task_done()
                if queue.empty():
                    break
        finally:
            # No await between the empty check and here, so no emit can slip in
            if self._queues.get(key) is queue:
                del self._queues[key]
                del self._workers[key]

    def _queue_for(self, key: AuditKey) -> "asyncio.Queue[AuditRecord]":
        queue = self._queues.get(key)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[key] = queue
            self._workers[key] = asyncio.create_task(
                self._worker(key, queue),
                name=f"steward-audit-{key[0]}-{key[1]}",
            )
        return queue

    @property
    def active_workers(self) -> int:
        """Number of (tenant_id, actor_id) writers currently running."""
        return len(self._workers)

    def emit(self, record: AuditRecord) -> None:
        """
        Queue a record for writing. Never raises.

        Records for the same (tenant_id, actor_id) are written in emit order.
        """
        if self._closed:
            self._report(
                record,
                AuditWriteError(
                    record_id=record.record_id,
                    message="Audit log is closed",
                    underlying_error="audit log is closed",
                ),
            )
            return

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self._write(record)
            return

        # Queued writes happen later; the caller keeps its own copy
        try:
            record = record.model_copy(deep=True)
        except Exception as e:
            logger.warning("Queueing audit record %s uncopied: %s", record.record_id, e)
        self._queue_for((record.tenant_id, record.actor_id)).put_nowait(record)

    async def flush(self) -> None:
        """Wait until every queued record has been written (or failed)."""
        await asyncio.gather(*(queue.join() for queue in list(self._queues.values())))

    async def aclose(self) -> None:
        """Flush, then stop all workers. Later emits are reported as failures."""
        if self._closed:
            return
        await self.flush()
        self._closed = True
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()

    # =========================================================================
    # Record builders
    # =========================================================================

    def proposal(
        self,
        tenant_id: str,
        actor_id: str,
        proposal: Proposal,
        target_table: str | None = None,
        duplicate: bool = False,
    ) -> AuditRecord:
        """
        Record that an action was turned into a proposal.

        Args:
            duplicate: The request repeated a live pending proposal and was
                folded into it instead of creating a new one
        """
        request = proposal.request
        payload: dict[str, Any] = {
            "request": _request_payload(request),
            "proposal": proposal.model_dump(mode="json", exclude={"request"}),
        }
        if duplicate:
            payload["deduplicated_into"] = proposal.id
        record = AuditRecord(
            tenant_id=tenant_id,
            actor_id=actor_id,
            action=proposal.tool,
            target_table=target_table,
            kind=AuditKind.PROPOSAL,
            payload=payload,
            amount=request.amount if request is not None else None,
        )
        self.emit(record)
        return record

    def execution(
        self,
        tenant_id: str,
        actor_id: str,
        action: str,
        result: ToolCallResult,
        request: ActionRequest | None = None,
        target_table: str | None = None,
        before: Any = None,
        after: Any = None,
        proposal_id: str | None = None,
    ) -> AuditRecord:
        """Record a successful tool execution."""
        payload: dict[str, Any] = {
            "request": _request_payload(request),
            "args": result.args,
            "result": result.data,
        }
        if before is not None:
            payload["before"] = before
        if after is not None:
            payload["after"] = after
        if proposal_id is not None:
            payload["proposal_id"] = proposal_id
        record = AuditRecord(
            tenant_id=tenant_id,
            actor_id=actor_id,
            action=action,
            target_table=target_table,
            kind=AuditKind.EXECUTION,
            payload=payload,
            amount=request.amount if request is not None else None,
        )
        self.emit(record)
        return record

    def denial(
        self,
        tenant_id: str,
        actor_id: str,
        action: str,
        reason: str,
        source: str,
        request: ActionRequest | None = None,
        target_table: str | None = None,
        decision: GuardrailDecision | None = None,
        proposal_id: str | None = None,
    ) -> AuditRecord:
        """
        Record a refusal.

        Args:
            source: "guardrail", "tool" or "human"
        """
        payload: dict[str, Any] = {
            "reason": reason,
            "source": source,
            "request": _request_payload(request),
        }
        if decision is not None:
            payload["rule"] = decision.rule
        if proposal_id is not None:
            payload["proposal_id"] = proposal_id
        record = AuditRecord(
            tenant_id=tenant_id,
            actor_id=actor_id,
            action=action,
            target_table=target_table,
            kind=AuditKind.DENIAL,
            payload=payload,
            amount=request.amount if request is not None else None,
        )
        self.emit(record)
        return record

    def failure(
        self,
        tenant_id: str,
        actor_id: str,
        action: str,
        result: ToolCallResult,
        request: ActionRequest | None = None,
        target_table: str | None = None,
        proposal_id: str | None = None,
    ) -> AuditRecord:
        """Record a dispatcher failure."""
        payload: dict[str, Any] = {
            "error": result.error,
            "args": result.args,
            "request": _request_payload(request),
        }
        if result.detail is not None:
            payload["detail"] = result.detail
        if result.stack:
            payload["stack"] = result.stack
        if proposal_id is not None:
            payload["proposal_id"] = proposal_id
        record = AuditRecord(
            tenant_id=tenant_id,
            actor_id=actor_id,
            action=action,
            target_table=target_table,
            kind=AuditKind.FAILURE,
            payload=payload,
            amount=request.amount if request is not None else None,
        )
        self.emit(record)
        return record
