"""
Durable state store with atomic read-modify-write transactions.

The orchestrator keeps a single ``OrchestratorState`` record on disk. This
module is its only writer. Every mutation goes through ``transaction()``,
which:

- loads and validates the current record,
- yields it for in-place modification,
- checks the orchestrator invariants,
- writes it atomically (``<file>.tmp`` followed by ``Path.replace``).

Nothing is written when the transaction body raises or when the modified
record breaks an invariant, so the file on disk always reflects the last
committed phase.

Concurrency Model:
    One process owns the state file. An ``asyncio.Lock`` serialises
    transactions inside that process; no file locking is attempted.

Example:
    >>> store = StateManager(".autopilot/state.json")
    >>> await store.initialize_if_absent()
    >>> async with store.transaction() as state:
    ...     state.phase = Phase.FIND_WORK
"""

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiofiles
import structlog
from pydantic import ValidationError

from epic_autopilot.engine.types import (
    BlockedRecord,
    OrchestratorState,
    PendingEntry,
    SavedContext,
    utc_now,
)
from epic_autopilot.enums import Phase
from epic_autopilot.exceptions import StateInvariantError, StateSchemaError

log = structlog.get_logger(__name__)

_UNSET: Any = object()


class StateManager:
    """Persist orchestrator state with atomic file operations.

    Attributes:
        state_file: Path of the canonical JSON state file.
    """

    def __init__(self, state_file: str | Path) -> None:
        """Initialize the store.

        Creates the parent directory if it does not exist.

        Args:
            state_file: Path of the JSON state file.
        """
        self.state_file = Path(state_file)
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def exists(self) -> bool:
        return self.state_file.exists()

    async def _read_internal(self) -> OrchestratorState:
        """Load state without acquiring the lock.

        Raises:
            StateSchemaError: If the file is missing, not JSON, or does not
                match the schema.
        """
        if not self.state_file.exists():
            raise StateSchemaError(f"State file not found: {self.state_file}")

        async with aiofiles.open(self.state_file) as f:
            content = await f.read()

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise StateSchemaError(f"State file {self.state_file} is not valid JSON: {e}") from e

        try:
            return OrchestratorState.model_validate(data)
        except ValidationError as e:
            raise StateSchemaError(f"State file {self.state_file} does not match the schema: {e}") from e

    async def _write_internal(self, state: OrchestratorState) -> None:
        """Validate invariants and write atomically. Caller holds the lock."""
        problems = state.violations()
        if problems:
            log.error("state_invariant_violation", problems=problems, phase=str(state.phase))
            raise StateInvariantError("Refusing to write inconsistent state: " + "; ".join(problems))

        state.updated_at = utc_now()
        tmp_path = self.state_file.with_suffix(".tmp")

        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(state.model_dump_json(indent=2))

        # Atomic on POSIX when on the same filesystem
        tmp_path.replace(self.state_file)

    async def read(self) -> OrchestratorState:
        """Load the current state.

        Raises:
            StateSchemaError: If the state cannot be loaded.
        """
        async with self._lock:
            return await self._read_internal()

    async def write(self, state: OrchestratorState) -> None:
        """Atomically replace the persisted state.

        Raises:
            StateInvariantError: If ``state`` breaks an invariant. Nothing is
                written in that case.
        """
        async with self._lock:
            await self._write_internal(state)

    async def initialize_if_absent(self, default: OrchestratorState | None = None) -> bool:
        """Create the state file unless it already exists.

        Returns:
            True if a new file was written.
        """
        async with self._lock:
            if self.state_file.exists():
                return False
            await self._write_internal(default or OrchestratorState.initial())
            log.info("state_initialized", path=str(self.state_file))
            return True

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[OrchestratorState]:
        """Read, yield for modification, validate and write.

        If the body raises, the state is NOT saved and the exception is
        re-raised.

        Example:
            >>> async with store.transaction() as state:
            ...     state.completed_items = [*state.completed_items, "7A"]
        """
        async with self._lock:
            state = await self._read_internal()
            try:
                yield state
                await self._write_internal(state)
            except Exception:
                log.debug("state_transaction_aborted", path=str(self.state_file))
                raise

    # ------------------------------------------------------------------
    # Helpers, each a single transaction
    # ------------------------------------------------------------------

    async def set_phase(
        self,
        phase: Phase,
        active_item: str | None = _UNSET,
        active_request: int | None = _UNSET,
        active_feedback_ref: str | None = _UNSET,
    ) -> OrchestratorState:
        """Commit a phase transition.

        Fields left unset keep their current value. Leaving BLOCKED clears
        the blocked record.
        """
        async with self.transaction() as state:
            previous = state.phase
            state.phase = phase
            if active_item is not _UNSET:
                state.active_item = active_item
            if active_request is not _UNSET:
                state.active_request = active_request
            if active_feedback_ref is not _UNSET:
                state.active_feedback_ref = active_feedback_ref
            if phase != Phase.BLOCKED:
                state.blocked = None

        log.info(
            "phase_transition",
            from_phase=str(previous),
            to_phase=str(phase),
            item=state.active_item,
        )
        return state

    async def mark_completed(self, item_id: str, next_phase: Phase | None = None) -> None:
        """Record an item as completed.

        Also drops it from the pending queue and clears it as the active
        item, so the mutual-exclusion invariants hold after the write.
        ``next_phase`` commits a transition in the same write.
        """
        async with self.transaction() as state:
            if item_id not in state.completed_items:
                state.completed_items = [*state.completed_items, item_id]
            state.pending_queue = [e for e in state.pending_queue if e.item_id != item_id]
            if state.active_item == item_id:
                state.active_item = None
                state.active_request = None
                state.active_feedback_ref = None
            if next_phase is not None:
                state.phase = next_phase

        log.info("item_completed", item=item_id, next_phase=str(next_phase) if next_phase else None)

    async def add_pending(self, entry: PendingEntry) -> None:
        """Append an entry to the pending queue.

        Raises:
            StateInvariantError: If the item is already pending or completed.
        """
        async with self.transaction() as state:
            if state.get_pending(entry.item_id) is not None:
                raise StateInvariantError(f"Item {entry.item_id} is already in the pending queue")
            state.pending_queue = [*state.pending_queue, entry]

        log.info("pending_added", item=entry.item_id, pr=entry.request_ref)

    async def hand_off(self, entry: PendingEntry, next_phase: Phase = Phase.FIND_WORK) -> None:
        """Move the active item into the pending queue in a single write.

        The active item is cleared in the same write that enqueues it, so
        the item is never both active and pending on disk.
        """
        async with self.transaction() as state:
            if state.get_pending(entry.item_id) is not None:
                raise StateInvariantError(f"Item {entry.item_id} is already in the pending queue")
            state.pending_queue = [*state.pending_queue, entry]
            if state.active_item == entry.item_id:
                state.active_item = None
                state.active_request = None
                state.active_feedback_ref = None
            state.phase = next_phase

        log.info("item_handed_off", item=entry.item_id, pr=entry.request_ref, next_phase=str(next_phase))

    async def update_pending(self, item_id: str, **changes: Any) -> PendingEntry:
        """Modify fields of one pending entry.

        Raises:
            StateInvariantError: If the item is not pending.
        """
        async with self.transaction() as state:
            entry = state.get_pending(item_id)
            if entry is None:
                raise StateInvariantError(f"Item {item_id} is not in the pending queue")
            for key, value in changes.items():
                setattr(entry, key, value)
            # Reassign so the list is revalidated
            state.pending_queue = list(state.pending_queue)

        return entry

    async def remove_pending(self, item_id: str) -> PendingEntry | None:
        """Drop an item from the pending queue. Returns the removed entry."""
        removed: PendingEntry | None = None
        async with self.transaction() as state:
            removed = state.get_pending(item_id)
            if removed is not None:
                state.pending_queue = [e for e in state.pending_queue if e.item_id != item_id]

        if removed is not None:
            log.info("pending_removed", item=item_id)
        return removed

    async def save_context(self) -> SavedContext:
        """Snapshot the active pipeline before fixing a pending item.

        Raises:
            StateInvariantError: If a context is already saved.
        """
        async with self.transaction() as state:
            if state.saved_context is not None:
                raise StateInvariantError("A saved context already exists; restore it first")
            context = SavedContext(
                phase=state.phase,
                active_item=state.active_item,
                active_request=state.active_request,
                active_feedback_ref=state.active_feedback_ref,
            )
            state.saved_context = context

        log.debug("context_saved", phase=str(context.phase), item=context.active_item)
        return context

    async def restore_context(self) -> bool:
        """Restore the snapshot taken by ``save_context``.

        Returns:
            True if a context was restored, False if none was saved.
        """
        async with self.transaction() as state:
            context = state.saved_context
            if context is None:
                return False
            state.phase = context.phase
            state.active_item = context.active_item
            state.active_request = context.active_request
            state.active_feedback_ref = context.active_feedback_ref
            state.saved_context = None

        log.debug("context_restored", phase=str(context.phase), item=context.active_item)
        return True

    async def block(
        self,
        phase: Phase,
        item_id: str | None,
        reason: str,
        error_kind: str = "phase_error",
    ) -> OrchestratorState:
        """Move the run to BLOCKED with a record of what failed.

        The active item is preserved so ``run --continue`` can resume it.
        """
        async with self.transaction() as state:
            state.blocked = BlockedRecord(item_id=item_id, phase=phase, reason=reason, error_kind=error_kind)
            state.phase = Phase.BLOCKED

        log.error("run_blocked", item=item_id, phase=str(phase), reason=reason, error_kind=error_kind)
        return state

    async def clear_blocked(self, resume_phase: Phase = Phase.CHECK_PENDING) -> bool:
        """Leave BLOCKED for ``resume_phase``. Returns False if not blocked."""
        async with self.transaction() as state:
            if state.phase != Phase.BLOCKED:
                return False
            state.blocked = None
            state.phase = resume_phase

        log.info("blocked_cleared", resume_phase=str(resume_phase), item=state.active_item)
        return True
