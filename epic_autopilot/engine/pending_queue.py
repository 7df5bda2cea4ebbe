"""
Pending-review queue serviced in the background of the active pipeline.

In concurrent mode a submitted item is handed to this queue and the active
pipeline moves on to new work. Between phase dispatches the orchestrator
calls ``service()``, which polls every entry once and fixes at most one of
them:

- approved requests are merged through the review service (the main
  checkout is never touched),
- merged requests are recorded as completed,
- closed requests are dropped,
- requests with failed checks, new change requests or unresolved threads
  are marked ``needs_fixes``; the first one gets a fix pass in its own
  worktree while the active pipeline is suspended in ``saved_context``.

Errors concerning a single entry are logged and recorded on that entry.
They never block the active pipeline.
"""

from pathlib import Path
from typing import Any

import structlog

from epic_autopilot.engine.context import RunContext
from epic_autopilot.engine.feedback import collect_feedback
from epic_autopilot.engine.state_manager import StateManager
from epic_autopilot.engine.types import PendingEntry, utc_now
from epic_autopilot.enums import (
    CheckConclusion,
    PendingClassification,
    PendingStatus,
    RequestState,
    ReviewVerdict,
)
from epic_autopilot.exceptions import AutopilotError, ExternalServiceError
from epic_autopilot.models.domain import PollResult

log = structlog.get_logger(__name__)


class PendingReviewQueue:
    """Track submitted items until they are merged, closed or abandoned.

    Attributes:
        ctx: Collaborators and run options
        store: Durable state store holding the queue
    """

    def __init__(self, ctx: RunContext, store: StateManager) -> None:
        self.ctx = ctx
        self.store = store

    async def add(self, item_id: str, request_ref: int, workspace_ref: str | Path | None = None) -> PendingEntry:
        """Append an item in ``awaiting_review``."""
        entry = PendingEntry(
            item_id=item_id,
            request_ref=request_ref,
            workspace_ref=str(workspace_ref) if workspace_ref is not None else None,
        )
        await self.store.add_pending(entry)
        return entry

    async def _inspect(self, entry: PendingEntry) -> tuple[PendingClassification, PendingStatus | None]:
        """Classify an entry and suggest the status to record while waiting."""
        ref = entry.request_ref
        review = self.ctx.review

        try:
            request = await review.get_request(ref)
            if request.state == RequestState.MERGED:
                return PendingClassification.MERGED, None
            if request.state == RequestState.CLOSED:
                return PendingClassification.CLOSED, None
            if request.state == RequestState.UNKNOWN:
                return PendingClassification.WAITING, None

            conclusions = await self.ctx.ci.check_conclusions(ref)
            if CheckConclusion.FAIL in conclusions:
                return PendingClassification.NEEDS_FIXES, PendingStatus.NEEDS_FIXES

            latest = await review.latest_review(ref)
            if (
                latest.verdict == ReviewVerdict.CHANGES_REQUESTED
                and latest.review_id != entry.last_seen_feedback_ref
            ):
                return PendingClassification.NEEDS_FIXES, PendingStatus.NEEDS_FIXES

            if await review.unresolved_thread_count(ref) > 0:
                return PendingClassification.NEEDS_FIXES, PendingStatus.NEEDS_FIXES

            approved = latest.verdict == ReviewVerdict.APPROVED or not self.ctx.settings.workflow.require_approval
            checks_pending = CheckConclusion.PENDING in conclusions
            if approved and not checks_pending:
                return PendingClassification.APPROVED, None
            if approved:
                return PendingClassification.WAITING, PendingStatus.AWAITING_CHECKS
            return PendingClassification.WAITING, PendingStatus.AWAITING_REVIEW

        except ExternalServiceError as e:
            log.warning("pending_classify_unavailable", item=entry.item_id, pr=ref, error=str(e))
            return PendingClassification.WAITING, None

    async def classify(self, entry: PendingEntry) -> PendingClassification:
        """Classify one entry from its request, CI and review state."""
        classification, _ = await self._inspect(entry)
        return classification

    async def _release_workspace(self, item_id: str) -> None:
        try:
            await self.ctx.vcs.remove_workspace(item_id)
        except AutopilotError as e:
            log.warning("workspace_cleanup_failed", item=item_id, error=e.message)

    async def _complete(self, entry: PendingEntry) -> None:
        await self.store.mark_completed(entry.item_id)
        await self._release_workspace(entry.item_id)

    async def _merge(self, entry: PendingEntry) -> bool:
        """Merge an approved entry. Returns True if the request is merged."""
        try:
            result = await self.ctx.review.merge(entry.request_ref)
        except AutopilotError as e:
            log.warning("pending_merge_error", item=entry.item_id, pr=entry.request_ref, error=e.message)
            await self.store.update_pending(
                entry.item_id,
                status=PendingStatus.MERGE_FAILED,
                last_error=e.message,
                last_checked_at=utc_now(),
            )
            return False

        if not result.merged:
            log.warning("pending_merge_failed", item=entry.item_id, pr=entry.request_ref, reason=result.message)
            await self.store.update_pending(
                entry.item_id,
                status=PendingStatus.MERGE_FAILED,
                last_error=result.message or "merge refused",
                last_checked_at=utc_now(),
            )
            return False

        log.info("pending_merged", item=entry.item_id, pr=entry.request_ref, sha=result.sha)
        await self._complete(entry)
        return True

    async def poll_all(self) -> PollResult:
        """Poll every pending entry once and act on its classification.

        Returns:
            What changed, plus the single item to fix this round (if any).
        """
        state = await self.store.read()
        result = PollResult()
        max_attempts = self.ctx.settings.workflow.review_retries

        for entry in state.pending_queue:
            item_id = entry.item_id
            try:
                classification, status = await self._inspect(entry)
                log.debug("pending_classified", item=item_id, pr=entry.request_ref, classification=str(classification))

                if classification == PendingClassification.APPROVED:
                    if await self._merge(entry):
                        result.merged_items.append(item_id)
                    else:
                        result.merge_failures.append(item_id)

                elif classification == PendingClassification.MERGED:
                    log.info("pending_merged_externally", item=item_id, pr=entry.request_ref)
                    await self._complete(entry)
                    result.merged_items.append(item_id)

                elif classification == PendingClassification.CLOSED:
                    log.info("pending_closed", item=item_id, pr=entry.request_ref)
                    await self.store.remove_pending(item_id)
                    await self._release_workspace(item_id)
                    result.closed_items.append(item_id)

                elif classification == PendingClassification.NEEDS_FIXES:
                    await self.store.update_pending(
                        item_id, status=PendingStatus.NEEDS_FIXES, last_checked_at=utc_now()
                    )
                    if result.item_needing_fix is None and entry.attempts < max_attempts:
                        result.item_needing_fix = item_id
                    elif entry.attempts >= max_attempts:
                        log.warning("pending_fix_attempts_exhausted", item=item_id, attempts=entry.attempts)

                else:
                    changes: dict[str, Any] = {"last_checked_at": utc_now()}
                    if status is not None:
                        changes["status"] = status
                    await self.store.update_pending(item_id, **changes)

            except AutopilotError as e:
                log.error("pending_poll_error", item=item_id, error=e.message, error_kind=e.error_kind)
                try:
                    await self.store.update_pending(item_id, last_error=e.message, last_checked_at=utc_now())
                except AutopilotError:
                    log.debug("pending_entry_gone", item=item_id)

        if result.changed:
            log.info(
                "pending_round_complete",
                merged=result.merged_items,
                closed=result.closed_items,
                merge_failures=result.merge_failures,
                fix=result.item_needing_fix,
            )
        return result

    async def fix_pending(self, item_id: str) -> bool:
        """Run one fix pass for a pending item in its own worktree.

        The active pipeline is saved first and always restored afterwards,
        whatever happens during the fix.

        Returns:
            True if the fix was pushed, False if the agent was blocked or
            the fix failed.
        """
        state = await self.store.read()
        entry = state.get_pending(item_id)
        if entry is None:
            log.warning("pending_fix_unknown_item", item=item_id)
            return False

        await self.store.save_context()
        try:
            return await self._fix(entry)
        except AutopilotError as e:
            log.error("pending_fix_failed", item=item_id, error=e.message, error_kind=e.error_kind)
            await self.store.update_pending(
                item_id,
                attempts=entry.attempts + 1,
                last_error=e.message,
                status=PendingStatus.NEEDS_FIXES,
            )
            return False
        finally:
            await self.store.restore_context()

    async def _fix(self, entry: PendingEntry) -> bool:
        item_id = entry.item_id
        ref = entry.request_ref

        workspace = await self.ctx.vcs.create_workspace(item_id)
        await self.store.update_pending(item_id, workspace_ref=str(workspace))

        feedback = await collect_feedback(self.ctx.review, self.ctx.ci, ref)
        log.info("pending_fix_started", item=item_id, pr=ref, workspace=str(workspace))

        result = await self.ctx.agent.fix(item_id, feedback.text, workspace, self.ctx.settings.agent.fix_max_turns)
        if result.blocked:
            log.warning("pending_fix_blocked", item=item_id, reason=result.reason)
            await self.store.update_pending(
                item_id,
                attempts=entry.attempts + 1,
                last_error=result.reason,
                status=PendingStatus.NEEDS_FIXES,
            )
            return False

        await self.ctx.vcs.commit_all("fix: address ci/review", cwd=workspace)
        await self.ctx.vcs.push(self.ctx.vcs.branch_name(item_id), cwd=workspace)

        if feedback.has_review_feedback:
            try:
                if result.reply:
                    await self.ctx.review.post_reply(ref, result.reply)
                await self.ctx.review.resolve_all_threads(ref)
            except ExternalServiceError as e:
                log.warning("reply_failed", item=item_id, pr=ref, error=str(e))

        await self.store.update_pending(
            item_id,
            status=PendingStatus.AWAITING_REVIEW,
            attempts=0,
            last_error=None,
            last_seen_feedback_ref=feedback.review_id or entry.last_seen_feedback_ref,
            last_checked_at=utc_now(),
        )
        log.info("pending_fix_pushed", item=item_id, pr=ref)
        return True

    async def service(self) -> PollResult:
        """One background round: poll everything, fix at most one item."""
        result = await self.poll_all()
        if result.item_needing_fix is not None:
            await self.fix_pending(result.item_needing_fix)
        return result

    async def has_active_entries(self) -> bool:
        state = await self.store.read()
        return any(entry.status.is_active for entry in state.pending_queue)
