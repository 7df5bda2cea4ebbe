"""Gathering of everything a fix run has to address.

A fix always sees the union of review feedback and CI failures: the latest
review body, the unresolved thread comments and the failed checks.
"""

from dataclasses import dataclass

import structlog

from epic_autopilot.enums import CheckConclusion, ReviewVerdict
from epic_autopilot.exceptions import ExternalServiceError
from epic_autopilot.providers.base import ContinuousIntegration, ReviewService

log = structlog.get_logger(__name__)


@dataclass
class Feedback:
    """Feedback for one request.

    Attributes:
        text: Rendered feedback handed to the agent
        review_id: Id of the review the feedback came from
        has_review_feedback: True when reviewer comments are part of it,
            so a reply is posted and threads are resolved after the fix
    """

    text: str
    review_id: str | None = None
    has_review_feedback: bool = False


async def collect_feedback(review: ReviewService, ci: ContinuousIntegration, ref: int) -> Feedback:
    """Collect review and CI feedback for a request.

    Each source is best effort: an unreachable service contributes nothing
    rather than aborting the fix.
    """
    sections: list[str] = []
    review_id: str | None = None
    has_review_feedback = False

    try:
        summary = await review.latest_review(ref)
        review_id = summary.review_id
        if summary.verdict in (ReviewVerdict.CHANGES_REQUESTED, ReviewVerdict.COMMENTED) and summary.body.strip():
            sections.append(f"REVIEW ({summary.verdict}):\n{summary.body.strip()}")
            has_review_feedback = True
    except ExternalServiceError as e:
        log.warning("feedback_review_unavailable", pr=ref, error=str(e))

    try:
        comments = await review.unresolved_thread_comments(ref)
        if comments:
            sections.append("UNRESOLVED REVIEW THREADS:\n" + "\n".join(f"- {c}" for c in comments))
            has_review_feedback = True
    except ExternalServiceError as e:
        log.warning("feedback_threads_unavailable", pr=ref, error=str(e))

    try:
        failed = [run for run in await ci.check_runs(ref) if run.conclusion == CheckConclusion.FAIL]
        if failed:
            lines = []
            for run in failed:
                line = f"- {run.name}"
                if run.details_url:
                    line += f" ({run.details_url})"
                if run.summary:
                    line += f": {run.summary}"
                lines.append(line)
            sections.append("CI FAILURES:\n" + "\n".join(lines))
    except ExternalServiceError as e:
        log.warning("feedback_checks_unavailable", pr=ref, error=str(e))

    if not sections:
        sections.append("No specific feedback was found. Re-run the local checks and fix anything failing.")

    return Feedback(text="\n\n".join(sections), review_id=review_id, has_review_feedback=has_review_feedback)
