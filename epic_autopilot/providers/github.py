"""GitHub review and CI binding.

REST calls (pull requests, reviews, comments, check runs, merges) go through
PyGithub in a worker thread. Review threads are only exposed by the GraphQL
API, which is called with httpx.
"""

import asyncio
from collections.abc import Callable
from typing import Any, TypeVar

import httpx
import structlog
from github import Auth, Github, GithubException  # type: ignore[import-not-found]
from github.PullRequest import PullRequest as GHPullRequest  # type: ignore[import-not-found]
from github.Repository import Repository as GHRepository  # type: ignore[import-not-found]

from epic_autopilot.enums import CheckConclusion, RequestState, ReviewVerdict
from epic_autopilot.exceptions import ExternalServiceError
from epic_autopilot.models.domain import CheckRun, MergeResult, PullRequest, ReviewSummary
from epic_autopilot.providers.base import ContinuousIntegration, ReviewService
from epic_autopilot.utils.retry import async_retry

log = structlog.get_logger(__name__)

T = TypeVar("T")

PASSING_CONCLUSIONS = {"success", "neutral", "skipped"}
DECISIVE_REVIEW_STATES = {"APPROVED", "CHANGES_REQUESTED"}

REVIEW_THREADS_QUERY = """
query($owner: String!, $repo: String!, $pr: Int!) {
  repository(owner: $owner, name: $repo) {
    pullRequest(number: $pr) {
      reviewThreads(first: 100) {
        nodes {
          id
          isResolved
          comments(first: 1) {
            nodes {
              body
              path
              author { login }
            }
          }
        }
      }
    }
  }
}
"""

RESOLVE_THREAD_MUTATION = """
mutation($threadId: ID!) {
  resolveReviewThread(input: {threadId: $threadId}) {
    thread { isResolved }
  }
}
"""


async def _run_sync(func: Callable[[], T]) -> T:
    """Run a blocking PyGithub call in a worker thread."""
    return await asyncio.to_thread(func)


class GitHubGraphQLClient:
    """Minimal GraphQL client for review threads.

    Args:
        url: GraphQL endpoint
        token: API token
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)
    """

    def __init__(
        self,
        url: str,
        token: str | None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        headers = {"Accept": "application/vnd.github+json"}
        if token:
            headers["Authorization"] = f"Bearer {token.strip()}"
        self.url = url
        self._client = httpx.AsyncClient(headers=headers, timeout=timeout, transport=transport)

    async def execute(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        """Run a query or mutation and return its ``data`` object.

        Raises:
            ExternalServiceError: On transport errors, HTTP errors, or a
                response carrying GraphQL ``errors``.
        """
        try:
            response = await self._client.post(self.url, json={"query": query, "variables": variables})
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ExternalServiceError("GraphQL request failed", status_code=e.response.status_code) from e
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"GraphQL request failed: {e}") from e

        payload = response.json()
        if payload.get("errors"):
            messages = "; ".join(str(err.get("message", err)) for err in payload["errors"])
            raise ExternalServiceError(f"GraphQL errors: {messages}")
        return payload.get("data") or {}

    async def review_threads(self, owner: str, repo: str, number: int) -> list[dict[str, Any]]:
        data = await self.execute(REVIEW_THREADS_QUERY, {"owner": owner, "repo": repo, "pr": number})
        pull = (data.get("repository") or {}).get("pullRequest") or {}
        return list((pull.get("reviewThreads") or {}).get("nodes") or [])

    async def resolve_thread(self, thread_id: str) -> bool:
        data = await self.execute(RESOLVE_THREAD_MUTATION, {"threadId": thread_id})
        thread = (data.get("resolveReviewThread") or {}).get("thread") or {}
        return bool(thread.get("isResolved"))

    async def aclose(self) -> None:
        await self._client.aclose()


class GitHubProvider(ReviewService, ContinuousIntegration):
    """GitHub implementation of the review service and CI status."""

    def __init__(
        self,
        token: str | None,
        owner: str,
        repo: str,
        base_branch: str,
        api_url: str = "https://api.github.com",
        graphql: GitHubGraphQLClient | None = None,
        request_labels: list[str] | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            token: Personal access or app token
            owner: Repository owner (user or organization)
            repo: Repository name
            base_branch: Branch new requests target
            api_url: REST API base URL (GitHub Enterprise uses ``.../api/v3``)
            graphql: GraphQL client for review threads
            request_labels: Labels added to every new request
        """
        self.token = token.strip() if token else token
        self.owner = owner
        self.repo = repo
        self.base_branch = base_branch
        self.api_url = api_url.rstrip("/")
        self.graphql = graphql or GitHubGraphQLClient(f"{self.api_url}/graphql", self.token)
        self.request_labels = request_labels or []
        self._client: Github | None = None
        self._repo: GHRepository | None = None

    async def connect(self) -> None:
        """Initialize the PyGithub client and resolve the repository."""

        def _connect() -> tuple[Github, GHRepository]:
            auth = Auth.Token(self.token) if self.token else None
            client = Github(auth=auth, base_url=self.api_url)
            return client, client.get_repo(f"{self.owner}/{self.repo}")

        try:
            self._client, self._repo = await _run_sync(_connect)
        except GithubException as e:
            raise ExternalServiceError(
                f"Cannot access repository {self.owner}/{self.repo}", status_code=e.status
            ) from e
        log.info("github_connected", api_url=self.api_url, owner=self.owner, repo=self.repo)

    async def disconnect(self) -> None:
        if self._client:
            await _run_sync(self._client.close)
            self._client = None
            self._repo = None
        await self.graphql.aclose()

    @property
    def repository(self) -> GHRepository:
        if self._repo is None:
            raise ExternalServiceError("GitHub provider is not connected")
        return self._repo

    async def _call(self, action: str, func: Callable[[], T]) -> T:
        try:
            return await _run_sync(func)
        except GithubException as e:
            log.error("github_call_failed", action=action, status=e.status, error=str(e.data))
            raise ExternalServiceError(f"GitHub {action} failed", status_code=e.status) from e

    # ------------------------------------------------------------------
    # Pull requests
    # ------------------------------------------------------------------

    @async_retry(max_attempts=3, backoff_factor=2.0, exceptions=(ExternalServiceError,))
    async def find_open_request(self, branch: str) -> PullRequest | None:
        requests = await self._call(
            "list_pulls",
            lambda: [
                self._convert_pull_request(p)
                for p in self.repository.get_pulls(state="open", head=f"{self.owner}:{branch}")
            ],
        )
        return requests[0] if requests else None

    @async_retry(max_attempts=3, backoff_factor=2.0, exceptions=(ExternalServiceError,))
    async def list_open_requests(self, branch_prefix: str) -> list[PullRequest]:
        return await self._call(
            "list_pulls",
            lambda: [
                self._convert_pull_request(p)
                for p in self.repository.get_pulls(state="open")
                if p.head.ref.startswith(branch_prefix)
            ],
        )

    async def create_request(self, item_id: str, branch: str) -> PullRequest:
        log.info("create_request", item=item_id, branch=branch, base=self.base_branch)

        gh_pr = await self._call(
            "create_pull",
            lambda: self.repository.create_pull(
                title=f"Epic {item_id}",
                body=f"Automated implementation of epic {item_id}.",
                head=branch,
                base=self.base_branch,
            ),
        )

        labels = [*self.request_labels, f"epic-{item_id}"]
        try:
            await _run_sync(lambda: gh_pr.add_to_labels(*labels))
        except GithubException as e:
            log.warning("request_labels_failed", pr=gh_pr.number, labels=labels, error=str(e.data))

        return await self._call("convert_pull", lambda: self._convert_pull_request(gh_pr))

    @async_retry(max_attempts=3, backoff_factor=2.0, exceptions=(ExternalServiceError,))
    async def get_request(self, ref: int) -> PullRequest:
        return await self._call("get_pull", lambda: self._convert_pull_request(self.repository.get_pull(ref)))

    async def post_reply(self, ref: int, text: str) -> None:
        await self._call("create_comment", lambda: self.repository.get_pull(ref).create_issue_comment(text))
        log.info("reply_posted", pr=ref)

    async def merge(self, ref: int) -> MergeResult:
        gh_pr = await self._call("get_pull", lambda: self.repository.get_pull(ref))
        if gh_pr.merged:
            log.info("request_already_merged", pr=ref)
            return MergeResult(merged=True, sha=gh_pr.merge_commit_sha, already_merged=True)

        try:
            status = await _run_sync(lambda: gh_pr.merge(merge_method="squash"))
        except GithubException as e:
            conflict = e.status in (405, 409)
            log.error("merge_failed", pr=ref, status=e.status, error=str(e.data))
            return MergeResult(merged=False, message=str(e.data), conflict=conflict)

        if not status.merged:
            return MergeResult(merged=False, message=status.message)

        try:
            await _run_sync(lambda: self.repository.get_git_ref(f"heads/{gh_pr.head.ref}").delete())
        except GithubException as e:
            log.warning("remote_branch_delete_failed", branch=gh_pr.head.ref, error=str(e.data))

        log.info("request_merged", pr=ref, sha=status.sha)
        return MergeResult(merged=True, sha=status.sha, message=status.message)

    # ------------------------------------------------------------------
    # Reviews and threads
    # ------------------------------------------------------------------

    @async_retry(max_attempts=3, backoff_factor=2.0, exceptions=(ExternalServiceError,))
    async def latest_review(self, ref: int) -> ReviewSummary:
        """Most recent approving or change-requesting review.

        Falls back to the latest plain comment review when no decisive one
        exists.
        """
        reviews = await self._call("list_reviews", lambda: list(self.repository.get_pull(ref).get_reviews()))
        submitted = [r for r in reviews if r.state in (*DECISIVE_REVIEW_STATES, "COMMENTED")]
        if not submitted:
            return ReviewSummary()

        decisive = [r for r in submitted if r.state in DECISIVE_REVIEW_STATES]
        review = (decisive or submitted)[-1]
        verdict = {
            "APPROVED": ReviewVerdict.APPROVED,
            "CHANGES_REQUESTED": ReviewVerdict.CHANGES_REQUESTED,
        }.get(review.state, ReviewVerdict.COMMENTED)

        return ReviewSummary(
            verdict=verdict,
            review_id=str(review.id),
            body=review.body or "",
            author=review.user.login if review.user else "",
        )

    async def _threads(self, ref: int) -> list[dict[str, Any]]:
        return await self.graphql.review_threads(self.owner, self.repo, ref)

    async def unresolved_thread_count(self, ref: int) -> int:
        threads = await self._threads(ref)
        return sum(1 for t in threads if not t.get("isResolved"))

    async def unresolved_thread_comments(self, ref: int) -> list[str]:
        comments = []
        for thread in await self._threads(ref):
            if thread.get("isResolved"):
                continue
            for node in (thread.get("comments") or {}).get("nodes") or []:
                body = (node.get("body") or "").strip()
                path = node.get("path")
                comments.append(f"{path}: {body}" if path else body)
        return comments

    async def resolve_all_threads(self, ref: int) -> int:
        resolved = 0
        for thread in await self._threads(ref):
            if thread.get("isResolved"):
                continue
            try:
                if await self.graphql.resolve_thread(thread["id"]):
                    resolved += 1
            except ExternalServiceError as e:
                log.warning("thread_resolve_failed", pr=ref, thread=thread.get("id"), error=str(e))

        if resolved:
            log.info("threads_resolved", pr=ref, count=resolved)
        return resolved

    # ------------------------------------------------------------------
    # CI
    # ------------------------------------------------------------------

    @async_retry(max_attempts=3, backoff_factor=2.0, exceptions=(ExternalServiceError,))
    async def check_runs(self, ref: int) -> list[CheckRun]:
        def _collect() -> tuple[list[Any], list[Any]]:
            gh_pr = self.repository.get_pull(ref)
            commit = self.repository.get_commit(gh_pr.head.sha)
            return list(commit.get_check_runs()), list(commit.get_combined_status().statuses)

        runs, statuses = await self._call("list_checks", _collect)
        results = [self._convert_check_run(run) for run in runs]
        results.extend(self._convert_status(status) for status in statuses)
        return results

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def _convert_pull_request(self, gh_pr: GHPullRequest) -> PullRequest:
        """Convert a PyGithub pull request.

        Attributes missing from the list payload are fetched lazily, so this
        must only run inside ``_call``.
        """
        if gh_pr.merged_at is not None:
            state = RequestState.MERGED
        elif gh_pr.state == "closed":
            state = RequestState.CLOSED
        elif gh_pr.state == "open":
            state = RequestState.OPEN
        else:
            state = RequestState.UNKNOWN

        return PullRequest(
            number=gh_pr.number,
            title=gh_pr.title,
            head=gh_pr.head.ref,
            base=gh_pr.base.ref,
            state=state,
            url=gh_pr.html_url,
            body=gh_pr.body or "",
            mergeable=gh_pr.mergeable,
            created_at=gh_pr.created_at,
        )

    @staticmethod
    def _convert_check_run(run: Any) -> CheckRun:
        if run.status != "completed":
            conclusion = CheckConclusion.PENDING
        elif run.conclusion in PASSING_CONCLUSIONS:
            conclusion = CheckConclusion.PASS
        else:
            conclusion = CheckConclusion.FAIL
        summary = (run.output.summary or "") if getattr(run, "output", None) else ""
        return CheckRun(name=run.name, conclusion=conclusion, details_url=run.details_url or "", summary=summary)

    @staticmethod
    def _convert_status(status: Any) -> CheckRun:
        conclusion = {
            "success": CheckConclusion.PASS,
            "pending": CheckConclusion.PENDING,
        }.get(status.state, CheckConclusion.FAIL)
        return CheckRun(
            name=status.context,
            conclusion=conclusion,
            details_url=status.target_url or "",
            summary=status.description or "",
        )
