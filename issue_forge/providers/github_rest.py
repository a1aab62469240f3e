"""GitHub content store implementation using PyGithub and REST API."""

import asyncio
import io
import zipfile
from collections.abc import Callable
from datetime import datetime
from pathlib import PurePosixPath
from typing import TypeVar

import httpx
import structlog
from github import Github, GithubException  # type: ignore[import-not-found]
from github.Branch import Branch as GHBranch  # type: ignore[import-not-found]
from github.IssueComment import IssueComment as GHComment  # type: ignore[import-not-found]
from github.PullRequest import PullRequest as GHPullRequest  # type: ignore[import-not-found]
from github.Repository import Repository as GHRepository  # type: ignore[import-not-found]
from github.WorkflowRun import WorkflowRun as GHWorkflowRun  # type: ignore[import-not-found]

from issue_forge.exceptions import ContentStoreError, ExecutionDispatchError, RevisionConflictError
from issue_forge.models.domain import Branch, Comment, JobStatus, PullRequest
from issue_forge.providers.base import NOTICE_MARKER, ContentStore, MessageChannel
from issue_forge.utils.retry import async_retry

log = structlog.get_logger(__name__)

T = TypeVar("T")

SAVE_MAX_ATTEMPTS = 3


async def _run_sync(func: Callable[[], T], timeout: float | None = None) -> T:
    """Run a synchronous function in a thread pool.

    This prevents blocking the event loop when calling synchronous
    PyGithub methods. With ``timeout`` the await is bounded; the worker
    thread itself is left to finish.
    """
    if timeout is None:
        return await asyncio.to_thread(func)
    return await asyncio.wait_for(asyncio.to_thread(func), timeout=timeout)


class GitHubContentStore(ContentStore, MessageChannel):
    """GitHub implementation of the content store and issue comment channels.

    One instance serves one session: it is bound to a repository and to the
    session's project branch. Issue comments back both the notification
    channel and the agent message channel.
    """

    def __init__(
        self,
        token: str,
        owner: str,
        repo: str,
        branch: str,
        base_url: str = "https://api.github.com",
        default_branch: str = "main",
        request_timeout: float = 30.0,
    ):
        """Initialize GitHub content store.

        Args:
            token: GitHub personal access token or App token
            owner: Repository owner (user or organization)
            repo: Repository name
            branch: Session branch file operations target
            base_url: GitHub API base URL (for GitHub Enterprise)
            default_branch: Branch new branches are created from
            request_timeout: Timeout in seconds for each API call
        """
        self.token = token.strip() if token else token
        self.owner = owner
        self.repo = repo
        self.branch = branch
        # Normalize base_url by removing trailing slash
        self.base_url = base_url.rstrip("/")
        self.default_branch = default_branch
        self.request_timeout = request_timeout
        self._client: Github | None = None
        self._repo: GHRepository | None = None

    async def connect(self) -> None:
        """Initialize GitHub client."""

        def _connect() -> tuple[Github, GHRepository]:
            client = Github(self.token, base_url=self.base_url, timeout=int(self.request_timeout))
            repo = client.get_repo(f"{self.owner}/{self.repo}")
            return client, repo

        self._client, self._repo = await _run_sync(_connect, self.request_timeout)
        log.info(
            "github_connected",
            base_url=self.base_url,
            owner=self.owner,
            repo=self.repo,
            branch=self.branch,
        )

    async def disconnect(self) -> None:
        """Close GitHub client."""
        if self._client:
            await _run_sync(self._client.close)
            self._client = None
            self._repo = None

    async def _call(self, func: Callable[[], T]) -> T:
        return await _run_sync(func, self.request_timeout)

    # -- NotificationChannel / MessageChannel -----------------------------

    async def notify(self, session_id: int, message: str) -> None:
        """Append a status comment to the session issue, tagged as a notice."""
        await self.post_message(session_id, f"{message}\n\n{NOTICE_MARKER}")

    async def post_message(self, session_id: int, body: str) -> Comment:
        """Add comment to issue."""
        log.debug("post_message", number=session_id)

        try:
            gh_comment = await self._call(lambda: self._repo.get_issue(session_id).create_comment(body))
            return self._convert_comment(gh_comment)

        except GithubException as e:
            log.error("github_post_message_failed", number=session_id, error=str(e))
            raise

    async def list_messages(self, session_id: int, since: datetime | None = None) -> list[Comment]:
        """Retrieve comments for an issue, optionally only those updated since a time."""

        def _get_comments() -> list[GHComment]:
            gh_issue = self._repo.get_issue(session_id)
            if since is not None:
                return list(gh_issue.get_comments(since=since))
            return list(gh_issue.get_comments())

        try:
            gh_comments = await self._call(_get_comments)
            return [self._convert_comment(c) for c in gh_comments]

        except GithubException as e:
            log.error("github_list_messages_failed", number=session_id, error=str(e))
            raise

    # -- Files --------------------------------------------------------------

    async def read(self, path: str) -> str | None:
        """Read a file from the session branch."""
        try:
            contents = await self._call(lambda: self._repo.get_contents(path, ref=self.branch))
        except GithubException as e:
            if e.status == 404:
                log.debug("github_file_not_found", path=path, branch=self.branch)
                return None
            log.error("github_read_failed", path=path, branch=self.branch, error=str(e))
            raise

        if isinstance(contents, list):
            raise ContentStoreError("Path is a directory", path=path)
        return contents.decoded_content.decode("utf-8")

    async def save(self, path: str, content: str, commit_message: str) -> str:
        """Create or update a file on the session branch.

        The write carries the SHA read immediately before it. A stale SHA is
        retried with backoff; a conflict that survives every attempt raises
        RevisionConflictError.
        """
        log.info("save_file", path=path, branch=self.branch)
        return await self._save_with_retry(path, content, commit_message)

    @async_retry(max_attempts=SAVE_MAX_ATTEMPTS, backoff_factor=1.5, exceptions=(RevisionConflictError,))
    async def _save_with_retry(self, path: str, content: str, commit_message: str) -> str:
        def _save() -> str:
            sha: str | None = None
            try:
                existing = self._repo.get_contents(path, ref=self.branch)
                if not isinstance(existing, list):
                    sha = existing.sha
            except GithubException as e:
                if e.status != 404:
                    raise

            if sha:
                result = self._repo.update_file(path, commit_message, content, sha, branch=self.branch)
            else:
                result = self._repo.create_file(path, commit_message, content, branch=self.branch)
            return result["commit"].sha

        try:
            return await self._call(_save)

        except GithubException as e:
            # 409: stale sha on update; 422: file appeared between read and create
            if e.status in (409, 422):
                raise RevisionConflictError("Revision conflict while saving", path=path, status_code=e.status) from e
            log.error("github_save_failed", path=path, branch=self.branch, error=str(e))
            raise

    # -- Branches and pull requests -----------------------------------------

    async def create_branch(self, name: str) -> Branch:
        """Create a branch from the default branch; an existing branch is returned."""
        log.info("create_branch", branch=name, from_branch=self.default_branch)

        def _create_branch() -> GHBranch:
            source_ref = self._repo.get_git_ref(f"heads/{self.default_branch}")
            try:
                self._repo.create_git_ref(ref=f"refs/heads/{name}", sha=source_ref.object.sha)
            except GithubException as e:
                if e.status != 422:
                    raise
                log.info("github_branch_exists", branch=name)
            return self._repo.get_branch(name)

        try:
            gh_branch = await self._call(_create_branch)
            return self._convert_branch(gh_branch)

        except GithubException as e:
            log.error("github_create_branch_failed", branch=name, error=str(e))
            raise

    async def open_pull_request(self, branch: str, title: str, body: str) -> PullRequest:
        """Open a pull request into the default branch, reusing an open one."""
        log.info("open_pull_request", title=title, head=branch, base=self.default_branch)

        def _open_pr() -> GHPullRequest:
            existing = list(self._repo.get_pulls(state="open", head=f"{self.owner}:{branch}"))
            if existing:
                return existing[0]
            return self._repo.create_pull(title=title, body=body, head=branch, base=self.default_branch)

        try:
            gh_pr = await self._call(_open_pr)
            return self._convert_pull_request(gh_pr)

        except GithubException as e:
            log.error("github_open_pull_request_failed", head=branch, error=str(e))
            raise

    async def get_issue_body(self, session_id: int) -> str:
        gh_issue = await self._call(lambda: self._repo.get_issue(session_id))
        return gh_issue.body or ""

    async def close_issue(self, session_id: int) -> None:
        """Close the session issue."""
        log.info("close_issue", number=session_id)

        try:
            await self._call(lambda: self._repo.get_issue(session_id).edit(state="closed"))

        except GithubException as e:
            log.error("github_close_issue_failed", number=session_id, error=str(e))
            raise

    # -- Workflow jobs --------------------------------------------------------

    async def job_runner_available(self, workflow_id: str) -> bool:
        """Check that the workflow exists and is enabled."""
        try:
            workflow = await self._call(lambda: self._repo.get_workflow(workflow_id))
        except GithubException as e:
            log.info("github_workflow_unavailable", workflow=workflow_id, status=e.status)
            return False
        except TimeoutError:
            log.warning("github_workflow_probe_timeout", workflow=workflow_id)
            return False
        return workflow.state == "active"

    async def dispatch_job(self, workflow_id: str, branch: str, inputs: dict[str, str]) -> None:
        """Trigger a workflow_dispatch run on a branch."""
        log.info("dispatch_job", workflow=workflow_id, branch=branch, inputs=sorted(inputs))

        def _dispatch() -> bool:
            workflow = self._repo.get_workflow(workflow_id)
            return workflow.create_dispatch(ref=branch, inputs=inputs)

        try:
            accepted = await self._call(_dispatch)
        except (GithubException, TimeoutError) as e:
            raise ExecutionDispatchError(f"Failed to dispatch job: {e}", workflow_id=workflow_id) from e

        if not accepted:
            raise ExecutionDispatchError("Job dispatch was rejected", workflow_id=workflow_id)

    async def poll_job_status(self, workflow_id: str, branch: str) -> JobStatus | None:
        """Return the newest run of a workflow on a branch."""

        def _latest_run() -> GHWorkflowRun | None:
            runs = self._repo.get_workflow(workflow_id).get_runs(branch=branch)
            for run in runs:
                return run
            return None

        run = await self._call(_latest_run)
        if run is None:
            return None
        return JobStatus(
            run_id=run.id,
            status=run.status,
            conclusion=run.conclusion,
            created_at=run.created_at,
        )

    async def fetch_job_artifacts(self, run_id: int) -> dict[str, str]:
        """Download and unpack every artifact of a workflow run.

        Artifacts are zip archives; each contained file becomes one entry
        keyed by its base name.
        """

        def _artifact_urls() -> list[tuple[str, str]]:
            run = self._repo.get_workflow_run(run_id)
            return [(a.name, a.archive_download_url) for a in run.get_artifacts() if not a.expired]

        artifacts = await self._call(_artifact_urls)
        files: dict[str, str] = {}

        headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
        }
        async with httpx.AsyncClient(
            headers=headers,
            timeout=self.request_timeout,
            follow_redirects=True,
        ) as client:
            for artifact_name, url in artifacts:
                response = await client.get(url)
                response.raise_for_status()
                with zipfile.ZipFile(io.BytesIO(response.content)) as archive:
                    for member in archive.namelist():
                        if member.endswith("/"):
                            continue
                        name = PurePosixPath(member).name
                        files[name] = archive.read(member).decode("utf-8", errors="replace")
                log.debug("artifact_downloaded", run_id=run_id, artifact=artifact_name)

        log.info("job_artifacts_fetched", run_id=run_id, files=len(files))
        return files

    # -- Conversion -------------------------------------------------------------

    def _convert_comment(self, gh_comment: GHComment) -> Comment:
        """Convert GitHub Comment to our Comment model."""
        return Comment(
            id=gh_comment.id,
            body=gh_comment.body or "",
            author=gh_comment.user.login if gh_comment.user else "unknown",
            created_at=gh_comment.created_at,
        )

    def _convert_branch(self, gh_branch: GHBranch) -> Branch:
        """Convert GitHub Branch to our Branch model."""
        return Branch(name=gh_branch.name, sha=gh_branch.commit.sha)

    def _convert_pull_request(self, gh_pr: GHPullRequest) -> PullRequest:
        """Convert GitHub PullRequest to our PullRequest model."""
        return PullRequest(
            number=gh_pr.number,
            title=gh_pr.title,
            head=gh_pr.head.ref,
            base=gh_pr.base.ref,
            url=gh_pr.html_url,
        )
