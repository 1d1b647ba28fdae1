"""Git hosting integration: repository/pull-request URL parsing and a GitHub client."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol
from urllib.parse import urlparse

import httpx

logger = logging.getLogger(__name__)

GITHUB_API_VERSION = "2022-11-28"
DEFAULT_USER_AGENT = "agent-fleet"

_SSH_GITHUB_RE = re.compile(r"^git@github\.com:([^/]+)/([^/]+?)(?:\.git)?$", re.IGNORECASE)
_SSH_GENERIC_RE = re.compile(r"^git@([^:]+):(.+)$", re.IGNORECASE)
_GITHUB_HOSTS = frozenset({"github.com", "www.github.com"})


class GitProvider(str, Enum):
    GITHUB = "github"
    GITLAB = "gitlab"
    GITEA = "gitea"


@dataclass(slots=True, frozen=True)
class GitRepositoryRef:
    provider: GitProvider
    host: str
    owner: str
    repo: str
    project_path: str
    web_base_url: str
    api_base_url: str


@dataclass(slots=True, frozen=True)
class PullRequestRef:
    repository: GitRepositoryRef
    number: int


@dataclass(slots=True)
class PullRequestDraft:
    title: str
    body: str


@dataclass(slots=True)
class PullRequestInfo:
    number: int
    html_url: str
    api_url: str | None = None


@dataclass(slots=True)
class MergeResult:
    merged: bool
    message: str
    sha: str | None = None


class VcsError(RuntimeError):
    """Remote git hosting call failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PullRequestClient(Protocol):
    """Remote pull-request operations used by the review flow."""

    def create_or_find_pull_request(  # noqa: PLR0913
        self,
        *,
        repository: GitRepositoryRef,
        head_branch: str,
        base_branch: str,
        title: str,
        body: str,
    ) -> PullRequestInfo:
        """Open a pull request, or return the existing one for the head branch."""

    def merge_pull_request(
        self,
        *,
        pull_request: PullRequestRef,
        commit_title: str | None = None,
        commit_message: str | None = None,
    ) -> MergeResult:
        """Merge a pull request."""

    def comment_pull_request(self, *, pull_request: PullRequestRef, body: str) -> str:
        """Post a comment and return its URL."""


def _detect_provider(host: str) -> GitProvider | None:
    normalized = host.lower()
    if normalized in _GITHUB_HOSTS:
        return GitProvider.GITHUB
    if "gitlab" in normalized:
        return GitProvider.GITLAB
    if "gitea" in normalized:
        return GitProvider.GITEA
    return None


def _api_base_url(provider: GitProvider, web_base_url: str, host: str) -> str:
    if provider == GitProvider.GITHUB:
        if host in _GITHUB_HOSTS:
            return "https://api.github.com"
        return f"{web_base_url}/api/v3"
    if provider == GitProvider.GITLAB:
        return f"{web_base_url}/api/v4"
    return f"{web_base_url}/api/v1"


def _path_parts(path: str) -> list[str]:
    path = re.sub(r"\.git$", "", path.strip(), flags=re.IGNORECASE)
    return [part.strip() for part in path.split("/") if part.strip()]


def _github_ref(owner: str, repo: str) -> GitRepositoryRef:
    return GitRepositoryRef(
        provider=GitProvider.GITHUB,
        host="github.com",
        owner=owner,
        repo=repo,
        project_path=f"{owner}/{repo}",
        web_base_url="https://github.com",
        api_base_url="https://api.github.com",
    )


def parse_git_repository(repo_url: str | None) -> GitRepositoryRef | None:
    """Parse an HTTPS or SSH clone URL; ``None`` for unsupported hosts or shapes."""

    value = (repo_url or "").strip()
    if not value:
        return None

    ssh_github = _SSH_GITHUB_RE.match(value)
    if ssh_github:
        return _github_ref(ssh_github.group(1), ssh_github.group(2))

    scheme = "https"
    ssh_generic = _SSH_GENERIC_RE.match(value)
    if ssh_generic:
        host = ssh_generic.group(1).lower()
        path = ssh_generic.group(2)
    elif "://" in value:
        parsed = urlparse(value)
        host = (parsed.hostname or "").lower()
        path = parsed.path
        if parsed.scheme in {"http", "https"}:
            scheme = parsed.scheme
    else:
        return None

    provider = _detect_provider(host)
    if provider is None:
        return None
    parts = _path_parts(path)
    if len(parts) < 2:  # noqa: PLR2004
        return None
    if provider == GitProvider.GITHUB:
        return _github_ref(parts[0], parts[1])

    web_base_url = f"{scheme}://{host}"
    return GitRepositoryRef(
        provider=provider,
        host=host,
        owner=parts[0],
        repo=parts[-1],
        project_path="/".join(parts),
        web_base_url=web_base_url,
        api_base_url=_api_base_url(provider, web_base_url, host),
    )


def parse_pull_request_url(pull_url: str | None) -> PullRequestRef | None:
    """Parse GitHub ``/pull/N``, GitLab ``/-/merge_requests/N`` and Gitea ``/pulls/N`` URLs."""

    value = (pull_url or "").strip()
    if not value or "://" not in value:
        return None
    parsed = urlparse(value)
    host = (parsed.hostname or "").lower()
    parts = _path_parts(parsed.path)
    if not host or len(parts) < 3:  # noqa: PLR2004
        return None
    web_base_url = f"{parsed.scheme}://{host}"

    if host in _GITHUB_HOSTS:
        if len(parts) < 4 or parts[2] != "pull":  # noqa: PLR2004
            return None
        number = _positive_int(parts[3])
        if number is None:
            return None
        return PullRequestRef(repository=_github_ref(parts[0], parts[1]), number=number)

    for marker, default_provider in (
        ("merge_requests", GitProvider.GITLAB),
        ("pulls", GitProvider.GITEA),
    ):
        if marker not in parts:
            continue
        index = parts.index(marker)
        project_parts = [part for part in parts[:index] if part != "-"]
        if len(project_parts) < 2 or index + 1 >= len(parts):  # noqa: PLR2004
            return None
        number = _positive_int(parts[index + 1])
        if number is None:
            return None
        provider = _detect_provider(host) or default_provider
        repository = GitRepositoryRef(
            provider=provider,
            host=host,
            owner=project_parts[0],
            repo=project_parts[-1],
            project_path="/".join(project_parts),
            web_base_url=web_base_url,
            api_base_url=_api_base_url(provider, web_base_url, host),
        )
        return PullRequestRef(repository=repository, number=number)
    return None


def build_pull_request_draft(  # noqa: PLR0913
    *,
    task_id: str,
    title: str,
    agent_id: str,
    work_branch: str,
    description: str | None,
    title_prefix: str = "[CAM]",
) -> PullRequestDraft:
    body = "\n".join(
        [
            f"Task ID: {task_id}",
            f"Agent: {agent_id}",
            f"Branch: {work_branch}",
            "",
            description or "",
        ],
    )
    return PullRequestDraft(title=f"{title_prefix} {title}".strip(), body=body)


def _positive_int(raw: str) -> int | None:
    try:
        number = int(raw)
    except ValueError:
        return None
    return number if number > 0 else None


class GitHubClient:
    """GitHub REST client for pull-request create/merge/comment."""

    def __init__(
        self,
        *,
        token: str,
        api_base_url: str = "https://api.github.com",
        merge_method: str = "squash",
        timeout_seconds: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not token:
            raise ValueError("GitHub token is required.")
        self.merge_method = merge_method
        self._api_base_url = api_base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self._api_base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {token}",
                "User-Agent": DEFAULT_USER_AGENT,
                "X-GitHub-Api-Version": GITHUB_API_VERSION,
            },
            transport=transport,
        )

    def create_or_find_pull_request(  # noqa: PLR0913
        self,
        *,
        repository: GitRepositoryRef,
        head_branch: str,
        base_branch: str,
        title: str,
        body: str,
    ) -> PullRequestInfo:
        _require_github(repository)
        head = f"{repository.owner}:{head_branch}"
        pulls_path = f"/repos/{repository.owner}/{repository.repo}/pulls"
        response = self._request(
            "POST",
            pulls_path,
            json={"title": title, "head": head, "base": base_branch, "body": body, "draft": False},
        )
        if response.is_success:
            return _to_pull_request_info(response.json())

        if response.status_code == httpx.codes.UNPROCESSABLE_ENTITY:
            existing = self._request(
                "GET",
                pulls_path,
                params={"head": head, "state": "all", "per_page": 1},
            )
            if existing.is_success:
                items = existing.json()
                if isinstance(items, list) and items:
                    logger.info("Reusing existing pull request for %s", head)
                    return _to_pull_request_info(items[0])

        raise VcsError(
            f"GitHub PR create failed ({response.status_code}): {_error_message(response)}",
            status_code=response.status_code,
        )

    def merge_pull_request(
        self,
        *,
        pull_request: PullRequestRef,
        commit_title: str | None = None,
        commit_message: str | None = None,
    ) -> MergeResult:
        repository = pull_request.repository
        _require_github(repository)
        response = self._request(
            "PUT",
            f"/repos/{repository.owner}/{repository.repo}/pulls/{pull_request.number}/merge",
            json={
                "merge_method": self.merge_method,
                "commit_title": commit_title,
                "commit_message": commit_message,
            },
        )
        if not response.is_success:
            raise VcsError(
                f"GitHub merge failed ({response.status_code}): {_error_message(response)}",
                status_code=response.status_code,
            )
        data = response.json()
        result = MergeResult(
            merged=bool(data.get("merged")),
            message=str(data.get("message") or ""),
            sha=data.get("sha"),
        )
        if not result.merged:
            raise VcsError(f"GitHub merge was not applied: {result.message or 'unknown reason'}")
        return result

    def comment_pull_request(self, *, pull_request: PullRequestRef, body: str) -> str:
        repository = pull_request.repository
        _require_github(repository)
        response = self._request(
            "POST",
            f"/repos/{repository.owner}/{repository.repo}/issues/{pull_request.number}/comments",
            json={"body": body},
        )
        if not response.is_success:
            raise VcsError(
                f"GitHub comment failed ({response.status_code}): {_error_message(response)}",
                status_code=response.status_code,
            )
        return str(response.json().get("html_url") or "")

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("GitHub request %s %s failed: %s", method, path, exc)
            raise VcsError(f"GitHub request failed: {exc}") from exc

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GitHubClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _require_github(repository: GitRepositoryRef) -> None:
    if repository.provider != GitProvider.GITHUB:
        raise VcsError(f"Unsupported git provider for this client: {repository.provider.value}")


def _to_pull_request_info(data: dict[str, Any]) -> PullRequestInfo:
    return PullRequestInfo(
        number=int(data["number"]),
        html_url=str(data["html_url"]),
        api_url=data.get("url"),
    )


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or "Unknown GitHub API error"
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return "Unknown GitHub API error"
