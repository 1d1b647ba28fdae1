from __future__ import annotations

import json

import allure
import httpx
import pytest

from agent_fleet.orchestrator.vcs import (
    GitHubClient,
    GitProvider,
    VcsError,
    build_pull_request_draft,
    parse_git_repository,
    parse_pull_request_url,
)

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Pull Requests"),
]


@pytest.mark.parametrize(
    ("repo_url", "provider", "project_path", "api_base_url"),
    [
        (
            "git@github.com:acme/widgets.git",
            GitProvider.GITHUB,
            "acme/widgets",
            "https://api.github.com",
        ),
        (
            "https://github.com/acme/widgets",
            GitProvider.GITHUB,
            "acme/widgets",
            "https://api.github.com",
        ),
        (
            "https://gitlab.example.com/group/sub/proj.git",
            GitProvider.GITLAB,
            "group/sub/proj",
            "https://gitlab.example.com/api/v4",
        ),
        (
            "git@gitea.local:team/app.git",
            GitProvider.GITEA,
            "team/app",
            "https://gitea.local/api/v1",
        ),
    ],
)
def test_parse_git_repository(
    repo_url: str,
    provider: GitProvider,
    project_path: str,
    api_base_url: str,
) -> None:
    ref = parse_git_repository(repo_url)

    assert ref is not None
    assert ref.provider == provider
    assert ref.project_path == project_path
    assert ref.api_base_url == api_base_url
    assert ref.repo == project_path.rsplit("/", 1)[-1]


@pytest.mark.parametrize(
    "repo_url",
    [None, "", "not a url", "https://bitbucket.org/acme/widgets", "https://github.com/acme"],
)
def test_parse_git_repository_rejects_unsupported(repo_url: str | None) -> None:
    assert parse_git_repository(repo_url) is None


@pytest.mark.parametrize(
    ("pull_url", "provider", "project_path", "number"),
    [
        ("https://github.com/acme/widgets/pull/42", GitProvider.GITHUB, "acme/widgets", 42),
        (
            "https://gitlab.com/group/proj/-/merge_requests/7",
            GitProvider.GITLAB,
            "group/proj",
            7,
        ),
        ("https://gitea.local/team/app/pulls/3", GitProvider.GITEA, "team/app", 3),
    ],
)
def test_parse_pull_request_url(
    pull_url: str,
    provider: GitProvider,
    project_path: str,
    number: int,
) -> None:
    ref = parse_pull_request_url(pull_url)

    assert ref is not None
    assert ref.repository.provider == provider
    assert ref.repository.project_path == project_path
    assert ref.number == number


@pytest.mark.parametrize(
    "pull_url",
    [
        None,
        "https://github.com/acme/widgets/pull/0",
        "https://github.com/acme/widgets/issues/5",
        "https://gitlab.com/group/proj/-/merge_requests/abc",
        "github.com/acme/widgets/pull/1",
    ],
)
def test_parse_pull_request_url_rejects_malformed(pull_url: str | None) -> None:
    assert parse_pull_request_url(pull_url) is None


def test_pull_request_draft_carries_task_metadata() -> None:
    draft = build_pull_request_draft(
        task_id="t1",
        title="Add retry budget",
        agent_id="claude",
        work_branch="agent/t1",
        description="Details here.",
    )

    assert draft.title == "[CAM] Add retry budget"
    assert draft.body.splitlines() == [
        "Task ID: t1",
        "Agent: claude",
        "Branch: agent/t1",
        "",
        "Details here.",
    ]


def _client(handler) -> GitHubClient:
    return GitHubClient(token="secret", transport=httpx.MockTransport(handler))


def test_create_pull_request() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            201,
            json={"number": 9, "html_url": "https://github.com/acme/widgets/pull/9"},
        )

    repository = parse_git_repository("https://github.com/acme/widgets")
    assert repository is not None
    with _client(_handler) as client:
        info = client.create_or_find_pull_request(
            repository=repository,
            head_branch="agent/t1",
            base_branch="main",
            title="t",
            body="b",
        )

    assert info.number == 9
    assert info.html_url == "https://github.com/acme/widgets/pull/9"
    assert seen[0].method == "POST"
    assert seen[0].url.path == "/repos/acme/widgets/pulls"
    assert seen[0].headers["Authorization"] == "Bearer secret"
    assert json.loads(seen[0].content)["head"] == "acme:agent/t1"


def test_create_pull_request_reuses_existing_on_conflict() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(422, json={"message": "A pull request already exists"})
        assert request.url.params["head"] == "acme:agent/t1"
        return httpx.Response(
            200,
            json=[{"number": 4, "html_url": "https://github.com/acme/widgets/pull/4"}],
        )

    repository = parse_git_repository("https://github.com/acme/widgets")
    assert repository is not None
    with _client(_handler) as client:
        info = client.create_or_find_pull_request(
            repository=repository,
            head_branch="agent/t1",
            base_branch="main",
            title="t",
            body="b",
        )

    assert info.number == 4


def test_create_pull_request_error_is_raised() -> None:
    def _handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"message": "Resource not accessible"})

    repository = parse_git_repository("https://github.com/acme/widgets")
    assert repository is not None
    with _client(_handler) as client, pytest.raises(VcsError, match="not accessible") as excinfo:
        client.create_or_find_pull_request(
            repository=repository,
            head_branch="agent/t1",
            base_branch="main",
            title="t",
            body="b",
        )

    assert excinfo.value.status_code == 403


def test_merge_pull_request_uses_configured_method() -> None:
    bodies: list[dict] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"merged": True, "message": "ok", "sha": "abc"})

    pull_request = parse_pull_request_url("https://github.com/acme/widgets/pull/9")
    assert pull_request is not None
    with _client(_handler) as client:
        result = client.merge_pull_request(pull_request=pull_request, commit_title="Merge t1")

    assert result.merged is True
    assert result.sha == "abc"
    assert bodies[0]["merge_method"] == "squash"
    assert bodies[0]["commit_title"] == "Merge t1"


def test_merge_not_applied_raises() -> None:
    def _handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"merged": False, "message": "Head branch was modified"})

    pull_request = parse_pull_request_url("https://github.com/acme/widgets/pull/9")
    assert pull_request is not None
    with _client(_handler) as client, pytest.raises(VcsError, match="Head branch was modified"):
        client.merge_pull_request(pull_request=pull_request)


def test_comment_pull_request_returns_comment_url() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/repos/acme/widgets/issues/9/comments"
        return httpx.Response(201, json={"html_url": "https://github.com/c/1"})

    pull_request = parse_pull_request_url("https://github.com/acme/widgets/pull/9")
    assert pull_request is not None
    with _client(_handler) as client:
        assert client.comment_pull_request(pull_request=pull_request, body="hi") == (
            "https://github.com/c/1"
        )


def test_transport_error_becomes_vcs_error() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    pull_request = parse_pull_request_url("https://github.com/acme/widgets/pull/9")
    assert pull_request is not None
    with _client(_handler) as client, pytest.raises(VcsError, match="request failed"):
        client.merge_pull_request(pull_request=pull_request)


def test_non_github_repository_is_rejected() -> None:
    repository = parse_git_repository("https://gitlab.com/group/proj")
    assert repository is not None
    with _client(lambda _request: httpx.Response(500)) as client, pytest.raises(
        VcsError,
        match="Unsupported git provider",
    ):
        client.create_or_find_pull_request(
            repository=repository,
            head_branch="x",
            base_branch="main",
            title="t",
            body="b",
        )


def test_client_requires_token() -> None:
    with pytest.raises(ValueError, match="token"):
        GitHubClient(token="")
