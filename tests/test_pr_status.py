import httpx
import pytest

from crew_board.pr_status import GitHubPrStatusLookup, parse_pr_url

PR_URL = "https://github.com/acme/board/pull/42"


def _lookup(handler, **kwargs) -> GitHubPrStatusLookup:
    return GitHubPrStatusLookup(token="t0ken", transport=httpx.MockTransport(handler), **kwargs)


@pytest.mark.parametrize(
    "url,expected",
    [
        (PR_URL, ("acme", "board", 42)),
        ("https://github.com/acme/board/pull/42/files", ("acme", "board", 42)),
        ("https://gitlab.com/acme/board/-/merge_requests/42", None),
        ("", None),
    ],
)
def test_parse_pr_url(url, expected) -> None:
    assert parse_pr_url(url) == expected


@pytest.mark.parametrize("merged", [True, False])
def test_merged_flag(merged: bool) -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"number": 42, "merged": merged})

    assert _lookup(handler).is_merged(PR_URL) is merged
    assert seen == {"path": "/repos/acme/board/pulls/42", "auth": "Bearer t0ken"}


def test_http_error_status_is_unknown() -> None:
    lookup = _lookup(lambda request: httpx.Response(404, json={"message": "Not Found"}))
    assert lookup.is_merged(PR_URL) is None


def test_non_github_url_skips_request() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    assert _lookup(handler).is_merged("https://example.com/pr/1") is None


def test_connection_failure_is_unknown() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    assert _lookup(handler).is_merged(PR_URL) is None


def test_bad_json_is_unknown() -> None:
    lookup = _lookup(lambda request: httpx.Response(200, content=b"<html>"))
    assert lookup.is_merged(PR_URL) is None


def test_token_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GITHUB_TOKEN", "from-env")
    assert GitHubPrStatusLookup().headers["Authorization"] == "Bearer from-env"
    monkeypatch.delenv("GITHUB_TOKEN")
    assert "Authorization" not in GitHubPrStatusLookup().headers
