"""Tests for the GitHub and local snapshot fetchers."""

import base64

import httpx
import pytest

from livepreview.errors import SnapshotFetchError
from livepreview.filetree import flatten
from livepreview.snapshots import GitHubSnapshotFetcher, LocalSnapshotFetcher, should_skip


def encoded(content: bytes) -> dict:
    return {"encoding": "base64", "content": base64.b64encode(content).decode("ascii")}


def github_handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/repos/acme/app":
        return httpx.Response(200, json={"default_branch": "trunk"})
    if path == "/repos/acme/app/git/trees/trunk":
        assert request.url.params["recursive"] == "1"
        return httpx.Response(200, json={"tree": [
            {"path": "package.json", "type": "blob", "size": 20},
            {"path": "src", "type": "tree"},
            {"path": "src/main.js", "type": "blob", "size": 10},
            {"path": "node_modules/dep/index.js", "type": "blob", "size": 10},
            {"path": "huge.js", "type": "blob", "size": 10_000_000},
            {"path": "logo.png", "type": "blob", "size": 10},
            {"path": "broken.js", "type": "blob", "size": 10},
            {"path": "docs/notes#1.md", "type": "blob", "size": 10},
        ]})
    if path == "/repos/acme/app/git/trees/missing":
        return httpx.Response(404, json={"message": "Not Found"})
    if path.startswith("/repos/acme/app/contents/"):
        assert request.url.params["ref"] == "trunk"
        name = path[len("/repos/acme/app/contents/"):]
        if name == "package.json":
            return httpx.Response(200, json=encoded(b'{"scripts": {}}'))
        if name == "src/main.js":
            return httpx.Response(200, json=encoded(b"console.log(1)"))
        if name == "logo.png":
            return httpx.Response(200, json=encoded(b"\x89PNG\xff\xfe"))
        if name == "broken.js":
            return httpx.Response(500, json={"message": "Server Error"})
        if name == "docs/notes#1.md":
            assert request.url.raw_path.startswith(b"/repos/acme/app/contents/docs/notes%231.md")
            return httpx.Response(200, json=encoded(b"# Notes"))
    return httpx.Response(404, json={"message": "Not Found"})


@pytest.fixture
def client():
    return httpx.AsyncClient(base_url="https://api.github.test", transport=httpx.MockTransport(github_handler))


class TestShouldSkip:
    @pytest.mark.parametrize("path", ["node_modules/a.js", ".git/HEAD", "dist/app.js", "yarn.lock", "package-lock.json"])
    def test_skipped_paths(self, path):
        assert should_skip(path) is True

    def test_oversized_file(self):
        assert should_skip("a.js", size=11, max_size=10) is True

    def test_regular_file(self):
        assert should_skip("src/dist.js", size=10) is False


class TestGitHubSnapshotFetcher:
    """Fetching through a mocked GitHub REST API."""

    @pytest.mark.asyncio
    async def test_fetches_default_branch(self, client, config):
        fetcher = GitHubSnapshotFetcher(config=config, client=client)
        tree = await fetcher.fetch("acme/app", None)
        await client.aclose()
        assert flatten(tree) == {
            "package.json": '{"scripts": {}}',
            "src/main.js": "console.log(1)",
            "docs/notes#1.md": "# Notes",
        }

    @pytest.mark.asyncio
    async def test_not_found_message(self, client, config):
        fetcher = GitHubSnapshotFetcher(config=config, client=client)
        with pytest.raises(SnapshotFetchError) as exc_info:
            await fetcher.fetch("acme/app", "missing")
        await client.aclose()
        assert exc_info.value.status_code == 404
        assert str(exc_info.value) == "GitHub API error 404: Repository or branch not found: Not Found"

    @pytest.mark.asyncio
    async def test_network_error(self, config):
        def fail(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(base_url="https://api.github.test", transport=httpx.MockTransport(fail))
        fetcher = GitHubSnapshotFetcher(config=config, client=client)
        with pytest.raises(SnapshotFetchError, match="GitHub request failed"):
            await fetcher.fetch("acme/app", "trunk")
        await client.aclose()

    def test_headers_include_token(self, config):
        fetcher = GitHubSnapshotFetcher(token="ghp_test", config=config)
        assert fetcher._headers()["Authorization"] == "Bearer ghp_test"

    def test_headers_without_token(self, config):
        config.github_token = None
        fetcher = GitHubSnapshotFetcher(config=config)
        assert "Authorization" not in fetcher._headers()


class TestLocalSnapshotFetcher:
    @pytest.mark.asyncio
    async def test_reads_directory(self, tmp_path, config):
        repo = tmp_path / "site"
        (repo / "src").mkdir(parents=True)
        (repo / "node_modules" / "dep").mkdir(parents=True)
        (repo / "index.html").write_text("<h1>hi</h1>")
        (repo / "src" / "app.js").write_text("run()")
        (repo / "node_modules" / "dep" / "index.js").write_text("skip")
        (repo / "package-lock.json").write_text("{}")
        (repo / "image.bin").write_bytes(b"\xff\xfe\x00")

        tree = await LocalSnapshotFetcher(root=tmp_path, config=config).fetch("site", "ignored")
        assert flatten(tree) == {"index.html": "<h1>hi</h1>", "src/app.js": "run()"}

    @pytest.mark.asyncio
    async def test_missing_directory(self, tmp_path, config):
        with pytest.raises(SnapshotFetchError, match="Repository not found"):
            await LocalSnapshotFetcher(root=tmp_path, config=config).fetch("nope", None)
