"""Tests for the best-effort fetch stage."""

import asyncio

import httpx
import pytest

from upscaler.fetcher import BatchResult, FetchStage, build_client, file_name_for, is_safe_name
from upscaler.models import FetchConfig

from conftest import image_handler


def make_stage(handler=image_handler, **config):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FetchStage(FetchConfig(**config), client=client), client


class TestFileNameFor:
    def test_last_path_segment(self):
        assert file_name_for("https://cdn.example.com/ch7/001.jpg") == "001.jpg"

    def test_query_is_ignored(self):
        assert file_name_for("https://cdn.example.com/a.png?token=abc") == "a.png"

    def test_encoded_separator_is_decoded_into_the_name(self):
        assert file_name_for("http://x/..%2F..%2Fescaped.jpg") == "../../escaped.jpg"

    def test_unparseable_url_raises(self):
        with pytest.raises(ValueError):
            file_name_for("http://[bad/b.jpg")

    def test_no_path(self):
        assert file_name_for("https://cdn.example.com/") == ""


class TestIsSafeName:
    @pytest.mark.parametrize("name", ["001.jpg", "page 1.jpg", "a..b.png"])
    def test_plain_names(self, name):
        assert is_safe_name(name)

    @pytest.mark.parametrize("name", ["", ".", "..", "../escaped.jpg", "a\\b.jpg", "a\x00.jpg"])
    def test_rejected_names(self, name):
        assert not is_safe_name(name)


class TestBatchResult:
    def test_total(self):
        result = BatchResult(succeeded=["a.jpg"], failed={"http://x/b.jpg": "404"})
        assert result.total == 2


class TestFetchStage:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_downloads_into_dest_dir(self, tmp_path):
        stage, client = make_stage()
        async with client:
            result = await stage.fetch_all(["http://x/a.jpg", "http://x/b.jpg"], tmp_path)

        assert sorted(result.succeeded) == ["a.jpg", "b.jpg"]
        assert result.failed == {}
        assert (tmp_path / "a.jpg").read_bytes() == b"image:/a.jpg"

    @pytest.mark.asyncio(loop_scope="function")
    async def test_failures_are_recorded_not_raised(self, tmp_path):
        urls = [
            "http://x/1.jpg",
            "http://x/missing-2.jpg",
            "http://x/3.jpg",
            "http://x/missing-4.jpg",
            "http://x/5.jpg",
        ]
        stage, client = make_stage()
        async with client:
            result = await stage.fetch_all(urls, tmp_path)

        assert result.total == 5
        assert sorted(result.succeeded) == ["1.jpg", "3.jpg", "5.jpg"]
        assert set(result.failed) == {"http://x/missing-2.jpg", "http://x/missing-4.jpg"}
        # No partial file is left behind for a failed download
        assert sorted(p.name for p in tmp_path.iterdir()) == ["1.jpg", "3.jpg", "5.jpg"]

    @pytest.mark.asyncio(loop_scope="function")
    async def test_transport_error_is_a_failed_item(self, tmp_path):
        def handler(request):
            if request.url.path == "/down.jpg":
                raise httpx.ConnectError("connection refused", request=request)
            return image_handler(request)

        stage, client = make_stage(handler)
        async with client:
            result = await stage.fetch_all(["http://x/down.jpg", "http://x/up.jpg"], tmp_path)

        assert result.succeeded == ["up.jpg"]
        assert "connection refused" in result.failed["http://x/down.jpg"]

    @pytest.mark.asyncio(loop_scope="function")
    async def test_url_without_file_name_fails(self, tmp_path):
        stage, client = make_stage()
        async with client:
            result = await stage.fetch_all(["http://x/"], tmp_path)

        assert result.succeeded == []
        assert result.failed == {"http://x/": "URL has no file name"}

    @pytest.mark.asyncio(loop_scope="function")
    async def test_empty_batch(self, tmp_path):
        stage, client = make_stage()
        async with client:
            result = await stage.fetch_all([], tmp_path)
        assert result.total == 0

    @pytest.mark.asyncio(loop_scope="function")
    async def test_concurrency_is_bounded(self, tmp_path):
        in_flight = 0
        peak = 0

        class SlowTransport(httpx.AsyncBaseTransport):
            async def handle_async_request(self, request):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0.01)
                in_flight -= 1
                return httpx.Response(200, content=b"x")

        client = httpx.AsyncClient(transport=SlowTransport())
        stage = FetchStage(FetchConfig(concurrency=3), client=client)
        async with client:
            result = await stage.fetch_all([f"http://x/{n}.jpg" for n in range(10)], tmp_path)

        assert len(result.succeeded) == 10
        assert peak == 3

    @pytest.mark.asyncio(loop_scope="function")
    async def test_missing_dest_dir_fails_every_item(self, tmp_path):
        stage, client = make_stage()
        async with client:
            result = await stage.fetch_all(["http://x/a.jpg"], tmp_path / "gone")

        assert result.succeeded == []
        assert list(result.failed) == ["http://x/a.jpg"]

    @pytest.mark.asyncio(loop_scope="function")
    async def test_encoded_traversal_stays_inside_dest_dir(self, tmp_path):
        dest_dir = tmp_path / "processes" / "job" / "input"
        dest_dir.mkdir(parents=True)
        stage, client = make_stage()
        async with client:
            result = await stage.fetch_all(
                ["http://x/..%2F..%2F..%2Fescaped.jpg", "http://x/a.jpg"], dest_dir
            )

        assert result.succeeded == ["a.jpg"]
        assert "Unsafe file name" in result.failed["http://x/..%2F..%2F..%2Fescaped.jpg"]
        assert not (tmp_path / "escaped.jpg").exists()
        assert [p.name for p in dest_dir.iterdir()] == ["a.jpg"]

    @pytest.mark.asyncio(loop_scope="function")
    async def test_dot_segment_is_a_failed_item(self, tmp_path):
        stage, client = make_stage()
        async with client:
            result = await stage.fetch_all(["http://x/sub/..", "http://x/a.jpg"], tmp_path)

        assert result.succeeded == ["a.jpg"]
        assert list(result.failed) == ["http://x/sub/.."]

    @pytest.mark.asyncio(loop_scope="function")
    async def test_malformed_url_is_a_failed_item(self, tmp_path):
        stage, client = make_stage()
        async with client:
            result = await stage.fetch_all(["http://x/a.jpg", "http://[bad/b.jpg"], tmp_path)

        assert result.succeeded == ["a.jpg"]
        assert result.failed["http://[bad/b.jpg"].startswith("Invalid URL")

    @pytest.mark.asyncio(loop_scope="function")
    async def test_failed_cleanup_does_not_fail_the_batch(self, tmp_path):
        # A directory where the file should go: both open() and unlink() fail
        (tmp_path / "a.jpg").mkdir()
        stage, client = make_stage()
        async with client:
            result = await stage.fetch_all(["http://x/a.jpg", "http://x/b.jpg"], tmp_path)

        assert result.succeeded == ["b.jpg"]
        assert list(result.failed) == ["http://x/a.jpg"]
        assert (tmp_path / "a.jpg").is_dir()


class TestBuildClient:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_identity_headers_and_timeout(self):
        config = FetchConfig(user_agent="upscaler-test/1.0", headers={"X-Reader": "1"}, timeout_s=12)
        client = build_client(config)
        async with client:
            assert client.headers["User-Agent"] == "upscaler-test/1.0"
            assert client.headers["X-Reader"] == "1"
            assert client.timeout.read == 12
            assert client.follow_redirects is True
