"""
Tests for the asset provisioner.

All downloads go through httpx.MockTransport - no real network.
"""

import httpx
import pytest

from llamadesk.assets.provisioner import (
    AssetProvisioner, AssetSpec, verify_checksum, checksum_matches
)
from llamadesk.config import AssetConfig
from llamadesk.exceptions import (
    AssetMissing, DownloadFailed, ChecksumMismatch, UserCanceled
)
from tests.conftest import sha256_of, chunked


MODEL_BYTES = b"GGUF" + bytes(range(256)) * 40


def no_network(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected network call to {request.url}")


def make_provisioner(tmp_path, handler=no_network, consent=None, **overrides):
    config = AssetConfig(
        bundled_dir=str(tmp_path / "resources"),
        cache_dir=str(tmp_path / "cache"),
        binary_path="bin/llama-server",
        model_path="models/test.gguf",
        **overrides
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AssetProvisioner(config, consent=consent, http_client=client)


def model_spec(url=None, sha256=None):
    return AssetSpec(name="model", relative_path="models/test.gguf", url=url, sha256=sha256)


class TestChecksum:
    """Tests for checksum verification."""

    def test_case_insensitive_match(self):
        digest = sha256_of(MODEL_BYTES)
        assert checksum_matches(digest.upper(), digest)
        assert checksum_matches(f" {digest}\n", digest.upper())

    def test_rejects_different_hash(self):
        assert not checksum_matches(sha256_of(b"a"), sha256_of(b"b"))

    @pytest.mark.asyncio
    async def test_verify_checksum_file(self, tmp_path):
        path = tmp_path / "file.bin"
        path.write_bytes(MODEL_BYTES)

        assert await verify_checksum(path, sha256_of(MODEL_BYTES).upper())
        assert not await verify_checksum(path, sha256_of(MODEL_BYTES + b"x"))
        assert await verify_checksum(path, None)

    @pytest.mark.asyncio
    async def test_verify_checksum_missing_file(self, tmp_path):
        assert not await verify_checksum(tmp_path / "nope", None)

    @pytest.mark.asyncio
    async def test_empty_file_against_nonempty_hash(self, tmp_path):
        path = tmp_path / "empty.bin"
        path.write_bytes(b"")
        assert not await verify_checksum(path, sha256_of(MODEL_BYTES))


class TestBundledAssets:
    """Tests for the bundled lookup path."""

    @pytest.mark.asyncio
    async def test_no_bundle_no_url_is_missing(self, tmp_path):
        provisioner = make_provisioner(tmp_path)

        with pytest.raises(AssetMissing) as exc:
            await provisioner.ensure_all(provisioner.default_specs())
        assert exc.value.asset == "binary"

    @pytest.mark.asyncio
    async def test_bundled_assets_need_no_network(self, tmp_path):
        bundled = tmp_path / "resources"
        (bundled / "bin").mkdir(parents=True)
        (bundled / "models").mkdir(parents=True)
        (bundled / "bin" / "llama-server").write_bytes(b"#!binary")
        (bundled / "models" / "test.gguf").write_bytes(MODEL_BYTES)

        provisioner = make_provisioner(
            tmp_path,
            binary_url="https://example.com/llama-server",
            binary_sha256=sha256_of(b"#!binary"),
            model_url="https://example.com/model.gguf",
            model_sha256=sha256_of(MODEL_BYTES)
        )
        paths = await provisioner.ensure_all(provisioner.default_specs())

        assert paths["binary"] == bundled / "bin" / "llama-server"
        assert paths["model"] == bundled / "models" / "test.gguf"

    @pytest.mark.asyncio
    async def test_bundled_without_checksum_is_accepted(self, tmp_path):
        path = tmp_path / "resources" / "models" / "test.gguf"
        path.parent.mkdir(parents=True)
        path.write_bytes(b"anything")

        provisioner = make_provisioner(tmp_path)
        assert await provisioner.ensure(model_spec()) == path

    @pytest.mark.asyncio
    async def test_corrupt_bundle_without_url_is_missing(self, tmp_path):
        path = tmp_path / "resources" / "models" / "test.gguf"
        path.parent.mkdir(parents=True)
        path.write_bytes(b"corrupt")

        provisioner = make_provisioner(tmp_path)
        with pytest.raises(AssetMissing):
            await provisioner.ensure(model_spec(sha256=sha256_of(MODEL_BYTES)))


class TestDownload:
    """Tests for the cache and download path."""

    @pytest.mark.asyncio
    async def test_downloads_and_verifies(self, tmp_path):
        calls = []

        def handler(request):
            calls.append(str(request.url))
            return httpx.Response(200, content=MODEL_BYTES)

        provisioner = make_provisioner(tmp_path, handler)
        spec = model_spec("https://example.com/model.gguf", sha256_of(MODEL_BYTES))

        path = await provisioner.ensure(spec)

        assert path == tmp_path / "cache" / "models" / "test.gguf"
        assert path.read_bytes() == MODEL_BYTES
        assert not path.with_name("test.gguf.part").exists()
        assert calls == ["https://example.com/model.gguf"]

    @pytest.mark.asyncio
    async def test_bad_content_length_header(self, tmp_path):
        def handler(request):
            return httpx.Response(
                200,
                headers={"Content-Length": "unknown"},
                content=chunked(MODEL_BYTES[:100], MODEL_BYTES[100:])
            )

        provisioner = make_provisioner(tmp_path, handler)
        spec = model_spec("https://example.com/model.gguf", sha256_of(MODEL_BYTES))

        path = await provisioner.ensure(spec)
        assert path.read_bytes() == MODEL_BYTES

    @pytest.mark.asyncio
    async def test_reuses_verified_cache(self, tmp_path):
        cached = tmp_path / "cache" / "models" / "test.gguf"
        cached.parent.mkdir(parents=True)
        cached.write_bytes(MODEL_BYTES)

        provisioner = make_provisioner(tmp_path)
        spec = model_spec("https://example.com/model.gguf", sha256_of(MODEL_BYTES))

        assert await provisioner.ensure(spec) == cached

    @pytest.mark.asyncio
    async def test_redownloads_corrupt_cache(self, tmp_path):
        cached = tmp_path / "cache" / "models" / "test.gguf"
        cached.parent.mkdir(parents=True)
        cached.write_bytes(b"truncated")

        provisioner = make_provisioner(
            tmp_path, lambda request: httpx.Response(200, content=MODEL_BYTES)
        )
        spec = model_spec("https://example.com/model.gguf", sha256_of(MODEL_BYTES))

        path = await provisioner.ensure(spec)
        assert path.read_bytes() == MODEL_BYTES

    @pytest.mark.asyncio
    async def test_follows_redirects(self, tmp_path):
        def handler(request):
            if request.url.path == "/model.gguf":
                return httpx.Response(302, headers={"Location": "/mirror/model.gguf"})
            if request.url.path == "/mirror/model.gguf":
                return httpx.Response(
                    307, headers={"Location": "https://cdn.example.com/blob"}
                )
            return httpx.Response(200, content=MODEL_BYTES)

        provisioner = make_provisioner(tmp_path, handler)
        spec = model_spec("https://example.com/model.gguf", sha256_of(MODEL_BYTES))

        path = await provisioner.ensure(spec)
        assert path.read_bytes() == MODEL_BYTES

    @pytest.mark.asyncio
    async def test_redirect_loop_fails(self, tmp_path):
        hops = []

        def handler(request):
            hops.append(request.url.path)
            return httpx.Response(301, headers={"Location": "/loop"})

        provisioner = make_provisioner(tmp_path, handler, max_redirects=3)
        spec = model_spec("https://example.com/loop")

        with pytest.raises(DownloadFailed) as exc:
            await provisioner.ensure(spec)

        assert "Too many redirects" in str(exc.value)
        assert len(hops) == 4
        assert not (tmp_path / "cache" / "models" / "test.gguf").exists()
        assert not (tmp_path / "cache" / "models" / "test.gguf.part").exists()

    @pytest.mark.asyncio
    async def test_http_error_removes_partial_file(self, tmp_path):
        provisioner = make_provisioner(
            tmp_path, lambda request: httpx.Response(404, content=b"not found")
        )

        with pytest.raises(DownloadFailed) as exc:
            await provisioner.ensure(model_spec("https://example.com/model.gguf"))

        assert exc.value.status_code == 404
        folder = tmp_path / "cache" / "models"
        assert list(folder.iterdir()) == []

    @pytest.mark.asyncio
    async def test_transport_error_is_download_failed(self, tmp_path):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        provisioner = make_provisioner(tmp_path, handler)

        with pytest.raises(DownloadFailed):
            await provisioner.ensure(model_spec("https://example.com/model.gguf"))

    @pytest.mark.asyncio
    async def test_checksum_mismatch_discards_file(self, tmp_path):
        provisioner = make_provisioner(
            tmp_path, lambda request: httpx.Response(200, content=b"tampered")
        )
        spec = model_spec("https://example.com/model.gguf", sha256_of(MODEL_BYTES))

        with pytest.raises(ChecksumMismatch) as exc:
            await provisioner.ensure(spec)

        assert exc.value.actual == sha256_of(b"tampered")
        folder = tmp_path / "cache" / "models"
        assert list(folder.iterdir()) == []

    @pytest.mark.asyncio
    async def test_downloaded_binary_is_executable(self, tmp_path):
        provisioner = make_provisioner(
            tmp_path,
            lambda request: httpx.Response(200, content=b"#!binary"),
            binary_url="https://example.com/llama-server"
        )
        binary_spec = provisioner.default_specs()[0]

        path = await provisioner.ensure(binary_spec)
        assert path.stat().st_mode & 0o100


class TestConsent:
    """Tests for the download consent prompt."""

    @pytest.mark.asyncio
    async def test_declined_prompt_is_user_canceled(self, tmp_path):
        asked = []

        async def consent(spec):
            asked.append(spec.name)
            return False

        provisioner = make_provisioner(tmp_path, consent=consent)

        with pytest.raises(UserCanceled):
            await provisioner.ensure(model_spec("https://example.com/model.gguf"))
        assert asked == ["model"]

    @pytest.mark.asyncio
    async def test_accepted_prompt_downloads(self, tmp_path):
        async def consent(spec):
            return True

        provisioner = make_provisioner(
            tmp_path,
            lambda request: httpx.Response(200, content=MODEL_BYTES),
            consent=consent
        )

        path = await provisioner.ensure(model_spec("https://example.com/model.gguf"))
        assert path.exists()

    @pytest.mark.asyncio
    async def test_no_prompt_when_bundled(self, tmp_path):
        path = tmp_path / "resources" / "models" / "test.gguf"
        path.parent.mkdir(parents=True)
        path.write_bytes(MODEL_BYTES)

        async def consent(spec):
            raise AssertionError("should not prompt")

        provisioner = make_provisioner(tmp_path, consent=consent)
        assert await provisioner.ensure(model_spec("https://example.com/model.gguf")) == path
