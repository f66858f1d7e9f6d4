import hashlib
from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from kiln.core.config import HubConfig
from kiln.core.exceptions import LoadError
from kiln.hub.downloader import ArtifactDownloader

FILES = {
    "config.json": b'{"model_type": "llama"}',
    "model.safetensors": b"\x00" * 2500,
}


def _api(files, sha256=None):
    sha256 = sha256 or {}
    siblings = []
    for name, size in files:
        lfs = SimpleNamespace(sha256=sha256[name], size=size) if name in sha256 else None
        siblings.append(SimpleNamespace(rfilename=name, size=size, lfs=lfs))
    api = MagicMock()
    api.model_info.return_value = SimpleNamespace(siblings=siblings)
    return api


@asynccontextmanager
async def file_server(files=FILES):
    requested = []

    async def serve_file(request):
        name = request.match_info["name"]
        requested.append(name)
        if name not in files:
            return web.Response(status=404)
        return web.Response(body=files[name])

    app = web.Application()
    app.router.add_get("/files/{name}", serve_file)
    server = TestServer(app)
    await server.start_server()

    def url(repo_id, filename, revision=None, endpoint=None):
        return str(server.make_url(f"/files/{filename}"))

    try:
        with patch("kiln.hub.downloader.hf_hub_url", side_effect=url):
            yield requested
    finally:
        await server.close()


def _downloader(tmp_path, files, chunk_size=1000, sha256=None):
    config = HubConfig(cache_dir=str(tmp_path), chunk_size=chunk_size)
    return ArtifactDownloader(config, api=_api(files, sha256), token="")


@pytest.mark.asyncio
async def test_fetch_reports_per_file_progress(tmp_path):
    sizes = [(name, len(body)) for name, body in FILES.items()] + [("README.md", 10)]
    downloader = _downloader(tmp_path, sizes)
    progress = []

    async with file_server() as requested:
        target = await downloader.fetch("org/model", progress.append)

    assert target == tmp_path / "org--model"
    assert (target / "model.safetensors").read_bytes() == FILES["model.safetensors"]
    # README.md is filtered out by the allow patterns
    assert sorted(requested) == ["config.json", "model.safetensors"]

    weights = [e for e in progress if e["file"] == "model.safetensors"]
    assert weights[0]["status"] == "initiate"
    assert weights[-1]["status"] == "done"
    steps = [e for e in weights if e["status"] == "progress"]
    loaded = [e["loaded"] for e in steps]
    assert loaded == sorted(loaded)
    assert loaded[-1] == 2500
    assert all(e - prev <= 1000 for prev, e in zip([0] + loaded, loaded))
    assert steps[-1]["progress"] == 100.0
    assert all(e["name"] == "org/model" for e in progress)
    assert not list(target.glob("*.incomplete"))


@pytest.mark.asyncio
async def test_cached_files_are_not_downloaded_again(tmp_path):
    sizes = [(name, len(body)) for name, body in FILES.items()]
    downloader = _downloader(tmp_path, sizes)

    async with file_server() as requested:
        await downloader.fetch("org/model")
        requested.clear()
        progress = []
        await downloader.fetch("org/model", progress.append)

    assert requested == []
    assert [e["status"] for e in progress] == ["initiate", "progress", "done"] * 2


@pytest.mark.asyncio
async def test_http_error_is_a_load_error(tmp_path):
    downloader = _downloader(tmp_path, [("missing.json", 5)])

    async with file_server():
        with pytest.raises(LoadError, match="HTTP 404"):
            await downloader.fetch("org/model")


@pytest.mark.asyncio
async def test_listing_failure_is_a_load_error(tmp_path):
    api = MagicMock()
    api.model_info.side_effect = OSError("repository not found")
    downloader = ArtifactDownloader(HubConfig(cache_dir=str(tmp_path)), api=api, token="")

    with pytest.raises(LoadError) as excinfo:
        await downloader.list_artifacts("org/absent")

    assert isinstance(excinfo.value.cause, OSError)


@pytest.mark.asyncio
async def test_repository_without_weights_is_a_load_error(tmp_path):
    downloader = _downloader(tmp_path, [("README.md", 10)])

    with pytest.raises(LoadError, match="No loadable files"):
        await downloader.list_artifacts("org/model")


def test_wanted_patterns(tmp_path):
    downloader = _downloader(tmp_path, [])
    assert downloader.wanted("model-00001-of-00002.safetensors")
    assert downloader.wanted("tokenizer.model")
    assert not downloader.wanted("pytorch_model.bin")


@pytest.mark.asyncio
async def test_lfs_checksum_is_verified(tmp_path):
    body = FILES["model.safetensors"]
    sizes = [("model.safetensors", len(body))]
    good = _downloader(tmp_path / "good", sizes, sha256={"model.safetensors": hashlib.sha256(body).hexdigest()})
    bad = _downloader(tmp_path / "bad", sizes, sha256={"model.safetensors": "0" * 64})

    async with file_server():
        target = await good.fetch("org/model")
        with pytest.raises(LoadError, match="Checksum mismatch"):
            await bad.fetch("org/model")

    assert (target / "model.safetensors").read_bytes() == body
    bad_dir = bad.local_dir("org/model")
    assert not (bad_dir / "model.safetensors").exists()
    assert not list(bad_dir.glob("*.incomplete"))
