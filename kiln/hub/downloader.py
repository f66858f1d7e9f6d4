"""
Artifact download from the Hugging Face Hub with per-file progress.

Files are streamed with aiohttp so every chunk can be reported to the host as
an `initiate` / `progress` / `done` record, the same records the host uses to
draw one progress bar per artifact.
"""

import asyncio
import hashlib
import logging
import os
from fnmatch import fnmatch
from pathlib import Path
from typing import List, Optional, Tuple

import aiohttp
from huggingface_hub import HfApi, get_token, hf_hub_url

from kiln.core.config import HubConfig
from kiln.core.exceptions import LoadError
from kiln.interfaces.engine import ProgressCallback

logger = logging.getLogger(__name__)


class ArtifactDownloader:
    """Fetches the tokenizer and weight files of a model repository into a local cache."""

    def __init__(self, config: Optional[HubConfig] = None, api: Optional[HfApi] = None, token: Optional[str] = None):
        self.config = config or HubConfig()
        self._token = token if token is not None else get_token()
        self._api = api or HfApi(endpoint=self.config.endpoint, token=self._token)

    def local_dir(self, repo_id: str) -> Path:
        return Path(self.config.cache_dir) / repo_id.replace("/", "--")

    def wanted(self, filename: str) -> bool:
        return any(fnmatch(filename, pattern) for pattern in self.config.allow_patterns)

    async def list_artifacts(self, repo_id: str) -> List[Tuple[str, Optional[int], Optional[str]]]:
        """
        Return (filename, size, sha256) for every repository file matching the
        allow patterns. sha256 is only known for files stored with LFS.
        """
        try:
            info = await asyncio.to_thread(
                self._api.model_info,
                repo_id,
                revision=self.config.revision,
                files_metadata=True,
            )
        except Exception as e:
            raise LoadError(f"Cannot list files of {repo_id}: {e}", cause=e) from e

        artifacts = [
            (s.rfilename, s.size, _lfs_sha256(s))
            for s in (info.siblings or [])
            if self.wanted(s.rfilename)
        ]
        if not artifacts:
            raise LoadError(f"No loadable files found in {repo_id}")
        return artifacts

    async def fetch(self, repo_id: str, on_progress: Optional[ProgressCallback] = None) -> Path:
        """
        Download every wanted artifact of `repo_id` and return the local directory.

        Files already in the cache with the expected size are not downloaded
        again, but still report initiate/progress/done.
        """
        report = on_progress or (lambda event: None)
        artifacts = await self.list_artifacts(repo_id)
        target = self.local_dir(repo_id)
        logger.info(f"Fetching {len(artifacts)} artifacts of {repo_id} into {target}")

        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        async with aiohttp.ClientSession(headers=headers) as session:
            for filename, size, sha256 in artifacts:
                await self._fetch_file(session, repo_id, filename, size, sha256, target, report)
        return target

    async def _fetch_file(
        self,
        session: aiohttp.ClientSession,
        repo_id: str,
        filename: str,
        size: Optional[int],
        sha256: Optional[str],
        target: Path,
        report: ProgressCallback,
    ):
        path = target / filename
        record = {"name": repo_id, "file": filename}

        report({"status": "initiate", **record, "progress": 0, "loaded": 0, "total": size or 0})

        # Only verified downloads reach `path`, so a file of the right size is complete
        if size is not None and path.exists() and path.stat().st_size == size:
            logger.debug(f"Cache hit for {repo_id}/{filename}")
            report({"status": "progress", **record, "progress": 100.0, "loaded": size, "total": size})
            report({"status": "done", **record})
            return

        path.parent.mkdir(parents=True, exist_ok=True)
        partial = path.with_name(path.name + ".incomplete")
        url = hf_hub_url(repo_id, filename, revision=self.config.revision, endpoint=self.config.endpoint)

        try:
            async with session.get(url) as response:
                if response.status != 200:
                    raise LoadError(f"Download of {repo_id}/{filename} failed: HTTP {response.status}")

                total = size or response.content_length or 0
                loaded = 0
                digest = hashlib.sha256()
                with open(partial, "wb") as handle:
                    async for chunk in response.content.iter_chunked(self.config.chunk_size):
                        handle.write(chunk)
                        digest.update(chunk)
                        loaded += len(chunk)
                        progress = loaded / total * 100.0 if total else 0.0
                        report({"status": "progress", **record, "progress": progress, "loaded": loaded, "total": total})
        except aiohttp.ClientError as e:
            raise LoadError(f"Network error downloading {repo_id}/{filename}: {e}", cause=e) from e

        if sha256 is not None and digest.hexdigest() != sha256:
            partial.unlink()
            raise LoadError(f"Checksum mismatch for {repo_id}/{filename}: expected sha256 {sha256}")

        os.replace(partial, path)
        report({"status": "done", **record})


def _lfs_sha256(sibling) -> Optional[str]:
    lfs = getattr(sibling, "lfs", None)
    if lfs is None:
        return None
    # Older huggingface_hub releases expose the LFS metadata as a dict
    return lfs.get("sha256") if isinstance(lfs, dict) else lfs.sha256
