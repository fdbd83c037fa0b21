"""
Migration Flow Atlas - Artifact Stores
Byte-level access to cache artifacts by key

Strategies:
- LocalArtifactStore: files under a cache root
- HttpArtifactStore: static file server (requests, run in a worker thread)
- FallbackArtifactStore: network first, local copy on ArtifactUnavailableError
"""

import asyncio
import os
from abc import ABC, abstractmethod
from typing import Optional

import requests

from config.settings import Settings, get_settings
from flowatlas.utils.logging import get_logger

logger = get_logger(__name__)


class ArtifactUnavailableError(RuntimeError):
    """Raised when an artifact cannot be read from a store."""

    def __init__(self, key: str, cause: Optional[BaseException] = None):
        message = f"Artifact unavailable: {key}"
        if cause is not None:
            message = f"{message} ({cause})"
        super().__init__(message)
        self.key = key
        self.cause = cause


class ArtifactStore(ABC):
    """Read-only source of artifact bytes."""

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """
        Read one artifact.

        Raises:
            ArtifactUnavailableError: If the artifact is missing or unreadable
        """


class LocalArtifactStore(ArtifactStore):
    def __init__(self, root: str):
        self.root = os.path.abspath(root)

    def __repr__(self) -> str:
        return f"LocalArtifactStore({self.root!r})"

    def path_for(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self.root, *key.split("/")))
        if os.path.commonpath([self.root, path]) != self.root:
            raise ArtifactUnavailableError(key, ValueError("key escapes cache root"))
        return path

    def _read(self, key: str) -> bytes:
        path = self.path_for(key)
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            raise ArtifactUnavailableError(key, e) from e

    async def get(self, key: str) -> bytes:
        return await asyncio.to_thread(self._read, key)


class HttpArtifactStore(ArtifactStore):
    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def __repr__(self) -> str:
        return f"HttpArtifactStore({self.base_url!r})"

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/{key}"

    def _fetch(self, key: str) -> bytes:
        url = self.url_for(key)
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise ArtifactUnavailableError(key, e) from e
        return response.content

    async def get(self, key: str) -> bytes:
        return await asyncio.to_thread(self._fetch, key)


class FallbackArtifactStore(ArtifactStore):
    """Try the primary store; on ArtifactUnavailableError read the fallback."""

    def __init__(self, primary: ArtifactStore, fallback: ArtifactStore):
        self.primary = primary
        self.fallback = fallback

    def __repr__(self) -> str:
        return f"FallbackArtifactStore({self.primary!r}, {self.fallback!r})"

    async def get(self, key: str) -> bytes:
        try:
            return await self.primary.get(key)
        except ArtifactUnavailableError as e:
            logger.warning(f"{e}; reading {key} from {self.fallback!r}")
        return await self.fallback.get(key)


def create_artifact_store(settings: Optional[Settings] = None) -> ArtifactStore:
    """
    Pick the storage strategy from configuration.

    ARTIFACT_BASE_URL set: network first with CACHE_DIR as fallback.
    Otherwise: CACHE_DIR only.
    """
    settings = settings or get_settings()
    local = LocalArtifactStore(settings.CACHE_DIR)

    if not settings.ARTIFACT_BASE_URL:
        return local

    remote = HttpArtifactStore(settings.ARTIFACT_BASE_URL, timeout=settings.ARTIFACT_FETCH_TIMEOUT)
    return FallbackArtifactStore(remote, local)
