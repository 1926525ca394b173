"""
Artifact store: durable audio objects and time-limited signed download URLs.

Usage:
    store = ArtifactStore(SupabaseObjectStorage(client, "tts-audio"), settings.storage)
    artifact = await store.store(audio, user_id, "tts_abc.mp3", "audio/mpeg")
    url = await store.get_signed_url(artifact.key, "tts_abc.mp3")
"""

import asyncio
import secrets
import threading
import uuid
from datetime import UTC, datetime, timedelta
from typing import Protocol
from urllib.parse import parse_qs, urlparse

import structlog
from pydantic import BaseModel, Field

from ttsgate.config import StorageConfig
from ttsgate.errors import SigningError, StorageError

logger = structlog.get_logger(__name__)

# Supabase Storage paginates folder listings
_LIST_PAGE_SIZE = 1000


def _utcnow() -> datetime:
    return datetime.now(UTC)


def build_storage_key(category: str, user_id: str, filename: str) -> str:
    """``{category}/{user_id}/{uuid}-{filename}``, unique per call."""
    return f"{category}/{user_id}/{uuid.uuid4()}-{filename}"


class StoredArtifact(BaseModel):
    key: str
    size_bytes: int = Field(ge=0)
    content_type: str


class StoredObject(BaseModel):
    key: str
    size_bytes: int = 0
    last_modified: datetime | None = None


class DeleteManyResult(BaseModel):
    deleted: int = 0
    errors: list[str] = Field(default_factory=list)


class ObjectStorage(Protocol):
    """Minimal object storage backend."""

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        """Write an object; never overwrites an existing key."""

    async def sign(self, key: str, filename: str, ttl_seconds: int) -> str:
        """Signed URL that downloads the object as ``filename``."""

    async def remove(self, keys: list[str]) -> int:
        """Delete objects. Returns the number removed."""

    async def list(self, prefix: str) -> list[StoredObject]:
        """All objects under a prefix, recursively."""


class SupabaseObjectStorage:
    """Supabase Storage bucket backend."""

    def __init__(self, client, bucket: str):
        self.client = client
        self.bucket = bucket

    def _bucket(self):
        return self.client.storage.from_(self.bucket)

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        await self._bucket().upload(
            path=key,
            file=data,
            file_options={"content-type": content_type, "upsert": "false"},
        )

    async def sign(self, key: str, filename: str, ttl_seconds: int) -> str:
        response = await self._bucket().create_signed_url(
            key, ttl_seconds, {"download": filename}
        )
        url = response.get("signedURL") or response.get("signedUrl")
        if not url:
            raise RuntimeError(f"No signed URL returned for {key}")
        return url

    async def remove(self, keys: list[str]) -> int:
        removed = await self._bucket().remove(keys)
        return len(removed or [])

    async def list(self, prefix: str) -> list[StoredObject]:
        objects: list[StoredObject] = []
        offset = 0
        while True:
            entries = await self._bucket().list(
                prefix, {"limit": _LIST_PAGE_SIZE, "offset": offset}
            )
            for entry in entries:
                path = f"{prefix}/{entry['name']}"
                # Folders come back without an id
                if entry.get("id") is None:
                    objects.extend(await self.list(path))
                    continue
                metadata = entry.get("metadata") or {}
                objects.append(
                    StoredObject(
                        key=path,
                        size_bytes=metadata.get("size") or 0,
                        last_modified=entry.get("updated_at") or entry.get("created_at"),
                    )
                )
            if len(entries) < _LIST_PAGE_SIZE:
                return objects
            offset += _LIST_PAGE_SIZE


class InMemoryObjectStorage:
    """In-memory backend used for tests and local fallback.

    Signed URLs use the ``memory://`` scheme and carry a random token; they
    resolve back to the object bytes until they expire.
    """

    def __init__(self, bucket: str = "tts-audio", now_provider=_utcnow) -> None:
        self.bucket = bucket
        self.now_provider = now_provider
        self.objects: dict[str, tuple[bytes, str, datetime]] = {}
        self.tokens: dict[str, tuple[str, datetime]] = {}
        self._mutex = threading.Lock()

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        with self._mutex:
            if key in self.objects:
                raise FileExistsError(key)
            self.objects[key] = (bytes(data), content_type, self.now_provider())

    async def sign(self, key: str, filename: str, ttl_seconds: int) -> str:
        with self._mutex:
            if key not in self.objects:
                raise FileNotFoundError(key)
            token = secrets.token_urlsafe(16)
            self.tokens[token] = (key, self.now_provider() + timedelta(seconds=ttl_seconds))
        return f"memory://{self.bucket}/{key}?token={token}&download={filename}"

    def resolve_signed_url(self, url: str) -> bytes:
        """Bytes behind a signed URL; raises ``PermissionError`` if invalid or expired."""
        token = parse_qs(urlparse(url).query).get("token", [""])[0]
        with self._mutex:
            entry = self.tokens.get(token)
            if entry is None or entry[1] <= self.now_provider():
                raise PermissionError("Signed URL is invalid or expired")
            return self.objects[entry[0]][0]

    async def remove(self, keys: list[str]) -> int:
        with self._mutex:
            return sum(1 for key in keys if self.objects.pop(key, None) is not None)

    async def list(self, prefix: str) -> list[StoredObject]:
        with self._mutex:
            return [
                StoredObject(key=key, size_bytes=len(data), last_modified=modified)
                for key, (data, _, modified) in self.objects.items()
                if key.startswith(f"{prefix}/")
            ]


class ArtifactStore:
    """Stores audio artifacts and issues signed URLs, with bounded calls."""

    def __init__(self, backend: ObjectStorage, config: StorageConfig) -> None:
        self.backend = backend
        self.config = config

    async def store(
        self,
        data: bytes,
        user_id: str,
        filename: str,
        content_type: str,
        category: str | None = None,
    ) -> StoredArtifact:
        """
        Upload an artifact under a fresh key.

        Raises:
            StorageError: Upload failed or exceeded the upload timeout.
        """
        key = build_storage_key(category or self.config.audio_prefix, user_id, filename)
        try:
            await asyncio.wait_for(
                self.backend.put(key, data, content_type),
                timeout=self.config.upload_timeout_seconds,
            )
        except TimeoutError as e:
            logger.warning("storage_upload_timeout", key=key)
            raise StorageError("Failed to store audio file: upload timed out") from e
        except Exception as e:
            logger.warning("storage_upload_failed", key=key, error=str(e))
            raise StorageError(f"Failed to store audio file: {e}") from e

        logger.info("artifact_stored", key=key, size_bytes=len(data))
        return StoredArtifact(key=key, size_bytes=len(data), content_type=content_type)

    async def get_signed_url(
        self, key: str, filename: str, ttl_seconds: int | None = None
    ) -> str:
        """
        Time-limited URL that downloads the object as ``filename``.

        Raises:
            SigningError: The backend could not sign the key.
        """
        ttl = ttl_seconds or self.config.signed_url_ttl_seconds
        try:
            return await asyncio.wait_for(
                self.backend.sign(key, filename, ttl),
                timeout=self.config.sign_timeout_seconds,
            )
        except Exception as e:
            logger.warning("storage_sign_failed", key=key, error=str(e))
            raise SigningError() from e

    async def delete(self, key: str) -> None:
        try:
            await self.backend.remove([key])
        except Exception as e:
            logger.warning("storage_delete_failed", key=key, error=str(e))
            raise StorageError(f"Failed to delete file: {e}") from e

    async def delete_many(self, keys: list[str]) -> DeleteManyResult:
        if not keys:
            return DeleteManyResult()
        try:
            deleted = await self.backend.remove(list(keys))
        except Exception as e:
            logger.warning("storage_bulk_delete_failed", count=len(keys), error=str(e))
            return DeleteManyResult(deleted=0, errors=[str(e)])
        return DeleteManyResult(deleted=deleted)

    async def list_objects(self, category: str | None = None) -> list[StoredObject]:
        prefix = category or self.config.audio_prefix
        try:
            return await self.backend.list(prefix)
        except Exception as e:
            logger.warning("storage_list_failed", prefix=prefix, error=str(e))
            raise StorageError(f"Failed to list files: {e}") from e
