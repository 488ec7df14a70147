"""
Blob Storage — raw upload bytes

The ingestion core only needs three operations on raw bytes:

  put(owner_id, document_id, mime_type, data)  → storage_ref
  get(storage_ref)                             → bytes
  delete(storage_ref)

storage_ref is opaque to every caller. It is written once onto the
Document row and is the only way the pipeline (and every later reprocess)
finds the original bytes again, so raw bytes are never discarded while the
document exists.

S3 layout (key constructed server-side, never from client input):
    s3://<BUCKET>/<prefix>/<owner_id>/<document_id><ext>
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from uuid import UUID

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from coursedocs.core.config import Settings, get_settings
from coursedocs.core.errors import StorageFetchError, StorageWriteError
from coursedocs.schemas.documents import EXTENSION_FOR_TYPE

logger = logging.getLogger(__name__)


class BlobStore(ABC):
    """Adapter seam for the blob-storage collaborator."""

    @abstractmethod
    async def put(
        self,
        owner_id: UUID,
        document_id: UUID,
        mime_type: str,
        data: bytes,
        metadata: dict[str, str] | None = None,
    ) -> str:
        """Store bytes and return the storage reference. Raises StorageWriteError."""

    @abstractmethod
    async def get(self, storage_ref: str) -> bytes:
        """Return the stored bytes. Raises StorageFetchError."""

    @abstractmethod
    async def delete(self, storage_ref: str) -> None:
        """Remove the stored bytes. Missing objects are not an error."""


# ---------------------------------------------------------------------------
# S3 implementation
# ---------------------------------------------------------------------------

class S3BlobStore(BlobStore):
    """
    Async S3 operations against a single bucket.

    The aioboto3 session is created once; each call opens a short-lived
    client context, as aioboto3 clients are not shared across event loops.
    """

    def __init__(
        self,
        bucket: str,
        prefix: str = "documents",
        region: str = "us-east-1",
        session: aioboto3.Session | None = None,
    ) -> None:
        self._bucket  = bucket
        self._prefix  = prefix.strip("/")
        self._region  = region
        self._session = session or aioboto3.Session()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "S3BlobStore":
        settings = settings or get_settings()
        session = aioboto3.Session(
            # In production: IAM role assumed via ECS task role / IRSA.
            # In local dev: static keys from settings.
            aws_access_key_id=settings.aws_access_key_id or None,
            aws_secret_access_key=settings.aws_secret_access_key or None,
        )
        return cls(
            bucket=settings.s3_bucket,
            prefix=settings.s3_prefix,
            region=settings.aws_region,
            session=session,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client("s3", region_name=self._region)

    def object_key(self, owner_id: UUID, document_id: UUID, mime_type: str) -> str:
        ext = EXTENSION_FOR_TYPE.get(mime_type, "")
        return f"{self._prefix}/{owner_id}/{document_id}{ext}"

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def put(
        self,
        owner_id: UUID,
        document_id: UUID,
        mime_type: str,
        data: bytes,
        metadata: dict[str, str] | None = None,
    ) -> str:
        key = self.object_key(owner_id, document_id, mime_type)
        try:
            async with self._client() as s3:
                await s3.put_object(
                    Bucket=self._bucket,
                    Key=key,
                    Body=data,
                    ContentType=mime_type,
                    Metadata={
                        "owner_id":    str(owner_id),
                        "document_id": str(document_id),
                        **(metadata or {}),
                    },
                )
        except (ClientError, BotoCoreError) as exc:
            logger.exception("S3 upload failed | doc=%s key=%s", document_id, key)
            raise StorageWriteError(f"Could not store upload: {exc}") from exc

        logger.info("S3 upload ok | doc=%s key=%s size=%d", document_id, key, len(data))
        return key

    async def get(self, storage_ref: str) -> bytes:
        try:
            async with self._client() as s3:
                resp = await s3.get_object(Bucket=self._bucket, Key=storage_ref)
                return await resp["Body"].read()
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "Unknown")
            if code in ("NoSuchKey", "404"):
                raise StorageFetchError(f"Object not found: {storage_ref}") from exc
            raise StorageFetchError(f"Object unreadable ({code}): {storage_ref}") from exc
        except BotoCoreError as exc:
            raise StorageFetchError(f"Storage unavailable: {exc}") from exc

    async def delete(self, storage_ref: str) -> None:
        async with self._client() as s3:
            await s3.delete_object(Bucket=self._bucket, Key=storage_ref)
        logger.info("S3 delete | key=%s", storage_ref)
