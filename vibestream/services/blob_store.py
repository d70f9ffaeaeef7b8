"""
S3-compatible blob store (Backblaze B2, Cloudflare R2, MinIO, AWS S3).

Objects are stored as `<prefix><identifier>.mp3`. Reads are served by
redirecting the client to a time-limited presigned GET URL; the object
store handles ranged reads itself. boto3 is synchronous, so every call
runs in a worker thread.
"""
import asyncio
import logging
from pathlib import Path
from typing import Any, Optional, Union

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from vibestream.config.settings import Settings
from vibestream.services.cache import CacheStore, StorageError
from vibestream.services.models import AUDIO_MPEG, AudioAsset, SignedAudioUrl

logger = logging.getLogger(__name__)

_SUFFIX = ".mp3"
_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


def build_s3_client(settings: Settings) -> Any:
    """Create a boto3 S3 client for the configured endpoint."""
    endpoint = settings.S3_ENDPOINT
    if endpoint and not endpoint.startswith(("http://", "https://")):
        endpoint = f"https://{endpoint}"
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        region_name=settings.S3_REGION,
        aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
        aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
    )


class BlobCacheStore(CacheStore):
    backend = "blob"

    def __init__(self, client: Any, bucket: str, prefix: str = "", url_ttl: int = 3600):
        self._client = client
        self._bucket = bucket
        self._prefix = prefix
        self._url_ttl = url_ttl

    def key_for(self, identifier: str) -> str:
        return f"{self._prefix}{identifier}{_SUFFIX}"

    async def exists(self, identifier: str) -> bool:
        return await self._head(identifier) is not None

    async def put(
        self,
        identifier: str,
        source: Union[bytes, Path],
        content_type: str = AUDIO_MPEG,
    ) -> AudioAsset:
        key = self.key_for(identifier)
        try:
            if isinstance(source, (bytes, bytearray)):
                await asyncio.to_thread(
                    self._client.put_object,
                    Bucket=self._bucket,
                    Key=key,
                    Body=bytes(source),
                    ContentType=content_type,
                )
            else:
                await asyncio.to_thread(
                    self._client.upload_file,
                    str(source),
                    self._bucket,
                    key,
                    ExtraArgs={"ContentType": content_type},
                )
        except (ClientError, BotoCoreError, OSError) as exc:
            raise StorageError(f"Upload failed for {identifier}: {exc}") from exc

        asset = await self.stat(identifier)
        if asset is None:
            raise StorageError(f"Upload of {identifier} not visible after write")
        logger.info(
            "Uploaded to blob store",
            extra={"identifier": identifier, "key": key, "size_kb": asset.size // 1024},
        )
        return asset

    async def resolve_for_read(self, identifier: str) -> Optional[SignedAudioUrl]:
        if not await self.exists(identifier):
            return None
        try:
            url = await asyncio.to_thread(
                self._client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self._bucket, "Key": self.key_for(identifier)},
                ExpiresIn=self._url_ttl,
            )
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"URL generation failed for {identifier}: {exc}") from exc
        return SignedAudioUrl(url=url, expires_in=self._url_ttl)

    async def stat(self, identifier: str) -> Optional[AudioAsset]:
        head = await self._head(identifier)
        if head is None:
            return None
        return AudioAsset(
            identifier=identifier,
            size=int(head.get("ContentLength", 0)),
            location=self.key_for(identifier),
            # Object stores keep no access time; the upload time stands in.
            last_accessed=head["LastModified"],
            created_at=head["LastModified"],
            content_type=head.get("ContentType") or AUDIO_MPEG,
        )

    async def delete(self, identifier: str) -> bool:
        if await self._head(identifier) is None:
            return False
        try:
            await asyncio.to_thread(
                self._client.delete_object,
                Bucket=self._bucket,
                Key=self.key_for(identifier),
            )
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Delete failed for {identifier}: {exc}") from exc
        logger.info("Deleted audio", extra={"identifier": identifier})
        return True

    async def list_all(self) -> list[AudioAsset]:
        try:
            objects = await asyncio.to_thread(self._list_objects)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Listing bucket {self._bucket} failed: {exc}") from exc

        assets = []
        for obj in objects:
            key = obj["Key"]
            if not key.endswith(_SUFFIX):
                continue
            assets.append(AudioAsset(
                identifier=key[len(self._prefix):-len(_SUFFIX)],
                size=int(obj.get("Size", 0)),
                location=key,
                last_accessed=obj["LastModified"],
                created_at=obj["LastModified"],
            ))
        return assets

    def _list_objects(self) -> list[dict]:
        paginator = self._client.get_paginator("list_objects_v2")
        objects: list[dict] = []
        for page in paginator.paginate(Bucket=self._bucket, Prefix=self._prefix):
            objects.extend(page.get("Contents", []))
        return objects

    async def _head(self, identifier: str) -> Optional[dict]:
        try:
            return await asyncio.to_thread(
                self._client.head_object,
                Bucket=self._bucket,
                Key=self.key_for(identifier),
            )
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _MISSING_CODES:
                return None
            raise StorageError(f"Lookup failed for {identifier}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Lookup failed for {identifier}: {exc}") from exc
