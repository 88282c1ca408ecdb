from __future__ import annotations
"""Profile-driven session over one S3 client."""

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional

from .cancellation import CancellationToken
from .client import PresignedPost, S3Client
from .models import (
    ActiveMultipartUpload,
    Credentials,
    FolderStats,
    ObjectListing,
    ObjectMetadata,
    ObjectSummary,
    ObjectVersion,
)
from .multipart import MultipartUploader, abort_all
from .pagination import (
    folder_stats,
    list_all_objects,
    list_directory,
    list_multipart_uploads,
    list_object_versions,
)
from .profiles import ConnectionProfile, ProfileStorage
from .recursive import delete_recursive, rename_recursive
from .settings import EngineSettings, SettingsStorage
from .snapshots import BucketSnapshot, capture_snapshot
from .transfers import download_file, download_folder, upload_folder
from .utils import folder_prefix

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class NotConnectedError(RuntimeError):
    """Raised when an S3 operation is attempted before connecting."""


class S3Controller:
    """Coordinates saved profiles, settings and the connected client."""

    def __init__(
        self,
        storage: ProfileStorage | None = None,
        settings_storage: SettingsStorage | None = None,
        client_factory: Callable[[Credentials], S3Client] | None = None,
    ):
        self._storage = storage or ProfileStorage()
        self._settings_storage = settings_storage or SettingsStorage()
        self._client_factory = client_factory or S3Client
        self._client: S3Client | None = None
        self._profiles: list[ConnectionProfile] = self._storage.load()
        self._selected_profile: str | None = None
        self.settings: EngineSettings = self._settings_storage.load()

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    @property
    def selected_profile(self) -> str | None:
        return self._selected_profile

    @property
    def client(self) -> S3Client:
        return self._require_connection()

    # Profiles

    def list_profiles(self) -> list[ConnectionProfile]:
        return list(self._profiles)

    def save_profile(self, profile: ConnectionProfile, *, original_name: str | None = None) -> None:
        if original_name and original_name != profile.name:
            self._profiles = [p for p in self._profiles if p.name != original_name]
        self._upsert_profile(profile)
        self._persist_profiles()

    def delete_profile(self, name: str) -> None:
        before = len(self._profiles)
        self._profiles = [p for p in self._profiles if p.name != name]
        if len(self._profiles) == before:
            raise ValueError(f"Profile '{name}' does not exist")
        if self._selected_profile == name:
            self._selected_profile = None
        self._persist_profiles()

    def get_profile(self, name: str) -> ConnectionProfile:
        for profile in self._profiles:
            if profile.name == name:
                return profile
        raise ValueError(f"Profile '{name}' does not exist")

    def save_settings(self, settings: EngineSettings) -> None:
        self._settings_storage.save(settings)
        self.settings = self._settings_storage.load()

    # Connection

    async def connect_with_profile(self, name: str, *, bucket: str | None = None) -> list[str]:
        profile = self.get_profile(name)
        buckets = await self.connect(profile.to_credentials(bucket))
        self._selected_profile = name
        return buckets

    async def connect(self, credentials: Credentials) -> list[str]:
        """Build a client and validate it by listing buckets."""

        client = self._client_factory(credentials)
        buckets = await client.list_buckets()
        self._client = client
        LOGGER.info("Connected to %s (%d buckets)", credentials.endpoint or "AWS", len(buckets))
        return buckets

    def disconnect(self) -> None:
        self._client = None
        self._selected_profile = None

    def use_bucket(self, bucket: str) -> None:
        self._client = self._require_connection().for_bucket(bucket)

    async def refresh_buckets(self) -> list[str]:
        return await self._require_connection().list_buckets()

    # Listing

    async def list_directory(
        self,
        prefix: str = "",
        *,
        max_keys: Optional[int] = None,
        continuation_token: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> ObjectListing:
        return await list_directory(
            self._require_connection(),
            prefix,
            max_keys=max_keys,
            continuation_token=continuation_token,
            page_size=self.settings.page_size,
            cancel=cancel,
        )

    async def list_all_objects(
        self, prefix: str = "", *, cancel: Optional[CancellationToken] = None
    ) -> list[ObjectSummary]:
        return await list_all_objects(
            self._require_connection(), prefix, page_size=self.settings.page_size, cancel=cancel
        )

    async def list_versions(self, key: str) -> list[ObjectVersion]:
        return await list_object_versions(self._require_connection(), key)

    async def folder_stats(self, prefix: str = "") -> FolderStats:
        return await folder_stats(self._require_connection(), prefix)

    async def get_object_details(self, key: str) -> ObjectMetadata:
        return await self._require_connection().head_object(key)

    # Transfers

    async def download_object(
        self,
        key: str,
        destination: str | Path,
        *,
        version_id: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> int:
        """Download to a local file, in resumable ranges above the threshold."""

        return await download_file(
            self._require_connection(),
            key,
            destination,
            version_id=version_id,
            segment_size=self.settings.download_segment_size,
            threshold=self.settings.range_download_threshold,
            progress=progress,
            cancel=cancel,
        )

    async def download_folder(
        self,
        prefix: str,
        destination_dir: str | Path,
        *,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> list[Path]:
        async def download(key: str, target: Path) -> int:
            return await self.download_object(key, target, cancel=cancel)

        return await download_folder(
            self._require_connection(),
            folder_prefix(prefix),
            destination_dir,
            download=download,
            page_size=self.settings.page_size,
            progress=progress,
            cancel=cancel,
        )

    async def upload_folder(
        self,
        source_dir: str | Path,
        prefix: str,
        *,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> list[str]:
        async def upload(key: str, path: Path) -> Optional[str]:
            return await self.upload_object(key, path, cancel=cancel)

        return await upload_folder(
            self._require_connection(),
            source_dir,
            folder_prefix(prefix),
            upload_file=upload,
            progress=progress,
            cancel=cancel,
        )

    async def upload_object(
        self,
        key: str,
        source_path: str | Path,
        *,
        content_type: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
        resume: bool = False,
    ) -> Optional[str]:
        """Upload a local file, switching to multipart above the threshold."""

        client = self._require_connection()
        data = await asyncio.to_thread(Path(source_path).read_bytes)
        if len(data) < self.settings.multipart_threshold:
            etag = await client.put_object(key, data, content_type=content_type)
            if progress is not None:
                progress(1, 1)
            return etag
        uploader = MultipartUploader(
            client,
            part_size=self.settings.part_size,
            concurrency=self.settings.part_concurrency,
        )
        return await uploader.upload_bytes(
            key,
            data,
            content_type=content_type,
            progress=progress,
            cancel=cancel,
            resume=resume,
        )

    async def create_folder(self, key: str) -> None:
        await self._require_connection().create_folder(key)

    async def delete_object(self, key: str) -> None:
        await self._require_connection().delete_object(key)

    async def delete_prefix(
        self,
        prefix: str,
        *,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> int:
        return await delete_recursive(self._require_connection(), prefix, progress=progress, cancel=cancel)

    async def rename_prefix(
        self,
        old_prefix: str,
        new_prefix: str,
        *,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> int:
        return await rename_recursive(
            self._require_connection(), old_prefix, new_prefix, progress=progress, cancel=cancel
        )

    # Multipart housekeeping

    async def list_multipart_uploads(self, prefix: str = "") -> list[ActiveMultipartUpload]:
        return await list_multipart_uploads(self._require_connection(), prefix)

    async def abort_uploads(
        self, uploads: list[ActiveMultipartUpload]
    ) -> list[tuple[ActiveMultipartUpload, Exception]]:
        return await abort_all(self._require_connection(), uploads)

    # URLs and snapshots

    def generate_presigned_url(
        self,
        key: str,
        *,
        method: str = "get",
        expires_in: int | None = None,
        content_type: str | None = None,
        content_disposition: str | None = None,
        max_size: int | None = None,
    ) -> str | PresignedPost:
        client = self._require_connection()
        expiry = expires_in or self.settings.presign_expiry
        if method.lower() == "post":
            return client.generate_presigned_post(key, expires_in=expiry, max_size=max_size)
        return client.generate_presigned_url(
            key,
            method=method,
            expires_in=expiry,
            content_type=content_type,
            content_disposition=content_disposition,
        )

    async def capture_snapshot(
        self, prefix: str = "", *, cancel: Optional[CancellationToken] = None
    ) -> BucketSnapshot:
        return await capture_snapshot(self._require_connection(), prefix, cancel=cancel)

    def _require_connection(self) -> S3Client:
        if self._client is None:
            raise NotConnectedError("Not connected to S3")
        return self._client

    def _upsert_profile(self, profile: ConnectionProfile) -> None:
        for idx, existing in enumerate(self._profiles):
            if existing.name == profile.name:
                self._profiles[idx] = profile
                break
        else:
            self._profiles.append(profile)

    def _persist_profiles(self) -> None:
        self._storage.save(self._profiles)
