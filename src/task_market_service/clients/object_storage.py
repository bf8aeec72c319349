"""S3 object storage client for direct browser uploads."""

from __future__ import annotations

import uuid
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger

UPLOAD_FOLDERS: frozenset[str] = frozenset({"uploads", "submissions"})


class ObjectStorage:
    """Issues short-lived presigned PUT URLs under uploads/ and submissions/."""

    def __init__(
        self,
        bucket: str,
        region: str,
        access_key_id: str | None,
        secret_access_key: str | None,
        upload_url_ttl_seconds: int,
        client: Any | None = None,
    ) -> None:
        self._bucket = bucket
        self._upload_url_ttl_seconds = upload_url_ttl_seconds
        self._logger = get_logger(__name__)
        if client is None:
            client = boto3.client(
                "s3",
                region_name=region,
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
                config=BotoConfig(signature_version="s3v4"),
            )
        self._client = client

    def presign_upload(self, folder: str, file_name: Any, content_type: Any) -> dict[str, str]:
        """
        Create a presigned upload URL for a ZIP file.

        Args:
            folder: "uploads" for task files, "submissions" for worker results.
            file_name: Original file name. Keys always end in .zip whatever it is.
            content_type: MIME type; must contain "zip".

        Returns:
            {"signedUrl": "...", "key": "<folder>/<uuid>.zip"}

        Raises:
            ServiceError: INVALID_PAYLOAD, INVALID_FILE_TYPE, STORAGE_UNAVAILABLE.
        """
        if folder not in UPLOAD_FOLDERS:
            msg = f"Unknown upload folder: {folder}"
            raise ValueError(msg)

        if not isinstance(file_name, str) or not file_name.strip():
            raise ServiceError("INVALID_PAYLOAD", "fileName and contentType are required", 400, {})
        if not isinstance(content_type, str) or not content_type.strip():
            raise ServiceError("INVALID_PAYLOAD", "fileName and contentType are required", 400, {})
        if "zip" not in content_type.lower():
            raise ServiceError("INVALID_FILE_TYPE", "Only ZIP files are allowed", 400, {})

        key = f"{folder}/{uuid.uuid4()}.zip"

        try:
            signed_url = self._client.generate_presigned_url(
                "put_object",
                Params={"Bucket": self._bucket, "Key": key, "ContentType": content_type},
                ExpiresIn=self._upload_url_ttl_seconds,
            )
        except (BotoCoreError, ClientError) as exc:
            self._logger.error(
                "Presigned URL generation failed",
                extra={"key": key, "error": str(exc)},
            )
            raise ServiceError(
                "STORAGE_UNAVAILABLE",
                "Failed to generate pre-signed URL",
                502,
                {},
            ) from exc

        self._logger.info("Presigned upload URL issued", extra={"key": key, "folder": folder})
        return {"signedUrl": signed_url, "key": key}
