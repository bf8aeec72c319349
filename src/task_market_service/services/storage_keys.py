"""Storage key normalization, validation and delivery URL mapping."""

from __future__ import annotations

import re
from urllib.parse import unquote, urlsplit

from task_market_service.core.exceptions import ServiceError

_DOUBLE_SLASH_RE = re.compile(r"/{2,}")


def _strip_base(base_url: str) -> str:
    return base_url.strip().rstrip("/")


def extract_key(file_url: str, delivery_base_url: str | None = None) -> str:
    """
    Recover the storage key from a raw key, an S3 URL or a delivery URL.

    Examples:
        "uploads/a.zip" -> "uploads/a.zip"
        "/uploads/a.zip" -> "uploads/a.zip"
        "https://bucket.s3.amazonaws.com/uploads/a.zip" -> "uploads/a.zip"
        "https://cdn.example.net/uploads/a.zip" -> "uploads/a.zip"
    """
    value = file_url.strip()

    if delivery_base_url:
        base = _strip_base(delivery_base_url)
        if value.startswith(f"{base}/"):
            return value[len(base) :].lstrip("/")

    if "://" in value:
        return unquote(urlsplit(value).path).lstrip("/")

    return value.lstrip("/")


def validate_key(key: str, folder: str) -> bool:
    """True if key is a ZIP object directly named under folder/."""
    prefix = f"{folder}/"
    if not key.startswith(prefix) or "//" in key:
        return False
    name = key[len(prefix) :]
    return name.lower().endswith(".zip") and len(name) > len(".zip")


def to_delivery_url(key: str, delivery_base_url: str) -> str:
    """Join the delivery base and the key, collapsing doubled slashes in the path."""
    base = _strip_base(delivery_base_url)
    path = _DOUBLE_SLASH_RE.sub("/", key.lstrip("/"))
    return f"{base}/{path}"


class DeliveryUrlMapper:
    """Maps between storage keys and public delivery URLs for one CDN base."""

    _FOLDER_MESSAGES = {
        "uploads": "Invalid file URL. Must be a ZIP file in uploads/ folder",
        "submissions": "Invalid file URL. Must be a ZIP file in submissions/ folder",
    }

    def __init__(self, base_url: str) -> None:
        self._base_url = _strip_base(base_url)

    @property
    def base_url(self) -> str:
        return self._base_url

    def extract_key(self, file_url: str) -> str:
        return extract_key(file_url, self._base_url)

    def to_delivery_url(self, key: str) -> str:
        return to_delivery_url(key, self._base_url)

    def resolve(self, file_url: object, folder: str) -> tuple[str, str]:
        """
        Normalize a client-supplied file reference for the given folder.

        Returns:
            (storage key, delivery URL)

        Raises:
            ServiceError: INVALID_STORAGE_KEY if the reference is not a ZIP in folder.
        """
        if not isinstance(file_url, str) or not file_url.strip():
            raise ServiceError("INVALID_PAYLOAD", "fileUrl is required", 400, {})

        key = self.extract_key(file_url)
        if not validate_key(key, folder):
            raise ServiceError(
                "INVALID_STORAGE_KEY",
                self._FOLDER_MESSAGES.get(folder, "Invalid file URL"),
                400,
                {"key": key},
            )
        return key, self.to_delivery_url(key)
