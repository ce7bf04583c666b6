"""Unsigned image uploads to a Cloudinary-style media host."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from pathlib import Path

import aiohttp

from .settings import ClientConfig
from .validators import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_UPLOAD_BASE_URL = "https://api.cloudinary.com/v1_1"
MAX_IMAGE_BYTES = 5 * 1024 * 1024
IMAGE_EXTENSIONS = ("jpg", "jpeg", "png", "gif", "webp")


class UploadError(Exception):
    pass


def validate_image_file(path: Path | str, max_bytes: int = MAX_IMAGE_BYTES) -> Path:
    image_path = Path(path)
    if not image_path.is_file():
        raise ValidationError("Image file does not exist")
    if image_path.suffix.lower().lstrip(".") not in IMAGE_EXTENSIONS:
        raise ValidationError("Invalid image format. Supported: JPG, PNG, GIF, WebP")
    if image_path.stat().st_size > max_bytes:
        raise ValidationError(f"Image size must be less than {max_bytes // (1024 * 1024)} MB")
    return image_path


def optimized_url(url: str, *, width: int | None = None, height: int | None = None, quality: str = "auto") -> str:
    """Insert resize/quality transforms after ``/upload/`` in a hosted URL.

    URLs that are not served by the media host are returned unchanged.
    """

    if "cloudinary.com" not in url:
        return url
    marker = "/upload/"
    index = url.find(marker)
    if index == -1:
        return url

    transforms = []
    if width is not None:
        transforms.append(f"w_{width}")
    if height is not None:
        transforms.append(f"h_{height}")
    transforms.extend(["c_fill", f"q_{quality}", "f_auto"])
    split = index + len(marker)
    return f"{url[:split]}{','.join(transforms)}/{url[split:]}"


def thumbnail_url(url: str) -> str:
    return optimized_url(url, width=200, height=200)


def medium_url(url: str) -> str:
    return optimized_url(url, width=800, height=800, quality="good")


class MediaUploader:
    def __init__(
        self,
        cloud_name: str,
        upload_preset: str,
        *,
        base_url: str = DEFAULT_UPLOAD_BASE_URL,
        max_bytes: int = MAX_IMAGE_BYTES,
        timeout_s: float | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.cloud_name = cloud_name
        self.upload_preset = upload_preset
        self.base_url = base_url
        self.max_bytes = max_bytes
        self._timeout = None if timeout_s is None else aiohttp.ClientTimeout(total=timeout_s)
        self._session = session

    @classmethod
    def from_config(cls, config: ClientConfig) -> "MediaUploader | None":
        """Build an uploader, or return ``None`` when no media host is configured."""

        if not config.cloud_name or not config.upload_preset:
            return None
        return cls(
            config.cloud_name,
            config.upload_preset,
            base_url=config.upload_base_url,
            max_bytes=config.max_image_bytes,
            timeout_s=config.request_timeout_s,
        )

    @property
    def upload_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.cloud_name}/image/upload"

    async def upload_image(self, path: Path | str, *, folder: str | None = None) -> str:
        """Upload ``path`` and return the host's secure URL for it."""

        image_path = validate_image_file(path, self.max_bytes)
        content_type = mimetypes.guess_type(image_path.name)[0] or "application/octet-stream"
        options = {} if self._timeout is None else {"timeout": self._timeout}

        session = self._session or aiohttp.ClientSession()
        try:
            with image_path.open("rb") as handle:
                form = aiohttp.FormData()
                form.add_field("upload_preset", self.upload_preset)
                if folder:
                    form.add_field("folder", folder)
                form.add_field("file", handle, filename=image_path.name, content_type=content_type)
                async with session.post(self.upload_url, data=form, **options) as response:
                    if response.status != 200:
                        raise UploadError(f"Upload failed with status: {response.status}")
                    payload = await response.json(content_type=None)
        except asyncio.TimeoutError as exc:
            raise UploadError("Upload timed out") from exc
        except aiohttp.ClientError as exc:
            raise UploadError(f"Failed to upload image: {exc}") from exc
        except ValueError as exc:
            raise UploadError(f"Invalid response from media host: {exc}") from exc
        finally:
            if self._session is None:
                await session.close()

        secure_url = payload.get("secure_url") if isinstance(payload, dict) else None
        if not isinstance(secure_url, str) or not secure_url:
            raise UploadError("No URL returned from media host")
        logger.info("uploaded %s to %s", image_path.name, folder or "/")
        return secure_url

    async def upload_chat_image(self, conv_id: str, path: Path | str) -> str:
        return await self.upload_image(path, folder=f"chats/{conv_id}")

    async def upload_profile_photo(self, user_id: str, path: Path | str) -> str:
        return await self.upload_image(path, folder=f"profiles/{user_id}")
