"""Image attachment uploads for chat messages."""

from __future__ import annotations

import logging
import mimetypes
import time
from pathlib import Path
from typing import Any, Optional
from urllib.parse import unquote, urlparse

from curl_cffi import CurlMime
from curl_cffi.requests import Session

from .errors import UploadError

logger = logging.getLogger(__name__)

DEFAULT_UPLOAD_FOLDER = "chat_images"
REMOTE_SCHEMES = {"http", "https"}


def is_remote_url(value: Optional[str]) -> bool:
    """True for references other devices can load (``http``/``https`` URLs)."""

    if not value:
        return False
    return urlparse(value.strip()).scheme.lower() in REMOTE_SCHEMES


def local_path_from_uri(uri: str) -> Path:
    """Map ``file://`` URIs and plain paths to a filesystem path."""

    parsed = urlparse(uri)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    return Path(uri).expanduser()


def build_upload_filename(conversation_id: str, local_path: Path) -> str:
    extension = local_path.suffix.lstrip(".").lower() or "jpg"
    millis = int(time.time() * 1000)
    return f"chat_{conversation_id}_{millis}.{extension}"


class MediaUploader:
    """Upload images to a Cloudinary-style unsigned upload endpoint."""

    def __init__(
        self,
        upload_url: str,
        upload_preset: str,
        proxies: Optional[dict] = None,
        request_timeout: float = 60.0,
    ) -> None:
        if not upload_url:
            raise ValueError("upload_url must be provided")
        self.upload_url = upload_url
        self.upload_preset = upload_preset
        self.proxies = proxies
        self.request_timeout = request_timeout
        self.session: Any = None

    def __enter__(self) -> "MediaUploader":
        self.session = Session(
            impersonate="chrome", timeout=self.request_timeout, proxies=self.proxies
        )
        return self

    def __exit__(self, *args) -> None:
        if self.session is not None:
            self.session.close()

    def upload(
        self,
        local_uri: str,
        folder_hint: str = DEFAULT_UPLOAD_FOLDER,
        conversation_id: str = "",
    ) -> str:
        """
        Upload the file behind ``local_uri`` and return its public URL.

        Args:
            local_uri (str): ``file://`` URI or path of the image on this device.
            folder_hint (str): Remote folder the image is filed under.
            conversation_id (str): Used to build a recognisable file name.

        Returns:
            str: The ``secure_url`` reported by the upload service.

        Raises:
            UploadError: If the file is unreadable, the request fails or the
                response carries no ``secure_url``.
        """
        if self.session is None:
            raise UploadError("upload session is not open")

        local_path = local_path_from_uri(local_uri)
        if not local_path.is_file():
            raise UploadError(f"attachment {local_uri} is not a readable file")

        filename = build_upload_filename(conversation_id or "unknown", local_path)
        content_type = mimetypes.guess_type(local_path.name)[0] or "image/jpeg"
        multipart = CurlMime()
        multipart.addpart(
            name="file",
            content_type=content_type,
            filename=filename,
            local_path=str(local_path),
        )
        try:
            response = self.session.post(
                self.upload_url,
                data={"upload_preset": self.upload_preset, "folder": folder_hint},
                multipart=multipart,
                headers={"Accept": "application/json"},
            )
        except Exception as exc:
            raise UploadError(f"upload of {local_uri} failed: {exc}") from exc
        finally:
            multipart.close()

        try:
            payload = response.json()
        except Exception as exc:
            raise UploadError(f"upload service returned invalid JSON: {exc}") from exc

        secure_url = payload.get("secure_url") if isinstance(payload, dict) else None
        if not secure_url:
            raise UploadError(f"upload service did not return a URL: {payload}")

        logger.info("Uploaded attachment %s to %s", filename, secure_url)
        return secure_url
