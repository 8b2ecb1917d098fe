"""
Image Store - Durable, content-addressable storage for submitted photos

The default store writes to the local filesystem under IMAGE_STORE_PATH,
keyed by the SHA-256 of the bytes, and serves them from IMAGE_BASE_URL.
"""
import logging
import os
from dataclasses import dataclass
from typing import Optional

from ecoverify.config import settings
from ecoverify.utils import sha256_hex

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png"}


@dataclass
class StoredImage:
    url: str
    content_hash: str
    path: Optional[str] = None


class ImageStore:
    """Contract for image storage backends"""

    def store(
        self,
        data: bytes,
        owner_id: str,
        filename: Optional[str] = None
    ) -> StoredImage:
        raise NotImplementedError


class LocalImageStore(ImageStore):
    """Filesystem store; identical bytes map to the same file"""

    def __init__(self, root: Optional[str] = None, base_url: Optional[str] = None):
        self.root = root or settings.IMAGE_STORE_PATH
        self.base_url = (base_url or settings.IMAGE_BASE_URL).rstrip("/")

    def store(self, data, owner_id, filename=None):
        content_hash = sha256_hex(data)
        ext = os.path.splitext(filename or "")[1].lower()
        if ext not in ALLOWED_EXTENSIONS:
            ext = ".jpg"

        name = f"{content_hash}{ext}"
        subdir = content_hash[:2]
        directory = os.path.join(self.root, subdir)
        os.makedirs(directory, exist_ok=True)

        path = os.path.join(directory, name)
        if not os.path.exists(path):
            tmp_path = f"{path}.{owner_id}.tmp"
            with open(tmp_path, "wb") as f:
                f.write(data)
            os.replace(tmp_path, path)
            logger.debug(f"Stored image {name} for user {owner_id}")

        return StoredImage(
            url=f"{self.base_url}/{subdir}/{name}",
            content_hash=content_hash,
            path=path
        )


# Singleton instance
image_store = LocalImageStore()
