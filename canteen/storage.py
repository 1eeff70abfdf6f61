import asyncio
import logging
import os
import uuid
from pathlib import Path
from typing import Optional

from canteen import config
from canteen.errors import StoreError

logger = logging.getLogger(__name__)


def image_object_path(filename: Optional[str], folder: str = "menu-items") -> str:
    ext = filename.rsplit(".", 1)[-1].lower() if filename and "." in filename else "jpg"
    return f"{folder}/{uuid.uuid4()}.{ext}"


class ObjectStorage:
    """Public object bucket on the local filesystem, served under ``public_url``."""

    def __init__(self, root: Optional[str] = None, public_url: Optional[str] = None):
        self.root = Path(root or config.STORAGE_DIR).resolve()
        self.public_url = (public_url if public_url is not None else config.STORAGE_PUBLIC_URL).rstrip("/")

    def _resolve(self, path: str) -> Path:
        target = (self.root / path.lstrip("/")).resolve()
        if target != self.root and self.root not in target.parents:
            raise StoreError(f"Object path escapes storage root: {path}")
        return target

    def _write(self, target: Path, blob: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "wb") as buffer:
            buffer.write(blob)

    async def upload(self, path: str, blob: bytes) -> str:
        target = self._resolve(path)
        try:
            await asyncio.to_thread(self._write, target, blob)
        except OSError as e:
            raise StoreError(f"Upload of {path} failed: {e}") from e
        logger.info("Stored %s (%d bytes)", path, len(blob))
        return path

    async def remove(self, path: str) -> None:
        target = self._resolve(path)
        try:
            await asyncio.to_thread(os.remove, target)
        except FileNotFoundError:
            return
        except OSError as e:
            raise StoreError(f"Removing {path} failed: {e}") from e
        logger.info("Removed %s", path)

    def get_public_url(self, path: str) -> str:
        return f"{self.public_url}/{path.lstrip('/')}"

    def object_path(self, url: Optional[str]) -> Optional[str]:
        """Path of a stored object from its public URL, None for outside URLs."""
        prefix = f"{self.public_url}/"
        if not url or not url.startswith(prefix):
            return None
        return url[len(prefix):] or None
