import logging
import shutil
import uuid
from pathlib import Path
from typing import Optional

from config import get_settings
from errors import ValidationFailed


logger = logging.getLogger(__name__)

ALLOWED_IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp"}
MAX_AVATAR_BYTES = 5 * 1024 * 1024
MEDIA_URL_PREFIX = "/media"


class MediaStorage:
    """Stores uploaded images under the media directory and hands back a URL path."""

    def __init__(self, root: Optional[Path] = None) -> None:
        self.root = Path(root) if root is not None else get_settings().media_dir

    def save(self, upload, folder: str = "avatars") -> str:
        """Persist an upload exposing `filename` and a binary `file` (e.g. UploadFile)."""
        ext = Path(upload.filename or "").suffix.lower()
        if ext not in ALLOWED_IMAGE_EXTENSIONS:
            raise ValidationFailed("Unsupported image format")

        target_dir = self.root / folder
        target_dir.mkdir(parents=True, exist_ok=True)
        name = f"{uuid.uuid4().hex}{ext}"
        target = target_dir / name

        with target.open("wb") as out:
            shutil.copyfileobj(upload.file, out)
        if target.stat().st_size > MAX_AVATAR_BYTES:
            target.unlink(missing_ok=True)
            raise ValidationFailed("Image is too large (max 5 MB)")

        logger.info(f"media_saved: path={folder}/{name}")
        return f"{MEDIA_URL_PREFIX}/{folder}/{name}"

    def path_for(self, url: str) -> Optional[Path]:
        if not url or not url.startswith(f"{MEDIA_URL_PREFIX}/"):
            return None
        relative = url[len(MEDIA_URL_PREFIX) + 1 :]
        candidate = (self.root / relative).resolve()
        if self.root.resolve() not in candidate.parents:
            return None
        return candidate

    def delete(self, url: Optional[str]) -> bool:
        path = self.path_for(url or "")
        if path is None or not path.exists():
            return False
        try:
            path.unlink()
        except OSError:
            logger.warning(f"media_delete_failed: path={path}")
            return False
        logger.info(f"media_deleted: path={path}")
        return True
