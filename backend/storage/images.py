"""
Image Storage — coral images on the local filesystem.

Layout under ``uploads_dir``:
  uncategorized/<file>
  corals/<category-slug>/<file>

Relative paths (``corals/sps/abc.jpg``) are what Coral.image_url stores.
Every resolved path must stay inside the uploads directory.
"""

import errno
import os
import re
import secrets
import shutil
import time
from datetime import datetime
from pathlib import Path, PurePosixPath

import structlog

from core.errors import NotFoundError, ValidationError

logger = structlog.get_logger()

UNCATEGORIZED = "uncategorized"
CORALS_DIR = "corals"
ALLOWED_IMAGE_TYPES = (".jpg", ".jpeg", ".png", ".webp")

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def sanitize_category_name(name: str) -> str:
    """'Soft Corals!' → 'soft-corals'."""
    return _SLUG_RE.sub("-", (name or "").lower()).strip("-")


def validate_filename(filename: str) -> str:
    """Reject traversal, nested or absolute paths, and non-image extensions."""
    if not filename or ".." in filename or "/" in filename or "\\" in filename:
        raise ValidationError("Invalid file path: Path traversal detected")
    if os.path.isabs(filename):
        raise ValidationError("Invalid file path: Absolute paths not allowed")
    if Path(filename).suffix.lower() not in ALLOWED_IMAGE_TYPES:
        raise ValidationError("Invalid file type")
    return filename


def category_path(category: str) -> str:
    """Relative directory for a category name or slug."""
    slug = sanitize_category_name(category)
    if not slug:
        raise ValidationError("Category is required")
    if slug == UNCATEGORIZED:
        return UNCATEGORIZED
    return f"{CORALS_DIR}/{slug}"


def generate_secure_filename(original_filename: str) -> str:
    suffix = Path(original_filename).suffix.lower()
    return f"{int(time.time() * 1000)}-{secrets.token_hex(8)}{suffix}"


def _move_file(source: Path, target: Path) -> None:
    try:
        os.rename(source, target)
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise
        shutil.copy2(source, target)
        os.unlink(source)


class ImageStore:
    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir).resolve()

    def resolve(self, relative_path: str) -> Path:
        """Absolute path for a relative image path, confined to the uploads directory."""
        full_path = (self.base_dir / relative_path).resolve()
        if not full_path.is_relative_to(self.base_dir):
            raise ValidationError("Invalid operation: File must be within uploads directory")
        return full_path

    def relative_path(self, category: str, filename: str) -> str:
        return str(PurePosixPath(category_path(category)) / validate_filename(filename))

    def list_images(self, in_use: set[str] | None = None) -> list[dict]:
        """Every stored image, newest first."""
        in_use = in_use or set()
        directories = [UNCATEGORIZED]
        corals_dir = self.base_dir / CORALS_DIR
        if corals_dir.is_dir():
            directories += [f"{CORALS_DIR}/{entry.name}" for entry in sorted(corals_dir.iterdir()) if entry.is_dir()]

        images = []
        for directory in directories:
            folder = self.base_dir / directory
            if not folder.is_dir():
                continue
            category = UNCATEGORIZED if directory == UNCATEGORIZED else directory.split("/", 1)[1]
            for entry in folder.iterdir():
                if not entry.is_file() or entry.suffix.lower() not in ALLOWED_IMAGE_TYPES:
                    continue
                stats = entry.stat()
                relative = f"{directory}/{entry.name}"
                images.append(
                    {
                        "filename": entry.name,
                        "category": category,
                        "relative_path": relative,
                        "size": stats.st_size,
                        "type": entry.suffix.lstrip(".").lower(),
                        "created_at": datetime.utcfromtimestamp(stats.st_mtime),
                        "in_use": relative in in_use,
                    }
                )
        images.sort(key=lambda image: image["created_at"], reverse=True)
        return images

    def move_image(self, filename: str, source_category: str, target_category: str) -> str:
        """
        Move an image between category folders. Returns the new relative path.

        Raises:
          ValidationError — bad filename, same folder, or target already exists
          NotFoundError   — source image missing
        """
        source_relative = self.relative_path(source_category, filename)
        target_relative = self.relative_path(target_category, filename)
        if source_relative == target_relative:
            raise ValidationError(f"Image is already in {category_path(target_category)}")

        source = self.resolve(source_relative)
        target = self.resolve(target_relative)
        if not source.is_file():
            raise NotFoundError("Image not found")
        if target.exists():
            raise ValidationError("An image with this name already exists in the target category")

        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            _move_file(source, target)
        except OSError as exc:
            logger.error("images.move_failed", source=source_relative, target=target_relative, error=str(exc))
            raise ValidationError("Error moving image", errors=[{"field": "filename", "message": str(exc)}]) from exc

        logger.info("images.moved", source=source_relative, target=target_relative)
        return target_relative

    def delete_image(self, filename: str, category: str) -> None:
        relative = self.relative_path(category, filename)
        path = self.resolve(relative)
        if not path.is_file():
            raise NotFoundError("Image not found")
        path.unlink()
        logger.info("images.deleted", path=relative)
