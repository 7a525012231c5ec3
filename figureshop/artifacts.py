"""
Storage for generated images.

Artifacts are referenced by their file name inside artifacts_dir; the
reference is what clients pass back when they check out.
"""
import re
import uuid
import logging
from pathlib import Path

from .errors import PersistenceError, ValidationError

logger = logging.getLogger(__name__)

_SAFE_REF = re.compile(r"^[A-Za-z0-9_-]+\.(png|jpg|jpeg|webp)$")


class ArtifactStore:
    """Generated image files on local disk."""

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def save(self, data: bytes, suffix: str = ".png") -> str:
        """Write image bytes and return the new artifact reference."""
        ref = f"{uuid.uuid4().hex}{suffix}"
        try:
            (self.root / ref).write_bytes(data)
        except OSError as e:
            raise PersistenceError(f"Error saving artifact: {e}") from e
        logger.info("Saved artifact %s (%d bytes)", ref, len(data))
        return ref

    def path(self, ref: str) -> Path:
        """Resolve a reference to its file path."""
        if not _SAFE_REF.match(ref or ""):
            raise ValidationError(f"Invalid artifact reference: {ref!r}")
        return self.root / ref

    def exists(self, ref: str) -> bool:
        try:
            return self.path(ref).is_file()
        except ValidationError:
            return False

    def read(self, ref: str) -> bytes:
        try:
            return self.path(ref).read_bytes()
        except OSError as e:
            raise PersistenceError(f"Error reading artifact {ref}: {e}") from e
