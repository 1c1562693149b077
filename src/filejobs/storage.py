"""Local-directory byte store keyed by opaque location strings."""

import logging
import os
import re
import threading
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)

UPLOADS_DIR = "uploads"
RESULTS_DIR = "results"


def safe_file_name(name: str) -> str:
    """Reduce a client-supplied file name to a safe basename."""
    base = os.path.basename((name or "").replace("\\", "/"))
    base = re.sub(r"[^A-Za-z0-9._-]+", "_", base).strip("._")
    return base or "upload"


class FileStorage:
    """Byte-addressable store rooted at a directory.

    Locations are relative keys such as ``uploads/<id>_photo.png`` or
    ``results/<id>.jpg``; a key resolving outside the root is refused.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).resolve()
        (self.root / UPLOADS_DIR).mkdir(parents=True, exist_ok=True)
        (self.root / RESULTS_DIR).mkdir(parents=True, exist_ok=True)

    def path_for(self, location: str) -> Path:
        path = (self.root / location).resolve()
        if path != self.root and self.root not in path.parents:
            raise ValueError(f"Location escapes storage root: {location}")
        return path

    def load(self, location: str) -> bytes:
        """Read a stored file.

        Raises:
            FileNotFoundError: If nothing is stored at ``location``
        """
        path = self.path_for(location)
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {location}")
        return path.read_bytes()

    def save(self, location: str, data: bytes) -> None:
        """Write ``data`` at ``location``, replacing any previous content."""
        path = self.path_for(location)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so readers never see a half-written result
        tmp_path = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        try:
            tmp_path.write_bytes(data)
            os.replace(tmp_path, path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise

    def exists(self, location: str) -> bool:
        return self.path_for(location).is_file()

    def delete(self, location: str) -> None:
        path = self.path_for(location)
        path.unlink(missing_ok=True)
        logger.debug(f"Deleted {location}")
