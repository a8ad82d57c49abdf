from pathlib import Path
from typing import Protocol

from doc_translator.errors import StorageError


class Storage(Protocol):
    def fetch(self, path: str) -> bytes: ...

    def store(self, path: str, data: bytes, content_type: str) -> None: ...


class LocalStorage:
    """Bucket-like storage rooted at a directory. ``store`` overwrites."""

    def __init__(self, root: str) -> None:
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if not target.is_relative_to(self.root.resolve()):
            raise StorageError(f"path escapes storage root: {path}")
        return target

    def fetch(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except OSError as exc:
            raise StorageError(f"Failed to download file: {exc}") from exc

    def store(self, path: str, data: bytes, content_type: str) -> None:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(target.name + ".part")
            tmp.write_bytes(data)
            tmp.replace(target)
        except OSError as exc:
            raise StorageError(f"Failed to upload file: {exc}") from exc
