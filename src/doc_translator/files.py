import logging
import mimetypes
from uuid import uuid4

import fitz

from doc_translator.db import Database, now_iso
from doc_translator.schemas import FileRecord
from doc_translator.storage import Storage

logger = logging.getLogger(__name__)


def safe_filename(filename: str) -> str:
    cleaned = "".join(ch if ch.isalnum() or ch in "._-" else "_" for ch in filename)
    return cleaned.strip("._") or "upload"


def count_pdf_pages(data: bytes) -> int:
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except Exception as exc:
        logger.warning("Could not open PDF for page count: %s", exc)
        return 0
    try:
        return len(doc)
    finally:
        doc.close()


class FileCatalog:
    """Uploaded source files, scoped to their owner."""

    def __init__(self, db: Database, storage: Storage) -> None:
        self.db = db
        self.storage = storage

    def add(self, owner_id: str, filename: str, data: bytes, mime_type: str | None = None) -> FileRecord:
        file_id = str(uuid4())
        name = safe_filename(filename)
        path = f"{owner_id}/{file_id}-{name}"
        mime = mime_type or mimetypes.guess_type(name)[0] or "application/octet-stream"
        page_count = count_pdf_pages(data) if name.lower().endswith(".pdf") else 0

        self.storage.store(path, data, mime)
        row = {
            "file_id": file_id,
            "owner_id": owner_id,
            "filename": name,
            "file_path": path,
            "file_size": len(data),
            "mime_type": mime,
            "page_count": page_count,
            "created_at": now_iso(),
        }
        with self.db.transaction() as conn:
            conn.execute(
                f"INSERT INTO files ({', '.join(row)}) VALUES ({', '.join('?' for _ in row)})",
                tuple(row.values()),
            )
        return FileRecord(**row)

    def get_owned(self, file_id: str, owner_id: str) -> FileRecord | None:
        with self.db.reader() as conn:
            row = conn.execute("SELECT * FROM files WHERE file_id=? AND owner_id=?", (file_id, owner_id)).fetchone()
        return FileRecord(**dict(row)) if row else None

    def list_for_owner(self, owner_id: str) -> list[FileRecord]:
        with self.db.reader() as conn:
            rows = conn.execute("SELECT * FROM files WHERE owner_id=? ORDER BY created_at DESC", (owner_id,)).fetchall()
        return [FileRecord(**dict(r)) for r in rows]
