from __future__ import annotations

import os
from pathlib import Path
import re
from typing import Protocol

from docqa.errors import NotFoundError, ValidationError

_DOCUMENT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class ObjectStore(Protocol):
    def put(self, document_id: str, raw_bytes: bytes) -> None: ...

    def get(self, document_id: str) -> bytes: ...


class LocalObjectStore:
    """Original upload bytes on the local filesystem, one file per document id."""

    def __init__(self, root_dir: Path) -> None:
        self._root_dir = root_dir

    def _path_for(self, document_id: str) -> Path:
        if not _DOCUMENT_ID_PATTERN.match(document_id):
            raise ValidationError(f"Invalid document id: {document_id!r}")
        return self._root_dir / f"{document_id}.bin"

    def put(self, document_id: str, raw_bytes: bytes) -> None:
        path = self._path_for(document_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".bin.tmp")
        tmp_path.write_bytes(raw_bytes)
        os.replace(tmp_path, path)

    def get(self, document_id: str) -> bytes:
        path = self._path_for(document_id)
        if not path.exists():
            raise NotFoundError(f"no stored bytes for document_id={document_id}")
        return path.read_bytes()
