"""
Document Storage

Partner identity documents for joint account requests. The core stores only
the returned reference URL; bytes live behind the DocumentStore boundary.
"""

import re
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

from .errors import ValidationError


MAX_DOCUMENT_BYTES = 10 * 1024 * 1024


def _safe_name(filename: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]", "_", filename)[-100:] or "document"


class DocumentStore(ABC):

    def upload_document(self, data: bytes, filename: str, owner_id: Optional[str] = None) -> str:
        """Store the bytes and return a reference URL"""
        if not data:
            raise ValidationError("Document is empty")
        if len(data) > MAX_DOCUMENT_BYTES:
            raise ValidationError("Document exceeds the 10MB limit")
        key = f"{owner_id or 'anonymous'}/{uuid.uuid4().hex}-{_safe_name(filename)}"
        return self._put(key, data)

    @abstractmethod
    def _put(self, key: str, data: bytes) -> str:
        pass

    @abstractmethod
    def fetch_document(self, url: str) -> Optional[bytes]:
        pass


class InMemoryDocumentStore(DocumentStore):
    """Keeps uploads in a dict; for tests and development"""

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}

    def _put(self, key: str, data: bytes) -> str:
        url = f"memory://documents/{key}"
        self._blobs[url] = bytes(data)
        return url

    def fetch_document(self, url: str) -> Optional[bytes]:
        return self._blobs.get(url)


class LocalDocumentStore(DocumentStore):
    """Writes uploads under a root directory"""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _put(self, key: str, data: bytes) -> str:
        path = self.root / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path.resolve().as_uri()

    def fetch_document(self, url: str) -> Optional[bytes]:
        prefix = "file://"
        if not url.startswith(prefix):
            return None
        path = Path(url[len(prefix):])
        if self.root.resolve() not in path.parents or not path.exists():
            return None
        return path.read_bytes()


UploadedFile = Tuple[str, bytes]  # (filename, content)
