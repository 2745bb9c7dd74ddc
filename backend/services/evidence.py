"""
Evidence storage collaborator.

Audit execution hands raw uploaded files to an EvidenceStore and keeps only
the returned storage paths. Signed URLs are produced on demand for display.
"""
import asyncio
import hashlib
import hmac
import os
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

from backend.config import get_settings
from backend.services.exceptions import EvidenceRejectedError

settings = get_settings()


@dataclass
class EvidenceRef:
    path: str
    signed_url: str

class EvidenceStore(ABC):
    """Turns uploaded bytes into stable storage references"""

    # Largest accepted file in bytes; None means no limit
    max_file_size: Optional[int] = None

    def check_size(self, content: bytes) -> None:
        if self.max_file_size is not None and len(content) > self.max_file_size:
            raise EvidenceRejectedError(
                f"Evidence file too large (max {self.max_file_size / (1024 * 1024):g} MB)"
            )

    @abstractmethod
    async def store(self, audit_id: int, item_id: str, filename: str, content: bytes) -> EvidenceRef:
        pass

    @abstractmethod
    def signed_url(self, path: str, expires_in: Optional[int] = None) -> str:
        pass


class LocalEvidenceStore(EvidenceStore):
    """Files on local disk under EVIDENCE_DIR/<audit_id>/<item_id>/, HMAC-signed download links"""

    def __init__(
        self,
        root: Optional[str] = None,
        secret: Optional[str] = None,
        base_url: str = "/api/evidence",
        max_file_size: Optional[int] = None,
    ):
        self.root = root or settings.EVIDENCE_DIR
        self.secret = (secret or settings.EVIDENCE_URL_SECRET).encode()
        self.base_url = base_url
        self.max_file_size = settings.MAX_EVIDENCE_FILE_SIZE if max_file_size is None else max_file_size

    async def store(self, audit_id: int, item_id: str, filename: str, content: bytes) -> EvidenceRef:
        self.check_size(content)

        ext = os.path.splitext(filename)[1].lower()
        path = f"{audit_id}/{item_id}/{uuid.uuid4().hex}{ext}"
        full_path = os.path.join(self.root, path)

        def _write():
            os.makedirs(os.path.dirname(full_path), exist_ok=True)
            with open(full_path, "wb") as f:
                f.write(content)

        # Blocking file IO, run in executor
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _write)
        return EvidenceRef(path=path, signed_url=self.signed_url(path))

    def _signature(self, path: str, expires: int) -> str:
        message = f"{path}:{expires}".encode()
        return hmac.new(self.secret, message, hashlib.sha256).hexdigest()

    def signed_url(self, path: str, expires_in: Optional[int] = None) -> str:
        expires = int(time.time()) + (expires_in or settings.EVIDENCE_URL_TTL_SECONDS)
        query = urlencode({"expires": expires, "signature": self._signature(path, expires)})
        return f"{self.base_url}/{path}?{query}"

    def verify(self, path: str, expires: int, signature: str) -> bool:
        if expires < time.time():
            return False
        return hmac.compare_digest(self._signature(path, expires), signature)
