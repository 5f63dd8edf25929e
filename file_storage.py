"""file_storage.py

Local-disk blob store for message attachments.

Files are written under ``upload_root`` as ``<uuid><ext>`` and addressed by
the URL ``/uploads/<uuid><ext>``. Lookups only ever resolve a bare file name
inside the root, so a crafted URL cannot escape it.
"""

from __future__ import annotations

import logging
import mimetypes
import os
import uuid
from typing import Optional

from werkzeug.utils import secure_filename

URL_PREFIX = "/uploads/"


def guess_content_type(file_name: str) -> str:
    ctype, _ = mimetypes.guess_type(file_name or "")
    return ctype or "application/octet-stream"


class LocalBlobStore:
    def __init__(self, upload_root: str):
        self.upload_root = os.path.abspath(upload_root)
        os.makedirs(self.upload_root, exist_ok=True)

    def put(self, data: bytes, file_name: str) -> str:
        safe_name = secure_filename(file_name or "") or "upload.bin"
        _, ext = os.path.splitext(safe_name)
        stored = f"{uuid.uuid4()}{ext.lower()}"
        with open(os.path.join(self.upload_root, stored), "wb") as f:
            f.write(data)
        logging.debug("Stored upload %s (%d bytes) as %s", safe_name, len(data), stored)
        return URL_PREFIX + stored

    def get(self, url: str) -> Optional[bytes]:
        path = self._path_for(url)
        if path is None or not os.path.isfile(path):
            return None
        with open(path, "rb") as f:
            return f.read()

    def delete(self, url: str) -> None:
        path = self._path_for(url)
        if path is not None and os.path.isfile(path):
            os.remove(path)
            logging.debug("Removed upload %s", os.path.basename(path))

    def _path_for(self, url: str) -> Optional[str]:
        name = os.path.basename(str(url or ""))
        if not name or name != secure_filename(name):
            return None
        return os.path.join(self.upload_root, name)
