import logging
import re
import uuid
from pathlib import Path
from typing import Optional

from config import get_settings
from errors import MalformedInput, NotFound, StoreUnavailable


logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def receipt_path_for(
    user_id: str, filename: str, token: Optional[str] = None
) -> str:
    """Storage path ``<user>/<token>-<name>``; the token defaults to a uuid."""
    safe_name = _UNSAFE.sub("_", Path(filename).name) or "receipt"
    safe_user = _UNSAFE.sub("_", user_id) or "anonymous"
    return f"{safe_user}/{token or uuid.uuid4()}-{safe_name}"


class ReceiptStorage:
    def __init__(self, root: Optional[Path] = None) -> None:
        self.root = (root or get_settings().receipts_dir).resolve()

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root not in target.parents:
            raise MalformedInput(f"Invalid receipt path: {path!r}")
        return target

    def upload(self, path: str, data: bytes) -> str:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise StoreUnavailable(f"Receipt upload failed for {path}") from exc
        logger.info(f"receipt_uploaded: path={path} bytes={len(data)}")
        return path

    def read(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except FileNotFoundError as exc:
            raise NotFound(f"Receipt not found: {path}") from exc
        except OSError as exc:
            raise StoreUnavailable(f"Receipt read failed for {path}") from exc
