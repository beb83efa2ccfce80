# object_storage.py
import asyncio
import hashlib
import logging
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Set, TypeVar

import config
from errors import StorageError
from validation import sanitize_filename

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class StoredObject:
    path: str
    url: str
    size: int


def user_key(user_id: str) -> str:
    """Directory name for a user; identity ids can hold any character, so they are hashed."""
    return hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:32]


class LocalObjectStorage:
    """Object storage backed by a directory; paths mirror the bucket layout
    ``users/<user_key>/csv/<name>_<epoch_ms>_<nonce>.csv``.

    A worker thread cannot be cancelled, so an upload that times out keeps
    writing. Its file is removed in the background once the thread ends;
    :meth:`wait_for_cleanups` awaits those removals.
    """

    def __init__(self, root: Path, public_base_url: str = config.STORAGE_PUBLIC_BASE_URL,
                 timeout: float = config.STORAGE_TIMEOUT_SECONDS):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")
        self.timeout = timeout
        self._cleanups: Set[asyncio.Task] = set()

    def ensure_root(self):
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        full_path = (self.root / path).resolve()
        if self.root.resolve() not in full_path.parents:
            raise StorageError("resolve", path, f"Path '{path}' escapes the storage root")
        return full_path

    async def _run(self, operation: str, path: Optional[str], func: Callable[[], T],
                   on_timeout: Optional[Callable[[], None]] = None) -> T:
        worker = asyncio.ensure_future(asyncio.to_thread(func))
        try:
            return await asyncio.wait_for(asyncio.shield(worker), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            if on_timeout is not None:
                task = asyncio.ensure_future(self._clean_up_after(worker, path, on_timeout))
                self._cleanups.add(task)
                task.add_done_callback(self._cleanups.discard)
            raise StorageError(operation, path, f"Object storage {operation} timed out after {self.timeout}s") from exc
        except OSError as exc:
            raise StorageError(operation, path, f"Object storage {operation} failed: {exc}") from exc

    async def _clean_up_after(self, worker: asyncio.Future, path: Optional[str], cleanup: Callable[[], None]):
        await asyncio.wait([worker])
        if not worker.cancelled() and worker.exception() is not None:
            logger.warning("Timed-out storage write of %s failed: %s", path, worker.exception())
        try:
            await asyncio.to_thread(cleanup)
        except OSError:
            logger.exception("Orphaned storage artifact %s could not be removed", path)
            return
        logger.info("Removed artifact %s left by a timed-out write", path)

    async def wait_for_cleanups(self):
        if self._cleanups:
            await asyncio.gather(*list(self._cleanups))

    def url_for(self, path: str) -> str:
        return f"{self.public_base_url}/{path}"

    def new_csv_path(self, user_id: str, file_name: str) -> str:
        return f"users/{user_key(user_id)}/csv/{sanitize_filename(file_name)}_{int(time.time() * 1000)}_{secrets.token_hex(4)}.csv"

    async def upload_csv(self, user_id: str, file_name: str, content: bytes) -> StoredObject:
        path = self.new_csv_path(user_id, file_name)
        full_path = self._resolve(path)

        def write():
            full_path.parent.mkdir(parents=True, exist_ok=True)
            full_path.write_bytes(content)

        await self._run("upload", path, write, on_timeout=lambda: full_path.unlink(missing_ok=True))
        logger.info("CSV uploaded to object storage: %s (%d bytes)", path, len(content))
        return StoredObject(path=path, url=self.url_for(path), size=len(content))

    async def download(self, path: str) -> bytes:
        full_path = self._resolve(path)
        return await self._run("download", path, full_path.read_bytes)

    async def delete(self, path: str):
        full_path = self._resolve(path)
        await self._run("delete", path, lambda: full_path.unlink(missing_ok=True))
        logger.info("Object storage file deleted: %s", path)


object_storage = LocalObjectStorage(config.STORAGE_ROOT)
