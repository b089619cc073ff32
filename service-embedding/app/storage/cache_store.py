"""On-disk, content-addressed cache for embedding vectors.

Entries live under ``<root>/embeddings/<md5(text)>``, one JSON list per file.
The store also hands out scratch files under ``<root>/<YYYY>/<MM>/<DD>/`` that
the embedding pipeline streams batch output into.

Notes
- Keys are hashed with MD5 purely for addressing; collisions are not detected
- Entries never expire; ``clear`` is the only way to drop them
- Blocking file IO runs in worker threads via ``asyncio.to_thread``
"""

import asyncio
import hashlib
import json
import os
import shutil
import uuid
from datetime import date
from pathlib import Path
from typing import IO, Any, Callable, List, Optional, Sequence, Set, Tuple, Union
import structlog

logger = structlog.get_logger("embedding_service.cache_store")

Vector = List[float]


def is_vector(value: Any) -> bool:
    """True for a non-empty list of plain numbers (booleans excluded)."""
    return (
        isinstance(value, list)
        and bool(value)
        and all(isinstance(x, (int, float)) and not isinstance(x, bool) for x in value)
    )


class ScratchHandle:
    """An open scratch file owned by a single pipeline call.

    Once sealed, further writes and checkpoints are dropped. ``pending`` holds
    the worker-thread IO still running against the handle.
    """

    def __init__(self, path: Path, stream: IO[bytes]):
        self.path = path
        self.stream = stream
        self.sealed = False
        self.pending: Set[asyncio.Future] = set()

    @property
    def checkpoint_path(self) -> Path:
        return self.path.with_suffix(".ckpt")

    @property
    def closed(self) -> bool:
        return self.stream.closed


class EmbeddingsCacheStore:
    """Content-addressable vector cache plus scratch-space helpers.

    Parameters
    - root: Storage root directory (created lazily)
    - namespace: Sub-directory holding cache entries
    """

    def __init__(self, root: Union[str, Path] = ".cache", namespace: str = "embeddings"):
        self.root = Path(root).resolve()
        self.namespace = namespace

    @staticmethod
    def hash_key(key: str) -> str:
        """Map an arbitrary key to its on-disk identifier."""
        return hashlib.md5(key.encode("utf-8")).hexdigest()

    @property
    def entries_dir(self) -> Path:
        return self.root / self.namespace

    def entry_path(self, key: str) -> Path:
        return self.entries_dir / self.hash_key(key)

    # Cache entries

    async def mget(self, keys: Sequence[str]) -> List[Optional[Vector]]:
        """Return the cached vector for each key, or ``None`` when absent.

        Failures are isolated per key: an unreadable or corrupt entry is
        reported as a miss without affecting the others.
        """
        return list(await asyncio.gather(*(self._get(key) for key in keys)))

    async def _get(self, key: str) -> Optional[Vector]:
        path = self.entry_path(key)
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.debug("Cache read failed", path=str(path), error=str(e))
            return None

        try:
            value = json.loads(data)
        except ValueError as e:
            logger.debug("Cache entry unparseable", path=str(path), error=str(e))
            return None

        if not is_vector(value):
            return None
        return value

    async def mset(self, pairs: Sequence[Tuple[str, Vector]]) -> None:
        """Persist each ``(key, vector)`` pair.

        Writes are independent; one failing write is logged and does not stop
        the rest.
        """
        results = await asyncio.gather(
            *(asyncio.to_thread(self._write_entry, key, value) for key, value in pairs),
            return_exceptions=True,
        )
        for (key, _), result in zip(pairs, results):
            if isinstance(result, Exception):
                logger.warning(
                    "Cache write failed",
                    key_hash=self.hash_key(key),
                    error=str(result)
                )

    def _write_entry(self, key: str, value: Vector) -> None:
        path = self.entry_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            tmp_path.write_bytes(json.dumps(value).encode("utf-8"))
            os.replace(tmp_path, path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    async def clear(self) -> None:
        """Remove every stored entry and scratch file."""
        await asyncio.to_thread(shutil.rmtree, self.root, True)
        logger.info("Cache cleared", root=str(self.root))

    # Scratch space

    def scratch_dir(self, today: Optional[date] = None) -> Path:
        """Date-partitioned scratch directory, ``<root>/YYYY/MM/DD``."""
        today = today or date.today()
        return self.root / f"{today.year:04d}" / f"{today.month:02d}" / f"{today.day:02d}"

    async def open_scratch(self) -> ScratchHandle:
        """Create a fresh, uniquely named scratch file and open it for writing."""
        return await asyncio.to_thread(self._open_scratch)

    def _open_scratch(self) -> ScratchHandle:
        directory = self.scratch_dir()
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{uuid.uuid4()}.tmp"
        return ScratchHandle(path, open(path, "xb"))

    async def _run_tracked(self, handle: ScratchHandle, func: Callable[..., Any], *args: Any) -> Any:
        # Shielded so a cancelled caller leaves the thread's future visible to close().
        future = asyncio.ensure_future(asyncio.to_thread(func, *args))
        handle.pending.add(future)
        future.add_done_callback(handle.pending.discard)
        return await asyncio.shield(future)

    async def write(self, handle: ScratchHandle, data: bytes) -> None:
        """Append ``data`` to the scratch file; a sealed handle ignores it."""
        if handle.sealed:
            return
        await self._run_tracked(handle, handle.stream.write, data)

    async def close(self, handle: ScratchHandle) -> None:
        """Seal the handle, wait for in-flight IO, then close the stream.

        Closing twice is a no-op.
        """
        handle.sealed = True
        while handle.pending:
            await asyncio.gather(*list(handle.pending), return_exceptions=True)
        if not handle.closed:
            await asyncio.to_thread(handle.stream.close)

    async def store_checkpoint(self, handle: ScratchHandle, data: bytes) -> None:
        """Overwrite the checkpoint next to the scratch file (best effort)."""
        if handle.sealed:
            return
        try:
            await self._run_tracked(handle, handle.checkpoint_path.write_bytes, data)
        except OSError as e:
            logger.debug("Checkpoint write failed", path=str(handle.checkpoint_path), error=str(e))

    async def read_all(self, path: Path) -> bytes:
        return await asyncio.to_thread(Path(path).read_bytes)

    async def remove(self, path: Path) -> None:
        """Delete a scratch file; a missing file is not an error."""
        await asyncio.to_thread(Path(path).unlink, True)
