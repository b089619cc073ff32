"""Device detection and batch sizing for embedding inference."""

from typing import Callable, List, Optional, Sequence, TypeVar
import psutil
import torch
import structlog

logger = structlog.get_logger("embedding_service.resources")

T = TypeVar("T")

MEMORY_UNIT_BYTES = 256 * 1024 * 1024
MIN_BATCH_SIZE = 2


def detect_device(preference: str = "auto") -> str:
    """Select the device models are loaded onto.

    ``preference`` is ``cpu``, ``gpu`` or ``auto``; a GPU request falls back to
    CPU when no accelerator is present.
    """
    if preference == "cpu":
        return "cpu"

    try:
        if torch.cuda.is_available():
            device = "cuda:0"
        elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
            device = "mps"
        else:
            device = "cpu"
    except Exception as e:
        logger.error("GPU detection failed", error=str(e))
        device = "cpu"

    if preference == "gpu" and device == "cpu":
        logger.warning("GPU requested but not available, falling back to CPU")

    logger.info("Device selected", device=device, preference=preference)
    return device


def total_memory_bytes() -> int:
    """Total physical memory of the host."""
    return psutil.virtual_memory().total


class MemoryBatchSizePolicy:
    """Batch size derived from host memory.

    ``3 * (memory // 256 MiB) + 2``, never below ``MIN_BATCH_SIZE``. The memory
    probe is injectable so tests do not depend on the host.
    """

    def __init__(self, memory_probe: Callable[[], int] = total_memory_bytes):
        self.memory_probe = memory_probe

    def __call__(self) -> int:
        units = self.memory_probe() // MEMORY_UNIT_BYTES
        return max(3 * units + 2, MIN_BATCH_SIZE)


class FixedBatchSizePolicy:
    """Always returns the configured batch size."""

    def __init__(self, batch_size: int):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.batch_size = batch_size

    def __call__(self) -> int:
        return self.batch_size


def create_batch_size_policy(batch_size: Optional[int] = None) -> Callable[[], int]:
    """Fixed policy when a size is configured, memory heuristic otherwise."""
    if batch_size:
        return FixedBatchSizePolicy(batch_size)
    return MemoryBatchSizePolicy()


def chunk_list(items: Sequence[T], size: int) -> List[List[T]]:
    """Split ``items`` into contiguous chunks of at most ``size`` elements."""
    if size < 1:
        raise ValueError("size must be >= 1")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]
