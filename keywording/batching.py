"""
Splitting of the ordered input into fixed-size chunks
"""
import logging
from typing import Any, Dict, Iterable, List, Sequence

from .models import Chunk, InputItem

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 20


def split_into_chunks(items: Sequence[InputItem], chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[Chunk]:
    """Partition items into ordered chunks with no gaps or overlaps.

    Chunk numbers start at 1; ``base_index`` is the global index of the
    chunk's first item so offset ``j`` maps to ``base_index + j``.
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be at least 1, got {chunk_size}")

    chunks = []
    for start in range(0, len(items), chunk_size):
        chunks.append(Chunk(
            chunk_number=len(chunks) + 1,
            base_index=start,
            items=tuple(items[start:start + chunk_size]),
        ))

    logger.debug(
        f"Created {len(chunks)} chunks with max size {chunk_size} from {len(items)} items")
    return chunks


def build_input_items(raw_items: Iterable[Dict[str, Any]]) -> List[InputItem]:
    """Assign dense 0-based indices to uploaded image dicts"""
    return [InputItem.from_dict(i, raw) for i, raw in enumerate(raw_items)]
