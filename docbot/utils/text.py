
from typing import List

def chunk_text(text: str, size: int = 1500, overlap: int = 200) -> List[str]:
    """Fixed-size character windows advancing by size - overlap.

    Each window is stripped and dropped if nothing is left.
    """
    if size <= 0 or overlap < 0:
        raise ValueError(f"chunk size must be positive and overlap non-negative (size={size}, overlap={overlap})")
    if size <= overlap:
        raise ValueError(f"chunk size must exceed overlap (size={size}, overlap={overlap})")

    step = size - overlap
    chunks = []
    start = 0
    while start < len(text):
        piece = text[start:start + size].strip()
        if piece:
            chunks.append(piece)
        start += step
    return chunks
