from typing import List


def chunk_text(
    text: str,
    chunk_size: int = 500,
    overlap: int = 50,
) -> List[str]:
    """
    Split text into overlapping windows of whitespace-delimited tokens.

    The window holds ``chunk_size`` tokens and advances by
    ``chunk_size - overlap`` tokens; empty spans are dropped. A 1,200 token
    text with the defaults yields windows starting at tokens 0, 450 and 900.
    """
    if chunk_size <= 0 or overlap < 0 or overlap >= chunk_size:
        raise ValueError(
            f"Invalid chunking parameters: chunk_size={chunk_size}, overlap={overlap} "
            "(require chunk_size > overlap >= 0)"
        )

    tokens = (text or "").split()
    step = chunk_size - overlap
    chunks: List[str] = []
    for start in range(0, len(tokens), step):
        span = " ".join(tokens[start : start + chunk_size]).strip()
        if span:
            chunks.append(span)
    return chunks


__all__ = ["chunk_text"]
