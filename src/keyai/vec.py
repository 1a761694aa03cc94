"""Vector helpers for semantic search.

Embeddings are stored as raw little-endian float32 BLOBs in the embeddings
table. Similarity is plain cosine similarity computed with numpy; there is
no vector index, the semantic search scans every stored event.
"""

from __future__ import annotations

import struct

import numpy as np


def serialize_embedding(embedding: list[float]) -> bytes:
    """Serialize embedding to bytes for SQLite BLOB storage.

    Args:
        embedding: List of floats (typically 384 dimensions).

    Returns:
        Little-endian float32 bytes, 4 bytes per component.
    """
    return struct.pack(f"<{len(embedding)}f", *embedding)


def deserialize_embedding(blob: bytes) -> list[float]:
    """Deserialize embedding from a SQLite BLOB.

    Trailing bytes that do not form a whole float are ignored.
    """
    count = len(blob) // 4  # 4 bytes per float32
    return list(struct.unpack(f"<{count}f", blob[: count * 4]))


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity in [-1, 1].

    Returns 0.0 for vectors of different length or zero norm.
    """
    if len(a) != len(b) or not a:
        return 0.0

    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)
