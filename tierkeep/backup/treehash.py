"""
SHA-256 tree hash used by the archival vault's upload API.

The vault verifies uploads with a Merkle-style digest: the payload is split
into 1 MiB chunks, each chunk is hashed, then adjacent digests are hashed
pairwise level by level until one digest remains.
"""

import hashlib
from typing import List, Tuple

CHUNK_SIZE = 1024 * 1024  # 1 MiB


def _combine(hashes: List[bytes]) -> bytes:
    """Reduce a level of leaf digests to the root digest."""
    while len(hashes) > 1:
        next_level = []
        for i in range(0, len(hashes), 2):
            if i + 1 < len(hashes):
                next_level.append(hashlib.sha256(hashes[i] + hashes[i + 1]).digest())
            else:
                # Unpaired node moves up unchanged
                next_level.append(hashes[i])
        hashes = next_level
    return hashes[0]


def tree_hash(data: bytes) -> str:
    """
    Compute the tree hash of a byte buffer.

    Args:
        data: Full payload

    Returns:
        Hex-encoded root digest; sha256(b'') for empty input
    """
    if not data:
        return hashlib.sha256(b'').hexdigest()

    leaves = [
        hashlib.sha256(data[i:i + CHUNK_SIZE]).digest()
        for i in range(0, len(data), CHUNK_SIZE)
    ]
    return _combine(leaves).hex()


class TreeHasher:
    """
    Incremental tree hash over a byte stream.

    Pieces may be any size; leaves are always cut on 1 MiB boundaries of the
    logical content. The linear SHA-256 and total length are tracked in the
    same pass since the vault needs all three.
    """

    def __init__(self):
        self._leaves = []
        self._pending = bytearray()
        self._linear = hashlib.sha256()
        self.size = 0

    def update(self, piece: bytes):
        self._linear.update(piece)
        self.size += len(piece)
        self._pending.extend(piece)

        while len(self._pending) >= CHUNK_SIZE:
            chunk = bytes(self._pending[:CHUNK_SIZE])
            del self._pending[:CHUNK_SIZE]
            self._leaves.append(hashlib.sha256(chunk).digest())

    def tree_hexdigest(self) -> str:
        leaves = list(self._leaves)
        if self._pending:
            leaves.append(hashlib.sha256(bytes(self._pending)).digest())
        if not leaves:
            return hashlib.sha256(b'').hexdigest()
        return _combine(leaves).hex()

    def linear_hexdigest(self) -> str:
        return self._linear.hexdigest()


def hash_file(path: str, read_size: int = CHUNK_SIZE) -> Tuple[str, str, int]:
    """
    Hash a file on disk without loading it into memory.

    Args:
        path: File to hash
        read_size: Bytes per read call

    Returns:
        Tuple of (tree_hash, linear_hash, size)
    """
    hasher = TreeHasher()
    with open(path, 'rb') as f:
        while True:
            piece = f.read(read_size)
            if not piece:
                break
            hasher.update(piece)
    return hasher.tree_hexdigest(), hasher.linear_hexdigest(), hasher.size
