"""
Unit tests for the vault tree hash (tierkeep/backup/treehash.py).
"""

import hashlib

from tierkeep.backup.treehash import CHUNK_SIZE, TreeHasher, hash_file, tree_hash


def _sha(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


class TestTreeHash:
    """Test the one-shot tree hash."""

    def test_empty_payload(self):
        """Empty input hashes to sha256 of nothing."""
        assert tree_hash(b'') == hashlib.sha256(b'').hexdigest()

    def test_single_chunk_equals_linear_hash(self):
        """A payload under 1 MiB is a single leaf."""
        data = b'x' * 1000
        assert tree_hash(data) == hashlib.sha256(data).hexdigest()

    def test_exactly_one_chunk(self):
        data = b'a' * CHUNK_SIZE
        assert tree_hash(data) == hashlib.sha256(data).hexdigest()

    def test_two_chunks(self):
        """Two leaves combine into one parent."""
        data = b'a' * CHUNK_SIZE + b'b' * 10
        expected = _sha(_sha(b'a' * CHUNK_SIZE) + _sha(b'b' * 10)).hex()
        assert tree_hash(data) == expected

    def test_three_chunks_promotes_unpaired_leaf(self):
        """The odd leaf moves up a level unchanged."""
        a, b, c = b'a' * CHUNK_SIZE, b'b' * CHUNK_SIZE, b'c' * 5
        expected = _sha(_sha(_sha(a) + _sha(b)) + _sha(c)).hex()
        assert tree_hash(a + b + c) == expected

    def test_tree_hash_differs_from_linear_for_multi_chunk(self):
        data = b'z' * (CHUNK_SIZE * 2 + 1)
        assert tree_hash(data) != hashlib.sha256(data).hexdigest()


class TestTreeHasher:
    """Test the incremental hasher."""

    def test_piece_boundaries_do_not_matter(self):
        """Odd-sized pieces give the same result as the whole buffer."""
        data = bytes(range(256)) * (CHUNK_SIZE // 256 * 3 + 7)

        hasher = TreeHasher()
        offset = 0
        for size in (1, 333, CHUNK_SIZE - 1, 2, CHUNK_SIZE + 17):
            hasher.update(data[offset:offset + size])
            offset += size
        hasher.update(data[offset:])

        assert hasher.tree_hexdigest() == tree_hash(data)
        assert hasher.linear_hexdigest() == hashlib.sha256(data).hexdigest()
        assert hasher.size == len(data)

    def test_no_input(self):
        hasher = TreeHasher()
        assert hasher.tree_hexdigest() == hashlib.sha256(b'').hexdigest()
        assert hasher.size == 0

    def test_digest_can_be_read_twice(self):
        """Reading the digest does not consume pending bytes."""
        hasher = TreeHasher()
        hasher.update(b'partial')
        first = hasher.tree_hexdigest()
        assert hasher.tree_hexdigest() == first


class TestHashFile:
    """Test hashing files on disk."""

    def test_hash_file(self, tmp_path):
        data = b'backup' * (CHUNK_SIZE // 3)
        path = tmp_path / 'archive.tgz'
        path.write_bytes(data)

        tree, linear, size = hash_file(str(path), read_size=4096)

        assert tree == tree_hash(data)
        assert linear == hashlib.sha256(data).hexdigest()
        assert size == len(data)
