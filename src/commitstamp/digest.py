"""Commit digest derivation.

A commit is timestamped through a digest of its (tree, parent) pair rather
than the commit object itself, since the commit object will contain the
timestamp trailer. The preimage is a small canonical string::

    version:1,parent:<parent-digest>,tree:<tree-digest>

hashed with the repository's object hash algorithm.
"""

import hashlib
import string

from .errors import PreconditionError
from .models import RepositoryConfig

PREIMAGE_VERSION = 1

_HEX = frozenset(string.hexdigits.lower())


def check_digest(value: str, config: RepositoryConfig, name: str = "digest") -> str:
    """Return ``value`` lowercased after checking it is a repository digest.

    Raises:
        PreconditionError: If the length does not match the configured
            algorithm or the value is not hexadecimal.
    """
    if not isinstance(value, str) or len(value) != config.digest_length:
        raise PreconditionError(
            f"{name} {value!r} is not a {config.hash_algorithm.value} digest "
            f"(expected {config.digest_length} hex characters)"
        )
    lowered = value.lower()
    if not set(lowered) <= _HEX:
        raise PreconditionError(f"{name} {value!r} is not hexadecimal")
    return lowered


def derive_preimage(tree_digest: str, parent_digest: str, config: RepositoryConfig) -> str:
    """Build the canonical preimage for a commit's (tree, parent) pair."""
    tree = check_digest(tree_digest, config, "tree digest")
    parent = check_digest(parent_digest, config, "parent digest")
    return f"version:{PREIMAGE_VERSION},parent:{parent},tree:{tree}"


def derive_digest(tree_digest: str, parent_digest: str, config: RepositoryConfig) -> str:
    """Hash the preimage with the repository's algorithm.

    Args:
        tree_digest: Hex digest of the commit's tree object.
        parent_digest: Hex digest of the first parent commit, or
            ``config.null_digest`` for a root commit.
        config: Repository configuration fixing the algorithm.

    Returns:
        Lowercase hex digest of ``config.digest_length`` characters.
    """
    preimage = derive_preimage(tree_digest, parent_digest, config)
    digest = hashlib.new(config.hash_algorithm.value, preimage.encode("utf-8")).hexdigest()
    if len(digest) != config.digest_length:
        raise PreconditionError(
            f"derived digest {digest!r} has length {len(digest)}, "
            f"expected {config.digest_length}"
        )
    return digest
