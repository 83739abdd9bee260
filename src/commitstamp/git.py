"""git plumbing used by the command line.

Only read-only plumbing commands are issued: the engine needs a commit's
tree and first parent to derive its digest, the commit message to extract
trailers, and a few repository settings to build a
:class:`~commitstamp.models.RepositoryConfig`.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Optional

from .digest import derive_digest
from .errors import RepositoryError
from .models import DEFAULT_TRUST_ANCHOR_DIR, HashAlgorithm, RepositoryConfig

logger = logging.getLogger("commitstamp.git")

CONFIG_TRUST_ANCHORS = "commitstamp.trustAnchors"
CACHE_SUBDIR = Path("commitstamp") / "ltv"


def _git(repo: Path, *args: str, check: bool = True) -> Optional[str]:
    """Run ``git -C repo args...`` and return stripped stdout.

    With ``check=False`` a non-zero exit returns None instead of raising.
    """
    try:
        proc = subprocess.run(
            ["git", "-C", str(repo), *args],
            capture_output=True,
            text=True,
        )
    except OSError as exc:
        raise RepositoryError(f"cannot run git: {exc}") from exc
    if proc.returncode != 0:
        if not check:
            return None
        raise RepositoryError(f"git {' '.join(args)} failed: {proc.stderr.strip()}")
    return proc.stdout.rstrip("\n")


def git_dir(repo: Path) -> Path:
    """Return the absolute path of the repository's git directory."""
    return Path(_git(repo, "rev-parse", "--absolute-git-dir"))


def object_format(repo: Path) -> HashAlgorithm:
    """Return the repository's object hash algorithm."""
    value = _git(repo, "rev-parse", "--show-object-format")
    try:
        return HashAlgorithm(value)
    except ValueError as exc:
        raise RepositoryError(f"unsupported object format {value!r}") from exc


def load_config(
    repo: Path,
    trust_anchor_dir: Optional[Path] = None,
    cache_dir: Optional[Path] = None,
) -> RepositoryConfig:
    """Build the configuration for ``repo``.

    Explicit arguments win over ``git config commitstamp.trustAnchors`` and
    the default cache location inside the git directory.
    """
    if trust_anchor_dir is None:
        configured = _git(repo, "config", "--get", CONFIG_TRUST_ANCHORS, check=False)
        trust_anchor_dir = Path(configured).expanduser() if configured else DEFAULT_TRUST_ANCHOR_DIR
    return RepositoryConfig(
        hash_algorithm=object_format(repo),
        trust_anchor_dir=trust_anchor_dir,
        cache_dir=cache_dir or git_dir(repo) / CACHE_SUBDIR,
    )


def resolve_commit(repo: Path, rev: str) -> str:
    """Return the full object id of commit ``rev``."""
    return _git(repo, "rev-parse", "--verify", f"{rev}^{{commit}}")


def commit_tree(repo: Path, rev: str) -> str:
    return _git(repo, "rev-parse", f"{rev}^{{tree}}")


def commit_parent(repo: Path, rev: str) -> Optional[str]:
    """Return the first parent of ``rev``, or None for a root commit."""
    return _git(repo, "rev-parse", "--verify", "--quiet", f"{rev}^1", check=False) or None


def commit_message(repo: Path, rev: str) -> str:
    return _git(repo, "log", "-1", "--format=%B", rev)


def commit_digest(repo: Path, rev: str, config: RepositoryConfig) -> str:
    """Derive the timestamp digest of commit ``rev``.

    Root commits use the all-zero digest as their parent.
    """
    parent = commit_parent(repo, rev) or config.null_digest
    return derive_digest(commit_tree(repo, rev), parent, config)
