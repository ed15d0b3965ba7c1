"""Repository identity: map a working directory to a stable repo key."""

from pathlib import Path

VCS_MARKER = ".git"


def find_repo_root(path: str | Path) -> Path | None:
    """Walk upward from *path* and return the first directory containing ``.git``."""
    current = Path(path).expanduser().resolve()
    for candidate in (current, *current.parents):
        if (candidate / VCS_MARKER).exists():
            return candidate
    return None


def resolve_repo_key(path: str | Path) -> str:
    """Return the repo root for *path*, or its absolute path if not in a repo.

    Two working directories inside the same repository collapse onto one key.
    """
    root = find_repo_root(path)
    if root is not None:
        return str(root)
    return str(Path(path).expanduser().resolve())


def repo_name(repo_key: str) -> str:
    return Path(repo_key).name or repo_key
