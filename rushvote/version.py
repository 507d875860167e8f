"""Version and build information served at /api/version."""

import os
from dataclasses import dataclass
from functools import lru_cache
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

try:
    __version__ = version("rushvote")
except PackageNotFoundError:
    # Running from a source checkout that was never installed
    __version__ = "0.4.0"

UNKNOWN = "unknown"


@dataclass(frozen=True)
class VersionInfo:
    """What is running: release, commit and build time."""

    version: str
    git_commit: str = UNKNOWN
    build_time: str = UNKNOWN

    @property
    def git_commit_short(self) -> str:
        return UNKNOWN if self.git_commit == UNKNOWN else self.git_commit[:7]

    def to_dict(self) -> dict[str, str]:
        """Convert to dictionary."""
        return {
            "version": self.version,
            "git_commit": self.git_commit,
            "git_commit_short": self.git_commit_short,
            "build_time": self.build_time,
        }


def _read_git_head(root: Path) -> str | None:
    """Resolve .git/HEAD to a commit hash without shelling out to git."""
    git_dir = root / ".git"
    try:
        head = (git_dir / "HEAD").read_text().strip()
        if not head.startswith("ref: "):
            return head or None
        ref = head[len("ref: "):]
        ref_file = git_dir / ref
        if ref_file.exists():
            return ref_file.read_text().strip() or None
        packed = git_dir / "packed-refs"
        for line in packed.read_text().splitlines():
            if line.endswith(f" {ref}"):
                return line.split(" ", 1)[0]
    except OSError:
        return None
    return None


def _get_git_commit() -> str:
    """Commit baked in at container build (GIT_COMMIT), else read from .git."""
    env_commit = os.getenv("GIT_COMMIT")
    if env_commit and env_commit != UNKNOWN:
        return env_commit
    return _read_git_head(Path(__file__).resolve().parent.parent) or UNKNOWN


@lru_cache
def get_version_info() -> VersionInfo:
    """Version information (cached for the life of the process)."""
    return VersionInfo(
        version=os.getenv("APP_VERSION", __version__),
        git_commit=_get_git_commit(),
        build_time=os.getenv("BUILD_TIME", UNKNOWN),
    )
