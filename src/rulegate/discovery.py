"""Rule-set artifact discovery under configured root directories."""

import fnmatch
import logging
import os
from collections.abc import Iterator
from pathlib import Path

from rulegate.config import RootConfig
from rulegate.models import Artifact, Behavior

logger = logging.getLogger(__name__)


class ArtifactDiscovery:
    """Compiled rule-set discovery across domain and ip-cidr roots."""

    def __init__(self, roots: list[RootConfig], pattern: str = "*.mrs",
                 exclude_patterns: list[str] | None = None, base_dir: Path | None = None):
        """Initialize artifact discovery.

        Args:
            roots: Directories to scan, each tagged with its behavior kind
            pattern: File name glob identifying artifacts
            exclude_patterns: Glob patterns (relative to a root) to skip
            base_dir: Directory relative root paths resolve against (default: cwd)
        """
        self.base_dir = (base_dir or Path.cwd()).resolve()
        self.roots = roots
        self.pattern = pattern
        self.exclude_patterns = exclude_patterns or []

    def discover(self) -> list[Artifact]:
        """Discover all artifacts under every configured root.

        Returns:
            Artifacts sorted by path; a missing root contributes nothing.
        """
        artifacts = []

        for root in self.roots:
            root_path = self._resolve_root(root.path)
            if not root_path.is_dir():
                logger.warning(f"Artifact root not found, skipping: {root_path}")
                continue

            found = 0
            for file_path in self._find_files(root_path):
                if self._is_excluded(file_path, root_path):
                    logger.debug(f"Excluded artifact: {file_path}")
                    continue
                artifacts.append(Artifact(path=file_path.resolve(), behavior=Behavior(root.behavior), root=root_path))
                found += 1

            logger.info(f"Found {found} artifacts under {root_path} ({Behavior(root.behavior).value})")

        return sorted(artifacts, key=lambda a: str(a.path))

    def _resolve_root(self, path: str) -> Path:
        root_path = Path(path)
        if not root_path.is_absolute():
            root_path = self.base_dir / root_path
        return root_path.resolve()

    def _find_files(self, root_path: Path) -> Iterator[Path]:
        """Find matching files under a root recursively, symlinks left unresolved."""
        for root, dirs, files in os.walk(root_path):
            for file in files:
                if fnmatch.fnmatch(file, self.pattern):
                    yield Path(root) / file

    def _is_excluded(self, file_path: Path, root_path: Path) -> bool:
        """Check if file should be excluded based on patterns."""
        relative_str = file_path.relative_to(root_path).as_posix()

        for pattern in self.exclude_patterns:
            if fnmatch.fnmatch(relative_str, pattern):
                return True
        return False


def derive_behavior(path: str | Path, roots: list[RootConfig] | None = None,
                    base_dir: Path | None = None) -> Behavior:
    """Derive the behavior kind of an artifact from its location.

    The root containing the path decides. Paths outside every configured root
    fall back to the meta-rules-dat convention: geosite files are domain rules,
    everything else is ip-cidr.
    """
    file_path = Path(path)
    base = (base_dir or Path.cwd()).resolve()
    if not file_path.is_absolute():
        file_path = base / file_path
    file_path = file_path.resolve()

    for root in roots or []:
        root_path = Path(root.path)
        if not root_path.is_absolute():
            root_path = base / root_path
        if file_path.is_relative_to(root_path.resolve()):
            return Behavior(root.behavior)

    if "geosite" in file_path.parts:
        return Behavior.DOMAIN
    return Behavior.IPCIDR
