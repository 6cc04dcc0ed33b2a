"""Relevant-file discovery for a project tree."""

import fnmatch
import os
import shutil
import subprocess  # nosec B404
from pathlib import Path

import structlog

from code_recall.config import Settings

log = structlog.get_logger()

# Directories to skip entirely during a walk
SKIP_DIRS = {
    ".git",
    ".venv",
    "venv",
    "node_modules",
    "__pycache__",
    ".pytest_cache",
    "dist",
    "build",
    ".next",
    ".code-recall",
}


def git_toplevel(project_path: Path, timeout: float = 10.0) -> Path | None:
    """Return the work-tree root containing project_path, or None.

    A capability check: a missing git binary or a non-repository yields None.
    """
    if shutil.which("git") is None:
        return None
    try:
        result = subprocess.run(  # nosec B603, B607
            ["git", "rev-parse", "--show-toplevel"],
            cwd=project_path,
            capture_output=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        log.warning("git_toplevel_timed_out", project=str(project_path))
        return None
    if result.returncode != 0:
        return None
    return Path(os.fsdecode(result.stdout.strip())).resolve()


class FileScanner:
    """Lists the source files an index should track.

    Uses git ls-files if available (fast, respects .gitignore, includes
    untracked files). Falls back to a directory walk with pruning.
    """

    def __init__(self, settings: Settings, project_path: Path) -> None:
        self.settings = settings
        self.project_path = project_path.resolve()
        self._gitignore_patterns: list[str] | None = None

    def is_relevant(self, file_path: str) -> bool:
        """Check extension and ignore patterns of an absolute path."""
        path = Path(file_path)
        if path.suffix not in self.settings.include_extensions:
            return False
        try:
            rel_path = path.relative_to(self.project_path)
        except ValueError:
            return False
        if any(part in SKIP_DIRS for part in rel_path.parts[:-1]):
            return False
        return not self._should_ignore(rel_path.as_posix(), self._ignore_patterns())

    def scan(self) -> list[str]:
        """Scan for relevant files in the project.

        Returns:
            Sorted list of absolute file paths.
        """
        toplevel = git_toplevel(self.project_path, self.settings.git_timeout)
        if toplevel is not None:
            files = self._scan_with_git()
            if files is not None:
                log.debug("scanned_files_git", project=str(self.project_path), count=len(files))
                return files

        files = self._scan_with_walk()
        log.debug("scanned_files_walk", project=str(self.project_path), count=len(files))
        return files

    def _scan_with_git(self) -> list[str] | None:
        """Scan using git ls-files. Returns None if git refuses."""
        try:
            result = subprocess.run(  # nosec B603, B607
                ["git", "ls-files", "--cached", "--others", "--exclude-standard", "-z"],
                cwd=self.project_path,
                capture_output=True,
                timeout=self.settings.git_timeout,
            )
        except subprocess.TimeoutExpired:
            log.warning("git_ls_files_timed_out", project=str(self.project_path))
            return None
        if result.returncode != 0:
            return None

        files: set[str] = set()
        # Raw bytes: filenames need not be valid UTF-8
        for raw in result.stdout.split(b"\0"):
            if not raw:
                continue
            # ls-files paths are relative to cwd
            file_path = str(self.project_path / os.fsdecode(raw))
            if self.is_relevant(file_path) and Path(file_path).is_file():
                files.add(file_path)
        return sorted(files)

    def _scan_with_walk(self) -> list[str]:
        """Scan using Path.walk with directory pruning."""
        patterns = self._ignore_patterns()

        files: list[str] = []
        for root, dirs, filenames in self.project_path.walk():
            # Prune directories in-place to avoid descending
            dirs[:] = [d for d in dirs if d not in SKIP_DIRS]

            for filename in filenames:
                file_path = root / filename
                if file_path.suffix not in self.settings.include_extensions:
                    continue

                rel_path = file_path.relative_to(self.project_path)
                if self._should_ignore(rel_path.as_posix(), patterns):
                    continue

                files.append(str(file_path))

        return sorted(files)

    def _ignore_patterns(self) -> list[str]:
        if self._gitignore_patterns is None:
            self._gitignore_patterns = []
            gitignore_path = self.project_path / ".gitignore"
            if self.settings.use_gitignore and gitignore_path.exists():
                self._gitignore_patterns = self._parse_gitignore(gitignore_path)
        return self.settings.ignore_patterns + self._gitignore_patterns

    def _parse_gitignore(self, gitignore_path: Path) -> list[str]:
        """Parse .gitignore file into fnmatch patterns."""
        patterns: list[str] = []
        try:
            content = gitignore_path.read_text()
        except OSError as e:
            log.warning("gitignore_unreadable", path=str(gitignore_path), error=str(e))
            return patterns

        for line in content.splitlines():
            line = line.strip()
            # Skip comments, empty lines, and negations
            if not line or line.startswith(("#", "!")):
                continue
            line = line.lstrip("/")
            if line.endswith("/"):
                patterns.append(line + "**")
                patterns.append(line[:-1])  # Also match the directory itself
            else:
                patterns.append(line)
                patterns.append("**/" + line)  # Match in any subdirectory
        return patterns

    def _should_ignore(self, rel_path: str, patterns: list[str]) -> bool:
        """Check a project-relative POSIX path against ignore patterns."""
        parts = rel_path.split("/")
        for pattern in patterns:
            if fnmatch.fnmatch(rel_path, pattern):
                return True
            # Check if any parent directory matches
            for i in range(len(parts)):
                if fnmatch.fnmatch("/".join(parts[: i + 1]), pattern):
                    return True
        return False
