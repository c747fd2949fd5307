"""Read-only snapshot of a workspace folder.

A snapshot is the only input of the pattern detector: relative file paths plus
the text of a small fixed set of manifest and config files.
"""

from dataclasses import dataclass, field
import os
from pathlib import Path, PurePosixPath

from ..errors import ScanError

IGNORED_DIRS = frozenset(
    {
        ".git",
        ".hg",
        ".svn",
        ".idea",
        ".vscode",
        "node_modules",
        "__pycache__",
        ".venv",
        "venv",
        ".tox",
        ".mypy_cache",
        ".pytest_cache",
        "target",
        "dist",
        "build",
        "vendor",
        ".next",
        "coverage",
    }
)

MANIFEST_FILES = frozenset(
    {
        "package.json",
        "yarn.lock",
        "package-lock.json",
        "pnpm-lock.yaml",
        "requirements.txt",
        "Pipfile",
        "pyproject.toml",
        "setup.py",
        "poetry.lock",
        "go.mod",
        "Cargo.toml",
        "Gemfile",
        "config.ru",
        "pom.xml",
        "build.gradle",
        "build.gradle.kts",
        "Dockerfile",
        "Containerfile",
        "docker-compose.yml",
        "docker-compose.yaml",
        "compose.yml",
        "compose.yaml",
        "index.html",
        "nginx.conf",
        "haproxy.cfg",
        "traefik.yml",
        "traefik.yaml",
        "Procfile",
    }
)

CONFIG_SUFFIXES = frozenset({".yml", ".yaml", ".json", ".toml", ".ini", ".cfg", ".conf", ".env"})

MAX_CONTENT_BYTES = 64 * 1024
MAX_FILES = 20_000


def resolve_workspace_path(workspace_root: str | Path, workspace_id: str, folder_path: str) -> Path:
    """Absolute path of a workspace-relative folder. Paths may not escape the workspace."""
    base = (Path(workspace_root) / workspace_id).resolve()
    relative = PurePosixPath(folder_path.strip() or ".")
    if relative.is_absolute() or ".." in relative.parts:
        raise ScanError(
            f"Folder path '{folder_path}' must be relative to the workspace", path=folder_path
        )
    return (base / relative).resolve()


def join_folder(parent: str, child: str) -> str:
    """Join two workspace-relative folder paths, normalizing "." segments."""
    joined = PurePosixPath(parent) / child
    parts = [p for p in joined.parts if p != "."]
    return "/".join(parts) or "."


def is_content_file(name: str) -> bool:
    """Whether the detector gets to see a file's text, not just its path."""
    if name in MANIFEST_FILES or name.startswith(".env"):
        return True
    return PurePosixPath(name).suffix in CONFIG_SUFFIXES


@dataclass(frozen=True)
class FolderSnapshot:
    """Relative POSIX paths of a folder tree and the text of its manifest/config files."""

    files: tuple[str, ...]
    contents: dict[str, str] = field(default_factory=dict)
    name: str = ""

    @classmethod
    def from_mapping(cls, files: dict[str, str | None], name: str = "") -> "FolderSnapshot":
        """Build a snapshot from `{relative_path: content_or_None}`."""
        contents = {
            path: text
            for path, text in files.items()
            if text is not None and is_content_file(PurePosixPath(path).name)
        }
        return cls(files=tuple(sorted(files)), contents=contents, name=name)

    @classmethod
    def from_path(cls, root: str | Path) -> "FolderSnapshot":
        """Walk a folder. Any unreadable entry fails the whole scan."""
        root_path = Path(root)
        if not root_path.is_dir():
            raise ScanError(f"Folder '{root}' does not exist or is not a directory", path=str(root))

        def fail(error: OSError) -> None:
            raise ScanError(
                f"Cannot read '{error.filename}': {error.strerror}",
                path=str(error.filename or root),
            ) from error

        files: list[str] = []
        contents: dict[str, str] = {}
        for dirpath, dirnames, filenames in os.walk(root_path, onerror=fail):
            dirnames[:] = sorted(d for d in dirnames if d not in IGNORED_DIRS)
            for filename in sorted(filenames):
                full = Path(dirpath) / filename
                rel = full.relative_to(root_path).as_posix()
                files.append(rel)
                if len(files) > MAX_FILES:
                    raise ScanError(
                        f"Folder '{root}' has more than {MAX_FILES} files", path=str(root)
                    )
                if is_content_file(filename) and full.is_file():
                    contents[rel] = cls._read_text(full)

        return cls(files=tuple(sorted(files)), contents=contents, name=root_path.resolve().name)

    @staticmethod
    def _read_text(path: Path) -> str:
        try:
            with path.open("rb") as fh:
                data = fh.read(MAX_CONTENT_BYTES)
        except OSError as e:
            raise ScanError(f"Cannot read '{path}': {e.strerror}", path=str(path)) from e
        return data.decode("utf-8", errors="replace")

    def directories(self) -> list[str]:
        """All directories containing at least one file, "." for the root."""
        dirs = {"."}
        for path in self.files:
            parent = PurePosixPath(path).parent
            while str(parent) != ".":
                dirs.add(str(parent))
                parent = parent.parent
        return sorted(dirs)

    def files_in(self, directory: str) -> list[str]:
        """Files directly inside a directory (not recursive)."""
        return [p for p in self.files if str(PurePosixPath(p).parent) == directory]

    def files_under(self, directory: str) -> list[str]:
        if directory == ".":
            return list(self.files)
        prefix = directory.rstrip("/") + "/"
        return [p for p in self.files if p.startswith(prefix)]

    def read(self, path: str) -> str | None:
        return self.contents.get(path)

    def scoped(self, directory: str, exclude: tuple[str, ...] = ()) -> "FolderSnapshot":
        """Sub-snapshot rooted at `directory`, minus files owned by `exclude` directories."""
        prefix = "" if directory == "." else directory.rstrip("/") + "/"
        excluded = tuple(d.rstrip("/") + "/" for d in exclude if d != directory)
        files = [
            p[len(prefix) :]
            for p in self.files_under(directory)
            if not any(p.startswith(ex) for ex in excluded)
        ]
        contents = {
            p[len(prefix) :]: text
            for p, text in self.contents.items()
            if p.startswith(prefix) and not any(p.startswith(ex) for ex in excluded)
        }
        name = self.name if directory == "." else PurePosixPath(directory).name
        return FolderSnapshot(files=tuple(files), contents=contents, name=name)
