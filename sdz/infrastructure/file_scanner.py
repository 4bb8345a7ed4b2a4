import os
from pathlib import Path
from typing import Iterable, List, Generator, Optional

def is_hidden(path: Path, root: Optional[Path] = None) -> bool:
    """True if any path component (relative to root when given) is a dotfile."""
    if root is not None:
        try:
            path = path.relative_to(root)
        except ValueError:
            pass
    return any(part.startswith(".") for part in path.parts if part not in (".", ".."))

class FileScanner:
    """Recursively scans for slide files in a directory.

    Also used by the watcher to filter single paths, so both the initial
    enumeration and live events apply the same rules.
    """

    def __init__(
        self,
        extensions: Iterable[str],
        partial_suffixes: Iterable[str] = (),
        exclude_dirs: Iterable[Path] = (),
    ):
        self.extensions = [(ext if ext.startswith(".") else f".{ext}").lower() for ext in extensions]
        self.partial_suffixes = [s.lower() for s in partial_suffixes]
        # Output written below the watch root must not be picked up again
        self.exclude_dirs = [Path(d).absolute() for d in exclude_dirs]

    def is_excluded(self, path: Path) -> bool:
        path = Path(path).absolute()
        return any(path == d or d in path.parents for d in self.exclude_dirs)

    def accepts(self, file_path: Path, root: Optional[Path] = None) -> bool:
        name = file_path.name.lower()
        if any(name.endswith(suffix) for suffix in self.partial_suffixes):
            return False
        if is_hidden(file_path, root):
            return False
        if file_path.suffix.lower() not in self.extensions:
            return False
        return not self.is_excluded(file_path)

    def scan(self, root_dir: Path) -> Generator[Path, None, None]:
        """Scans the directory and yields candidate slide paths."""
        for root, dirs, files in os.walk(str(root_dir)):
            root_path = Path(root)

            # Ensure deterministic traversal and skip hidden directories
            dirs[:] = sorted(
                d for d in dirs if not d.startswith(".") and not self.is_excluded(root_path / d)
            )
            files.sort()

            for file_name in files:
                file_path = root_path / file_name
                if not self.accepts(file_path, root_dir):
                    continue
                try:
                    if not file_path.is_file():
                        continue
                except OSError:
                    # Skip files we can't access
                    continue
                yield file_path

    def scan_list(self, root_dir: Path) -> List[Path]:
        return list(self.scan(root_dir))
