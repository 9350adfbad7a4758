from pathlib import Path


class PathTraversalError(ValueError):
    """A client-supplied name points outside the media directory."""


def safe_join(base: Path, relative: str) -> Path:
    """Resolve ``relative`` under ``base``; the result never leaves ``base``."""
    root = base.resolve()
    if not relative or "\x00" in relative:
        raise PathTraversalError("empty or malformed path")
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    candidate = (root / rel_path).resolve()
    if candidate == root or root not in candidate.parents:
        raise PathTraversalError("path traversal detected")
    return candidate


def media_file(directory: Path, filename: str) -> Path:
    """Path of a file stored flat in ``directory``; subdirectories are refused."""
    if "/" in filename or "\\" in filename:
        raise PathTraversalError("nested paths not allowed")
    target = safe_join(directory, filename)
    if target.parent != directory.resolve():
        raise PathTraversalError("nested paths not allowed")
    return target
