import os
from pathlib import Path

import pytest

from asphaltworks.service.fs import PathTraversalError, media_file, safe_join


def test_safe_join_accepts_child_path(tmp_path: Path):
    result = safe_join(tmp_path, "nested/photo.jpg")

    assert tmp_path.resolve() in result.parents


def test_safe_join_rejects_traversal(tmp_path: Path):
    with pytest.raises(PathTraversalError):
        safe_join(tmp_path, os.path.join("..", "escape.jpg"))


def test_safe_join_rejects_absolute(tmp_path: Path):
    with pytest.raises(PathTraversalError):
        safe_join(tmp_path, str(Path("/etc/passwd")))


@pytest.mark.parametrize("name", ["", ".", "bad\x00name.png"])
def test_safe_join_rejects_degenerate_names(tmp_path: Path, name):
    with pytest.raises(PathTraversalError):
        safe_join(tmp_path, name)


def test_media_file_is_flat(tmp_path: Path):
    assert media_file(tmp_path, "abc.png") == tmp_path.resolve() / "abc.png"
    with pytest.raises(PathTraversalError):
        media_file(tmp_path, "nested/abc.png")
    with pytest.raises(PathTraversalError):
        media_file(tmp_path, "..\\abc.png")
