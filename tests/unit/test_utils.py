"""Tests for local path confinement and runtime path helpers."""

from __future__ import annotations

import os

import pytest

from ssh_mcp.errors import TransferError
from ssh_mcp.utils import make_cache_dirs, resolve_local_path, resolve_runtime_paths, safe_name


def test_relative_path_inside_root(tmp_path):
    resolved = resolve_local_path("reports/today.txt", root=str(tmp_path))
    assert resolved == os.path.join(os.path.realpath(tmp_path), "reports", "today.txt")


def test_root_itself_is_allowed(tmp_path):
    assert resolve_local_path(".", root=str(tmp_path)) == os.path.realpath(tmp_path)


def test_sibling_with_shared_prefix_is_rejected(tmp_path):
    root = tmp_path / "work"
    root.mkdir()
    (tmp_path / "work-other").mkdir()

    with pytest.raises(TransferError, match="Path traversal detected"):
        resolve_local_path("../work-other/file", root=str(root))


def test_symlink_out_of_root_is_rejected(tmp_path):
    root = tmp_path / "work"
    root.mkdir()
    outside = tmp_path / "secret"
    outside.mkdir()
    (root / "link").symlink_to(outside)

    with pytest.raises(TransferError, match="Path traversal detected"):
        resolve_local_path("link/key.pem", root=str(root))


@pytest.mark.parametrize("path", ["", "   "])
def test_empty_path_is_rejected(path, tmp_path):
    with pytest.raises(TransferError, match="Local path is required"):
        resolve_local_path(path, root=str(tmp_path))


def test_default_root_is_working_directory(workdir):
    assert resolve_local_path("a.txt") == os.path.join(os.path.realpath(workdir), "a.txt")


def test_safe_name():
    assert safe_name("my project!") == "my_project_"
    assert safe_name("   ") == "unnamed"


def test_runtime_paths_and_cache_dirs(tmp_path, monkeypatch):
    monkeypatch.delenv("SSH_MCP_CACHE_DIR", raising=False)
    paths = resolve_runtime_paths(str(tmp_path), None)
    assert paths["cache_root"] == os.path.join(str(tmp_path), ".ssh-cache")

    dirs = make_cache_dirs(paths["cache_root"])
    assert os.path.isdir(dirs["sessions_dir"])

    override = resolve_runtime_paths(str(tmp_path), str(tmp_path / "cache"))
    assert override["cache_root"].startswith(str(tmp_path / "cache"))
