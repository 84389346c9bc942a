import pytest

from conftest import write
from drive_mirror.errors import LocalRootError
from drive_mirror.scanner import LocalTree, PathFilter


def test_include_only():
    f = PathFilter(include=['*.txt'])
    assert f.accepts('file.txt') is True
    assert f.accepts('file.md') is False


def test_exclude_only():
    f = PathFilter(exclude=['*.bak'])
    assert f.accepts('doc.txt') is True
    assert f.accepts('old.bak') is False


def test_include_and_exclude():
    f = PathFilter(include=['*.txt', '*.md'], exclude=['secret.*'])
    assert f.accepts('note.txt') is True
    assert f.accepts('secret.txt') is False
    assert f.accepts('image.png') is False


def test_ignore_patterns_precedence():
    f = PathFilter(include=['*.txt'], ignore=['ignore*.txt'])
    assert f.accepts('file.txt') is True  # included
    assert f.accepts('ignore_this.txt') is False  # ignored even though matches include


def test_excluded_folders_are_prefix_matched():
    f = PathFilter(excluded_folders=['Private/', 'a/b'])
    assert f.accepts('Private/x.md') is False
    assert f.accepts('Private') is False
    assert f.accepts('PrivateNotes/x.md') is True
    assert f.accepts('a/b/c/d.txt') is False
    assert f.accepts('a/bc.txt') is True


def test_missing_include_is_not_an_exclusion():
    f = PathFilter(include=['*.md'], exclude=['*.tmp'], excluded_folders=['Private'])
    assert f.is_excluded('photo.png') is False
    assert f.is_excluded('scratch.tmp') is True
    assert f.is_excluded('Private/a.md') is True


def test_local_tree_scan(tmp_path):
    write(tmp_path, 'b.md', 'b')
    write(tmp_path, 'a/z.txt', 'z')
    write(tmp_path, 'a/skip.bak', 'x')
    write(tmp_path, '.obsidian/workspace.json', '{}')
    write(tmp_path, '.DS_Store', 'x')
    state = write(tmp_path, 'state.json', '{}')
    tree = LocalTree(str(tmp_path), PathFilter(exclude=['*.bak']), skip_files=[state])
    records = tree.scan()
    assert [r.path for r in records] == ['b.md', 'a/z.txt']
    assert records[1].parent == 'a'
    assert records[0].size == 1


def test_local_tree_missing_root(tmp_path):
    tree = LocalTree(str(tmp_path / 'unmounted'), PathFilter())
    with pytest.raises(LocalRootError):
        tree.scan()
