import os

from logimport.discovery import find_log_files


def touch(path):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("")
    return str(path)


def test_explicit_file_is_returned_as_is(tmp_path):
    assert find_log_files(logfile="/no/such/file") == ["/no/such/file"]


def test_nothing_requested():
    assert find_log_files() == []


def test_recursive_scan_filters_on_file_name(tmp_path):
    # top-down walk: a directory's own files come before its subdirectories
    expected = [
        touch(tmp_path / "z_access_log"),
        touch(tmp_path / "a" / "access_log"),
        touch(tmp_path / "a" / "b" / "access_log.1.gz"),
    ]
    touch(tmp_path / "a" / "error_log")
    touch(tmp_path / "access_log_dir" / "other.txt")

    assert find_log_files(logdir=str(tmp_path)) == expected


def test_custom_pattern(tmp_path):
    wanted = touch(tmp_path / "site.log")
    touch(tmp_path / "access_log")
    assert find_log_files(logdir=str(tmp_path), pattern=".log") == [wanted]


def test_missing_directory_yields_nothing(tmp_path):
    assert find_log_files(logdir=str(tmp_path / "missing")) == []


def test_paths_are_joined_under_logdir(tmp_path):
    touch(tmp_path / "x" / "access_log")
    (found,) = find_log_files(logdir=str(tmp_path))
    assert found == os.path.join(str(tmp_path), "x", "access_log")
