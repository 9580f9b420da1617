from __future__ import annotations

import threading
import zipfile

import pytest

from archive_core import (
    ArchiveError,
    DecodeError,
    EntryNotFound,
    EntryTooLarge,
    ProjectArchive,
)
from tests.helpers_3mf import make_3mf_bytes, write_3mf


def test_rejects_empty_and_non_zip_bytes():
    with pytest.raises(ArchiveError, match=r"empty"):
        ProjectArchive.from_bytes(b"")
    with pytest.raises(ArchiveError, match=r"Not a valid zip"):
        ProjectArchive.from_bytes(b"this is not a zip at all")


def test_names_exclude_directories_and_keep_order(tmp_path):
    path = tmp_path / "dirs.3mf"
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("Metadata/", "")
        zf.writestr("Metadata/plate_1.json", "{}")
        zf.writestr("3D/3dmodel.model", "<model/>")

    with ProjectArchive.open(str(path)) as archive:
        assert archive.names() == ["Metadata/plate_1.json", "3D/3dmodel.model"]
        assert archive.has("/3D/3dmodel.model")
        assert not archive.has("Metadata/")


def test_read_text_strips_bom_and_reports_bad_utf8():
    data = make_3mf_bytes({
        "a.config": "\ufefflayer_height = 0.2\n".encode("utf-8"),
        "b.config": b"\xff\xfe\x00bad",
    })
    with ProjectArchive.from_bytes(data) as archive:
        assert archive.read_text("a.config") == "layer_height = 0.2\n"
        with pytest.raises(DecodeError):
            archive.read_text("b.config")
        with pytest.raises(EntryNotFound):
            archive.read_text("missing.config")


def test_reads_are_idempotent():
    data = make_3mf_bytes({"Metadata/project_settings.config": "print_speed = 60\n"})
    with ProjectArchive.from_bytes(data) as archive:
        first = archive.read_bytes("Metadata/project_settings.config")
        second = archive.read_bytes("Metadata/project_settings.config")
        assert first == second == b"print_speed = 60\n"


def test_entry_size_limit_is_recoverable():
    data = make_3mf_bytes({"3D/3dmodel.model": "a" * 2048, "small.txt": "ok"})
    with ProjectArchive.from_bytes(data, max_entry_bytes=1024) as archive:
        assert archive.entry_size("3D/3dmodel.model") == 2048
        with pytest.raises(EntryTooLarge, match=r"too large"):
            archive.read_bytes("3D/3dmodel.model")
        assert archive.read_text("small.txt") == "ok"


def test_iter_lines_streams_without_size_limit():
    gcode = "; HEADER_BLOCK_START\n; total estimated time: 1h 2m\r\nG1 X1\n" * 50
    data = make_3mf_bytes({"Metadata/plate_1.gcode": gcode})
    with ProjectArchive.from_bytes(data, max_entry_bytes=16) as archive:
        lines = list(archive.iter_lines("Metadata/plate_1.gcode"))
    assert len(lines) == 150
    assert lines[1] == "; total estimated time: 1h 2m"


def test_open_missing_file_raises_file_not_found(tmp_path):
    with pytest.raises(FileNotFoundError):
        ProjectArchive.open(str(tmp_path / "nope.3mf"))


def test_concurrent_reads_return_same_content(tmp_path):
    payload = "x" * 100_000
    path = write_3mf(tmp_path, {f"3D/Objects/object_{i}.model": payload + str(i) for i in range(8)})
    results = {}

    with ProjectArchive.open(str(path)) as archive:
        def worker(i):
            results[i] = archive.read_text(f"3D/Objects/object_{i}.model")

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    assert all(results[i] == payload + str(i) for i in range(8))
