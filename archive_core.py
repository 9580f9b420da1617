# -*- coding: utf-8 -*-
"""
archive_core.py — чтение zip-контейнера проекта (.3mf)

- Открывает байты или путь как zip; битый/не-zip вход -> ArchiveError.
- Отдаёт список записей и чтение записи как текст/байты/строки.
- Чтения идемпотентны и безопасны из нескольких потоков (один общий lock).
"""
from __future__ import annotations

import io
import logging
import threading
import zipfile
import zlib
from typing import Iterator, List

logger = logging.getLogger(__name__)

MAX_ENTRY_BYTES = 25 * 1024 * 1024


class ArchiveError(ValueError):
    """Вход не открывается как zip-архив."""


class EntryNotFound(ArchiveError):
    """В архиве нет записи с таким путём."""


class DecodeError(ArchiveError):
    """Запись не декодируется как UTF-8."""


class EntryTooLarge(ArchiveError):
    """Запись больше допустимого лимита (распакованный размер)."""


def _norm_entry(path: str) -> str:
    return (path or "").replace("\\", "/").lstrip("/")


class ProjectArchive:
    """Read-only обёртка над zipfile.ZipFile для одного анализа."""

    def __init__(self, zf: zipfile.ZipFile, *, label: str = "", max_entry_bytes: int = MAX_ENTRY_BYTES):
        self._zf = zf
        self._lock = threading.Lock()
        self.label = label
        self.max_entry_bytes = int(max_entry_bytes)
        self._infos = {info.filename: info for info in zf.infolist() if not info.is_dir()}

    @classmethod
    def from_bytes(cls, data: bytes, *, label: str = "", max_entry_bytes: int = MAX_ENTRY_BYTES) -> "ProjectArchive":
        if not data:
            raise ArchiveError("Archive is empty")
        try:
            zf = zipfile.ZipFile(io.BytesIO(data))
        except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, EOFError) as e:
            raise ArchiveError(f"Not a valid zip archive: {e}") from None
        return cls(zf, label=label, max_entry_bytes=max_entry_bytes)

    @classmethod
    def open(cls, path: str, *, max_entry_bytes: int = MAX_ENTRY_BYTES) -> "ProjectArchive":
        try:
            zf = zipfile.ZipFile(path)
        except FileNotFoundError:
            raise
        except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, EOFError) as e:
            raise ArchiveError(f"Not a valid zip archive: {e}") from None
        return cls(zf, label=str(path), max_entry_bytes=max_entry_bytes)

    def close(self) -> None:
        self._zf.close()

    def __enter__(self) -> "ProjectArchive":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ---------- Список записей ----------
    def names(self) -> List[str]:
        return list(self._infos.keys())

    def has(self, path: str) -> bool:
        return _norm_entry(path) in self._infos

    def entry_size(self, path: str) -> int:
        return self._info(path).file_size

    def _info(self, path: str) -> zipfile.ZipInfo:
        info = self._infos.get(_norm_entry(path))
        if info is None:
            raise EntryNotFound(f"Entry not found: {path}")
        return info

    # ---------- Чтение ----------
    def read_bytes(self, path: str) -> bytes:
        info = self._info(path)
        if info.file_size > self.max_entry_bytes:
            raise EntryTooLarge(
                f"Entry {info.filename} too large: {info.file_size} > {self.max_entry_bytes} bytes"
            )
        try:
            with self._lock:
                return self._zf.read(info)
        except (zipfile.BadZipFile, zlib.error, OSError, EOFError, NotImplementedError) as e:
            raise ArchiveError(f"Entry {info.filename} is unreadable: {e}") from None

    def read_text(self, path: str) -> str:
        raw = self.read_bytes(path)
        try:
            return raw.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise DecodeError(f"Entry {path} is not valid UTF-8: {e.reason} at byte {e.start}") from None

    def iter_lines(self, path: str) -> Iterator[str]:
        """Потоковое чтение строк (для больших G-code), без лимита max_entry_bytes."""
        info = self._info(path)
        with self._lock:
            data = self._zf.open(info)
        with data:
            text = io.TextIOWrapper(data, encoding="utf-8", errors="replace")
            for line in text:
                yield line.rstrip("\r\n")
