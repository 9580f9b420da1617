# -*- coding: utf-8 -*-
"""
diag_core.py — типизированная диагностика анализа и дедлайн

Каждая стадия конвейера не пишет в консоль, а возвращает список Diagnostic.
Вид (IssueKind) позволяет вызывающему коду и тестам проверять, КАКОЙ именно
fallback сработал, а не искать подстроку в тексте.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Tuple


class IssueKind(str, Enum):
    # фатальные / ошибки
    ARCHIVE_UNREADABLE = "archive_unreadable"
    ANALYSIS_FAILED = "analysis_failed"
    # конфигурация
    CONFIG_NOT_FOUND = "config_not_found"
    CONFIG_UNREADABLE = "config_unreadable"
    CONFIG_VALUE_REJECTED = "config_value_rejected"
    # метаданные плит
    PLATE_METADATA_INVALID = "plate_metadata_invalid"
    PLATE_SUMMARY_INVALID = "plate_summary_invalid"
    # геометрия
    GEOMETRY_INVALID = "geometry_invalid"
    GEOMETRY_UNSUPPORTED = "geometry_unsupported"
    GEOMETRY_LIMIT = "geometry_limit"
    TRIANGLES_DROPPED = "triangles_dropped"
    PLACEHOLDER_GEOMETRY = "placeholder_geometry"
    # оценка
    NO_REAL_VALUES = "no_real_values"
    PARTIAL_REAL_DATA = "partial_real_data"
    VALUE_CLAMPED = "value_clamped"
    EMERGENCY_PLATE = "emergency_plate"
    FALLBACK_PLATE = "fallback_plate"
    DEADLINE_EXCEEDED = "deadline_exceeded"


@dataclass(frozen=True)
class Diagnostic:
    kind: IssueKind
    message: str
    path: Optional[str] = None

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict:
        out = {"kind": self.kind.value, "message": self.message}
        if self.path:
            out["path"] = self.path
        return out


def kinds_of(items: Iterable[Diagnostic]) -> Tuple[IssueKind, ...]:
    return tuple(d.kind for d in items)


# ---------- Дедлайн (защита от огромных архивов) ----------
class DeadlineExceeded(RuntimeError):
    """Время анализа вышло; стадия прервана."""


class Deadline:
    """Монотонный дедлайн. seconds=None — без ограничения."""

    def __init__(self, seconds: float | None = None):
        self.seconds = seconds
        self._at = (time.monotonic() + float(seconds)) if seconds is not None else None

    @property
    def expired(self) -> bool:
        return self._at is not None and time.monotonic() >= self._at

    def check(self, stage: str) -> None:
        if self.expired:
            raise DeadlineExceeded(f"Deadline of {self.seconds}s exceeded during {stage}")


NO_DEADLINE = Deadline(None)
