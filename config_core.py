# -*- coding: utf-8 -*-
"""
config_core.py — извлечение параметров слайсинга из конфигов внутри архива

Правила:
- Кандидаты (CONFIG_CANDIDATES) — фиксированный упорядоченный список. Обрабатываются
  ВСЕ найденные, по порядку: более поздний файл перезаписывает ранний ("last writer wins").
- Строки `key=value`; пустые и комментарии (# ;) пропускаем; ключ -> lower().strip().
- Синонимы ключей разных слайсеров -> одно поле SlicingConfig через статическую таблицу.
- Каждое число проверяется на правдоподобие; мусор -> warning, поле не меняется.
- Этот этап никогда не роняет анализ.
"""
from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

from archive_core import ArchiveError, ProjectArchive
from diag_core import NO_DEADLINE, Deadline, Diagnostic, IssueKind

logger = logging.getLogger(__name__)


# ---------- Модель ----------
@dataclass(frozen=True)
class SlicingConfig:
    layer_height: float = 0.2         # мм
    infill_density: float = 0.2       # 0..1
    perimeter_width: float = 0.4      # мм
    perimeter_count: int = 2
    top_bottom_layers: int = 3
    print_speed: float = 2400.0       # мм/мин (40 мм/с)
    filament_density: float = 1.25    # г/см³ (PLA)
    filament_diameter: float = 1.75   # мм
    real_weight: Optional[float] = None   # г, посчитано слайсером
    real_time: Optional[float] = None     # ч, посчитано слайсером
    explicit_fields: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def has_real_weight(self) -> bool:
        return self.real_weight is not None

    @property
    def has_real_time(self) -> bool:
        return self.real_time is not None

    @classmethod
    def from_defaults(cls, defaults: Mapping | None = None) -> "SlicingConfig":
        """Дефолты из calibration.json["defaults"]; неизвестные ключи игнорируются."""
        base = cls()
        if not defaults:
            return base
        values = {}
        for name in ("layer_height", "infill_density", "perimeter_width", "print_speed",
                     "filament_density", "filament_diameter"):
            if name in defaults:
                values[name] = float(defaults[name])
        for name in ("perimeter_count", "top_bottom_layers"):
            if name in defaults:
                values[name] = int(defaults[name])
        return replace(base, **values)


@dataclass(frozen=True)
class ConfigExtraction:
    config: SlicingConfig
    config_found: bool
    files_used: Tuple[str, ...]
    warnings: Tuple[Diagnostic, ...]


# ---------- Кандидаты ----------
CONFIG_CANDIDATES: Tuple[str, ...] = tuple(dict.fromkeys([
    # OrcaSlicer / Bambu Studio
    "Metadata/project_settings.config",
    "Metadata/process_settings_1.config",
    # Slic3r / PrusaSlicer
    "Metadata/Slic3r_PE.config",
    "Metadata/print_config.ini",
    "Metadata/config.ini",
    "Metadata/slice_settings.config",
    # Cura
    "Cura/print_settings.cfg",
    # в корне архива
    "print_config.ini",
    "config.ini",
    "print_settings.config",
    "printer_settings.config",
    # итоговые значения слайсера идут последними
    "slice_info.config",
    "Metadata/slice_info.config",
]))


# ---------- Парсинг чисел/времени ----------
_NUM_RE = re.compile(r"^\s*[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")


def leading_float(value) -> Optional[float]:
    """Число в начале строки ("0.2mm" -> 0.2, "15%" -> 15). Нет числа/не конечно -> None."""
    m = _NUM_RE.match(str(value))
    if not m:
        return None
    f = float(m.group(0))
    return f if math.isfinite(f) else None


_UNITS_RE = re.compile(r"^(?:(\d+(?:\.\d+)?)\s*d)?\s*(?:(\d+(?:\.\d+)?)\s*h)?\s*(?:(\d+(?:\.\d+)?)\s*m)?\s*(?:(\d+(?:\.\d+)?)\s*s)?$")
_COLON_RE = re.compile(r"^(\d+):(\d+)(?::(\d+))?$")


def parse_slicer_time(value: str) -> float:
    """
    Время слайсера -> часы. Форматы:
      "8h 6m", "1d 2h 3m 4s", "8:06", "8:06:30", "486m", "29160s",
      голое число: >1000 — секунды, >60 — минуты, иначе часы.
    Нераспознанное -> 0.0.
    """
    s = str(value or "").strip().strip('"').strip().lower()
    if not s:
        return 0.0
    m = _COLON_RE.match(s)
    if m:
        return int(m.group(1)) + int(m.group(2)) / 60.0 + int(m.group(3) or 0) / 3600.0
    m = _UNITS_RE.match(s)
    if m and any(m.groups()):
        d, h, mi, sec = (float(g) if g else 0.0 for g in m.groups())
        return d * 24.0 + h + mi / 60.0 + sec / 3600.0
    num = leading_float(s)
    if num is None:
        return 0.0
    if num > 1000:
        return num / 3600.0
    if num > 60:
        return num / 60.0
    return num


# ---------- Сеттеры полей ----------
# Сеттер: (raw, текущее состояние) -> новое значение для поля
# или строка-причина отказа (значение отбрасывается).
_Setter = Callable[[str, Dict[str, object]], object]


class _Reject(str):
    pass


def _float_in(lo: float, hi: float, *, lo_incl: bool = False, hi_incl: bool = False, unit: str = ""):
    def setter(raw: str, state: Dict[str, object]):
        v = leading_float(raw)
        if v is None:
            return _Reject(f"not a number: {raw!r}")
        ok_lo = v >= lo if lo_incl else v > lo
        ok_hi = v <= hi if hi_incl else v < hi
        if not (ok_lo and ok_hi):
            return _Reject(f"{v}{unit} outside plausible range ({lo}, {hi})")
        return v
    return setter


def _int_in(lo: int, hi: int):
    def setter(raw: str, state: Dict[str, object]):
        v = leading_float(raw)
        if v is None:
            return _Reject(f"not a number: {raw!r}")
        n = int(v)
        if not (lo < n < hi):
            return _Reject(f"{n} outside plausible range ({lo}, {hi})")
        return n
    return setter


def _set_infill(raw: str, state: Dict[str, object]):
    v = leading_float(raw)
    if v is None:
        return _Reject(f"not a number: {raw!r}")
    if 0.0 <= v <= 1.0:
        return v
    if 1.0 < v <= 100.0:
        return v / 100.0
    return _Reject(f"{v} is neither a fraction [0,1] nor a percent (1,100]")


def _set_shell_layers(raw: str, state: Dict[str, object]):
    v = leading_float(raw)
    if v is None:
        return _Reject(f"not a number: {raw!r}")
    n = int(v)
    if not (0 <= n <= 50):
        return _Reject(f"{n} outside plausible range [0, 50]")
    # top и bottom сводятся в одно поле: берём большее из явно заданных
    if "top_bottom_layers" in state["_explicit"]:
        return max(int(state["top_bottom_layers"]), n)
    return n


def _set_speed(raw: str, state: Dict[str, object]):
    v = leading_float(raw)
    if v is None:
        return _Reject(f"not a number: {raw!r}")
    if v <= 0:
        return _Reject(f"{v} must be > 0")
    mm_min = v if v > 100 else v * 60.0
    if mm_min > 60000.0:
        return _Reject(f"{mm_min} mm/min above plausible maximum 60000")
    return mm_min


def _set_real_weight(raw: str, state: Dict[str, object]):
    v = leading_float(raw)
    if v is None:
        return _Reject(f"not a number: {raw!r}")
    if not (0.0 < v < 100000.0):
        return _Reject(f"{v} g outside plausible range (0, 100000)")
    return v


def _set_real_time(raw: str, state: Dict[str, object]):
    h = parse_slicer_time(raw)
    if not (h > 0.0 and math.isfinite(h)):
        return _Reject(f"unparseable print time {raw!r}")
    return h


FIELD_SETTERS: Dict[str, _Setter] = {
    "layer_height": _float_in(0.0, 2.0, unit="mm"),
    "infill_density": _set_infill,
    "perimeter_width": _float_in(0.0, 2.0, unit="mm"),
    "perimeter_count": _int_in(0, 10),
    "top_bottom_layers": _set_shell_layers,
    "print_speed": _set_speed,
    "filament_density": _float_in(0.0, 10.0, unit="g/cm3"),
    "filament_diameter": _float_in(0.0, 5.0, unit="mm"),
    "real_weight": _set_real_weight,
    "real_time": _set_real_time,
}

# ключ конфига (lower) -> поле SlicingConfig
KEY_SYNONYMS: Dict[str, str] = {
    # высота слоя
    "layer_height": "layer_height",
    "first_layer_height": "layer_height",
    "layer_height_0": "layer_height",
    # заполнение
    "fill_density": "infill_density",
    "infill_density": "infill_density",
    "sparse_infill_density": "infill_density",
    "infill_sparse_density": "infill_density",
    # ширина экструзии
    "extrusion_width": "perimeter_width",
    "line_width": "perimeter_width",
    "nozzle_diameter": "perimeter_width",
    "perimeter_extrusion_width": "perimeter_width",
    "outer_wall_line_width": "perimeter_width",
    "wall_line_width": "perimeter_width",
    # периметры
    "perimeters": "perimeter_count",
    "wall_line_count": "perimeter_count",
    "perimeter_count": "perimeter_count",
    "wall_loops": "perimeter_count",
    # сплошные слои
    "top_solid_layers": "top_bottom_layers",
    "top_layers": "top_bottom_layers",
    "top_shell_layers": "top_bottom_layers",
    "bottom_solid_layers": "top_bottom_layers",
    "bottom_layers": "top_bottom_layers",
    "bottom_shell_layers": "top_bottom_layers",
    # скорость
    "print_speed": "print_speed",
    "speed_print": "print_speed",
    "perimeter_speed": "print_speed",
    "outer_perimeter_speed": "print_speed",
    "outer_wall_speed": "print_speed",
    # материал
    "filament_density": "filament_density",
    "material_density": "filament_density",
    "filament_diameter": "filament_diameter",
    "material_diameter": "filament_diameter",
    # итоги слайсера
    "filament_used_g": "real_weight",
    "total_filament_used": "real_weight",
    "filament_weight": "real_weight",
    "total_filament_weight": "real_weight",
    "estimated_printing_time": "real_time",
    "estimated_print_time": "real_time",
    "print_time": "real_time",
    "total_print_time": "real_time",
}

_INTERESTING = ("weight", "time", "filament", "print")


# ---------- Разбор текста ----------
def iter_config_pairs(text: str):
    """(номер строки, key, value) для `key=value` строк; JSON-объект — по ключам."""
    stripped = text.lstrip()
    if stripped.startswith("{"):
        try:
            obj = json.loads(stripped)
        except (ValueError, RecursionError):  # JSONDecodeError или слишком глубокая вложенность
            obj = None
        if isinstance(obj, dict):
            for idx, (k, v) in enumerate(obj.items(), 1):
                if isinstance(v, list):
                    if not v:
                        continue
                    v = v[0]
                if isinstance(v, (dict, bool)) or v is None:
                    continue
                yield idx, str(k).strip().lower(), str(v).strip()
            return
    for idx, line in enumerate(text.splitlines(), 1):
        s = line.strip()
        if not s or s.startswith("#") or s.startswith(";") or "=" not in s:
            continue
        key, value = s.split("=", 1)
        yield idx, key.strip().lower(), value.strip()


def apply_pairs(state: Dict[str, object], pairs, *, source: str, warnings: List[Diagnostic]) -> int:
    """Применяет пары к состоянию; возвращает число принятых значений."""
    accepted = 0
    for line_no, key, value in pairs:
        field_name = KEY_SYNONYMS.get(key)
        if field_name is None:
            if any(w in key for w in _INTERESTING):
                logger.debug("%s:%d unmapped key %s = %s", source, line_no, key, value)
            continue
        result = FIELD_SETTERS[field_name](value, state)
        if isinstance(result, _Reject):
            msg = f"{source}:{line_no}: rejected {key}={value!r} ({result})"
            logger.warning(msg)
            warnings.append(Diagnostic(IssueKind.CONFIG_VALUE_REJECTED, msg, source))
            continue
        state[field_name] = result
        state["_explicit"].add(field_name)
        accepted += 1
        logger.debug("%s:%d %s -> %s = %r", source, line_no, key, field_name, result)
    return accepted


def _state_from(config: SlicingConfig) -> Dict[str, object]:
    state: Dict[str, object] = {name: getattr(config, name) for name in FIELD_SETTERS}
    state["_explicit"] = set(config.explicit_fields)
    return state


def _config_from(state: Dict[str, object]) -> SlicingConfig:
    values = {name: state[name] for name in FIELD_SETTERS}
    return SlicingConfig(explicit_fields=frozenset(state["_explicit"]), **values)


def parse_config_text(text: str, *, base: SlicingConfig | None = None, source: str = "<text>") -> Tuple[SlicingConfig, Tuple[Diagnostic, ...]]:
    """Разбор одного текста конфига поверх base (удобно для тестов и CLI)."""
    warnings: List[Diagnostic] = []
    state = _state_from(base or SlicingConfig())
    apply_pairs(state, iter_config_pairs(text), source=source, warnings=warnings)
    return _config_from(state), tuple(warnings)


def extract_slicing_config(
    archive: ProjectArchive,
    *,
    defaults: Mapping | None = None,
    deadline: Deadline = NO_DEADLINE,
) -> ConfigExtraction:
    state = _state_from(SlicingConfig.from_defaults(defaults))
    warnings: List[Diagnostic] = []
    used: List[str] = []

    for path in CONFIG_CANDIDATES:
        deadline.check("config extraction")
        if not archive.has(path):
            continue
        used.append(path)
        try:
            text = archive.read_text(path)
        except ArchiveError as e:
            msg = f"Config {path} unreadable: {e}"
            logger.warning(msg)
            warnings.append(Diagnostic(IssueKind.CONFIG_UNREADABLE, msg, path))
            continue
        n = apply_pairs(state, iter_config_pairs(text), source=path, warnings=warnings)
        logger.info("config %s: %d values accepted", path, n)

    if not used:
        warnings.append(Diagnostic(
            IssueKind.CONFIG_NOT_FOUND,
            "No slicer configuration found in archive; using default slicing parameters",
        ))

    config = _config_from(state)
    return ConfigExtraction(
        config=config,
        config_found=bool(used),
        files_used=tuple(used),
        warnings=tuple(warnings),
    )
