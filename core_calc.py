# -*- coding: utf-8 -*-
"""
core_calc.py — чистое ядро оценки веса филамента и времени печати по плитам

Цели:
- Никакого UI. Один источник правды для: политики выбора (реальные данные слайсера
  против геометрической оценки), формул, финальной валидации, загрузки calibration.json.
- Оркестратор и CLI — тонкие оболочки над этим модулем.

Политика (строго по приоритету, ветки взаимоисключающие):
  1. есть и вес, и время слайсера -> распределяем итоги по плитам (доля объёма
     или доли из по-плитных итогов слайсера, если они есть у всех плит);
  2. есть только одно -> известное распределяем, недостающее считаем по геометрии;
  3. ничего нет -> чистая геометрия.
"""
from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from config_core import SlicingConfig
from diag_core import Diagnostic, IssueKind
from geometry_core import ModelGeometry
from plate_core import PlateMetadata, PlateSummary

logger = logging.getLogger(__name__)


# ---------- Утилиты ----------
def nz(v, d=0.0) -> float:
    try:
        f = float(v)
        if np.isfinite(f):
            return f
    except (TypeError, ValueError):
        pass
    return d


def deep_merge(dst: dict, src: dict) -> dict:
    """Глубокое слияние словарей src в dst (in-place). Возвращает dst."""
    for k, v in (src or {}).items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            deep_merge(dst[k], v)
        else:
            dst[k] = v
    return dst


def _hm(hours: float) -> str:
    hours = max(0.0, nz(hours))
    h = int(hours)
    m = int(round((hours - h) * 60))
    if m == 60:
        h, m = h + 1, 0
    return f"{h}ч {m:02d}м"


def round_never_zero(value: float, ndigits: int) -> float:
    """Округление, которое не превращает положительное значение в 0."""
    r = round(value, ndigits)
    if r <= 0 < value:
        return 10.0 ** -ndigits
    return r


# ---------- Defaults ----------
DEFAULT_CALIBRATION = {
    "estimation": {
        "complexity_factor": 1.5,   # разгоны/торможения и холостые перемещения
        "filament_factor": 1.0,     # калибровочный множитель веса (0.43: подгонка под benchy)
        "min_weight_g": 10.0,
        "min_time_h": 1.0,
    },
    "defaults": {
        "layer_height": 0.2,
        "infill_density": 0.2,
        "perimeter_width": 0.4,
        "perimeter_count": 2,
        "top_bottom_layers": 3,
        "print_speed": 2400.0,
        "filament_density": 1.25,
        "filament_diameter": 1.75,
    },
    "fallback": {
        "emergency_weight_g": 10.0,
        "emergency_time_h": 1.0,
        "failure_weight_g": 15.0,
        "failure_time_h": 2.0,
        "placeholder_size_mm": [50.0, 50.0, 30.0],
        "placeholder_volume_mm3": 15000.0,
        "placeholder_surface_mm2": 8600.0,
    },
    "limits": {
        "max_entry_bytes": 25 * 1024 * 1024,
        "max_vertices": 20_000_000,
        "max_triangles": 40_000_000,
    },
}


def calibration_with(override: Mapping | None = None) -> dict:
    """Копия DEFAULT_CALIBRATION с наложенным override."""
    out = json.loads(json.dumps(DEFAULT_CALIBRATION))
    if override:
        deep_merge(out, json.loads(json.dumps(override)))
    return out


# ---------- Config loading (единая правда для CLI/оркестратора) ----------
def get_default_config_dir() -> str:
    """
    Папка, относительно которой по умолчанию ищем calibration.json / materials.json.
    Детерминированно: рядом с core_calc.py.
    """
    return os.path.dirname(os.path.abspath(__file__))


def get_default_calibration_path(config_dir: str | None = None) -> str:
    base = config_dir or get_default_config_dir()
    return os.path.join(base, "calibration.json")


def get_default_materials_path(config_dir: str | None = None) -> str:
    base = config_dir or get_default_config_dir()
    return os.path.join(base, "materials.json")


def load_materials_json(path: str) -> dict:
    """
    materials.json -> density_by_material
    Формат: { "Material": {"density_g_cm3": 1.24}, ... }
    """
    if not os.path.exists(path):
        raise FileNotFoundError(path)

    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    if not isinstance(data, dict) or not data:
        raise ValueError("materials.json: expected object {material: {...}}")

    density = {}
    for name, row in data.items():
        if not isinstance(row, dict):
            raise ValueError(f"materials.json: invalid row for '{name}'")
        if "density_g_cm3" not in row:
            raise ValueError(f"materials.json: '{name}' missing density_g_cm3")
        d = nz(row["density_g_cm3"], -1.0)
        if not (0.0 < d < 10.0):
            raise ValueError(f"materials.json: '{name}' density_g_cm3 out of range: {row['density_g_cm3']!r}")
        density[name] = d
    return density


def load_calibration_json(path: str, *, base: dict | None = None, override: dict | None = None) -> dict:
    """
    calibration.json -> calibration dict.
    base: если задан, то в него мерджится файл (удобно для DEFAULT_CALIBRATION).
    override: мердж поверх результата (например, --set в CLI).
    """
    if not os.path.exists(path):
        raise FileNotFoundError(path)

    with open(path, "r", encoding="utf-8") as f:
        cfg = json.load(f)

    if not isinstance(cfg, dict) or not cfg:
        raise ValueError("calibration.json: expected object")

    out = json.loads(json.dumps(base)) if isinstance(base, dict) else {}
    deep_merge(out, cfg)
    if override:
        deep_merge(out, override)
    return out


# ---------- Модель результата ----------
@dataclass(frozen=True)
class EstimationUnit:
    """Вход формул для одной плиты/модели (мм, мм², мм³)."""
    plate_id: str
    plate_name: str
    volume: float
    surface_area: float
    footprint_area: float
    height: float
    layer_height: Optional[float] = None
    perimeter_width: Optional[float] = None
    models: Tuple[str, ...] = ()
    plate_index: Optional[int] = None


@dataclass(frozen=True)
class PlateData:
    plate_id: str
    plate_name: str
    filament_weight: float      # г
    print_hours: float          # ч
    layer_height: float
    infill: int                 # %
    models: Tuple[str, ...]

    def to_dict(self) -> dict:
        return {
            "plate_id": self.plate_id,
            "plate_name": self.plate_name,
            "filament_weight_g": self.filament_weight,
            "print_hours": self.print_hours,
            "layer_height_mm": self.layer_height,
            "infill_pct": self.infill,
            "models": list(self.models),
        }


@dataclass(frozen=True)
class SlicerData:
    plates: Tuple[PlateData, ...] = ()
    total_weight: float = 0.0
    total_time: float = 0.0

    def to_dict(self) -> dict:
        return {
            "plates": [p.to_dict() for p in self.plates],
            "total_weight_g": self.total_weight,
            "total_time_h": self.total_time,
        }


STRATEGY_REAL = "real"
STRATEGY_PARTIAL_WEIGHT = "partial_real_weight"
STRATEGY_PARTIAL_TIME = "partial_real_time"
STRATEGY_GEOMETRY = "geometry"


@dataclass(frozen=True)
class Estimate:
    plates: Tuple[PlateData, ...]
    strategy: str
    warnings: Tuple[Diagnostic, ...] = field(default_factory=tuple)


# ---------- Построение юнитов ----------
def units_from_geometry(geometries: Sequence[ModelGeometry]) -> Tuple[EstimationUnit, ...]:
    out = []
    for i, g in enumerate(geometries, 1):
        bb = g.bounding_box
        out.append(EstimationUnit(
            plate_id=f"plate_{i}",
            plate_name=f"Plate {i}",
            volume=g.volume,
            surface_area=g.surface_area,
            footprint_area=bb.footprint_area,
            height=bb.height,
            models=(g.name,),
        ))
    return tuple(out)


def units_from_metadata(
    plates: Sequence[PlateMetadata],
    geometries: Sequence[ModelGeometry],
    config: SlicingConfig,
) -> Tuple[EstimationUnit, ...]:
    """
    Одна единица на plate_<n>.json. Метаданные (площадь, высота, имена, слой)
    важнее геометрии; объём/поверхность берём у мешей с тем же именем, иначе делим
    общие по доле площади плиты, иначе поровну.
    """
    if not plates:
        return ()
    real = [g for g in geometries if not g.synthetic]
    pool = real or list(geometries)
    total_volume = sum(g.volume for g in pool)
    total_surface = sum(g.surface_area for g in pool)
    max_height = max((g.bounding_box.height for g in pool), default=0.0)
    total_area = sum(p.area for p in plates)
    use_nozzle = "perimeter_width" not in config.explicit_fields

    out = []
    for p in plates:
        names = set(p.object_names)
        matched = [g for g in real if g.name in names]
        if matched:
            volume = sum(g.volume for g in matched)
            surface = sum(g.surface_area for g in matched)
        else:
            share = (p.area / total_area) if total_area > 0 else 1.0 / len(plates)
            volume = total_volume * share
            surface = total_surface * share

        height = p.height
        if height is None:
            height = max((g.bounding_box.height for g in matched), default=max_height)

        footprint = p.area
        if footprint <= 0:
            x0, y0, x1, y1 = p.bbox
            footprint = max(0.0, x1 - x0) * max(0.0, y1 - y0)
        if footprint <= 0 and matched:
            footprint = sum(g.bounding_box.footprint_area for g in matched)

        models = p.object_names or tuple(g.name for g in matched)
        out.append(EstimationUnit(
            plate_id=f"plate_{p.plate_index}",
            plate_name=f"Plate {p.plate_index}",
            volume=volume,
            surface_area=surface,
            footprint_area=footprint,
            height=height,
            layer_height=p.layer_height,
            perimeter_width=p.nozzle_diameter if use_nozzle else None,
            models=models,
            plate_index=p.plate_index,
        ))
    return tuple(out)


# ---------- Формулы ----------
def _layer_height(unit: EstimationUnit, config: SlicingConfig) -> float:
    return unit.layer_height if unit.layer_height and unit.layer_height > 0 else config.layer_height


def layer_count(height: float, layer_height: float) -> int:
    if not (layer_height > 0) or not math.isfinite(height):
        return 1
    return max(1, math.ceil(height / layer_height))


def filament_volume_mm3(unit: EstimationUnit, config: SlicingConfig) -> float:
    """периметры + заполнение + верх/низ (аддитивная эвристика)."""
    lh = _layer_height(unit, config)
    width = unit.perimeter_width if unit.perimeter_width and unit.perimeter_width > 0 else config.perimeter_width
    perimeters = unit.surface_area * width * config.perimeter_count
    infill = unit.volume * config.infill_density
    shells = unit.surface_area * lh * config.top_bottom_layers * 2
    return perimeters + infill + shells


def geometric_weight_g(unit: EstimationUnit, config: SlicingConfig, calibration: Mapping) -> float:
    est = calibration.get("estimation", {})
    return filament_volume_mm3(unit, config) / 1000.0 * config.filament_density * nz(est.get("filament_factor"), 1.0)


def geometric_hours(unit: EstimationUnit, config: SlicingConfig, calibration: Mapping) -> float:
    est = calibration.get("estimation", {})
    if not (config.print_speed > 0):
        return 0.0
    layers = layer_count(unit.height, _layer_height(unit, config))
    layer_min = unit.footprint_area / config.print_speed
    return layer_min * layers * nz(est.get("complexity_factor"), 1.5) / 60.0


def _shares(weights: Sequence[float]) -> List[float]:
    total = sum(w for w in weights if w > 0 and math.isfinite(w))
    if total <= 0:
        return [1.0 / len(weights)] * len(weights)
    return [(w / total) if (w > 0 and math.isfinite(w)) else 0.0 for w in weights]


def volume_shares(units: Sequence[EstimationUnit]) -> List[float]:
    return _shares([u.volume for u in units])


def apportion(total: float, shares: Sequence[float], ndigits: int) -> List[float]:
    """
    Делит total по долям с шагом 10^-ndigits методом наибольшего остатка:
    округлённые части в сумме дают ровно round(total, ndigits).
    Плите с нулевой частью отдаётся один шаг (у самой большой, если есть из чего).
    """
    scale = 10 ** ndigits
    quanta = max(0, int(round(total * scale)))
    raw = [quanta * s for s in shares]
    parts = [int(math.floor(r)) for r in raw]
    rest = quanta - sum(parts)
    order = sorted(range(len(parts)), key=lambda i: (-(raw[i] - parts[i]), i))
    for i in order[:max(0, rest)]:
        parts[i] += 1
    for i, p in enumerate(parts):
        if p == 0:
            donor = max(range(len(parts)), key=lambda j: (parts[j], -j))
            if parts[donor] > 1:
                parts[donor] -= 1
            parts[i] = 1
    return [p / scale for p in parts]


# ---------- Валидация ----------
def validate_plate(
    unit: EstimationUnit,
    weight: float,
    hours: float,
    config: SlicingConfig,
    calibration: Mapping,
    warnings: List[Diagnostic],
) -> PlateData:
    est = calibration.get("estimation", {})
    min_w = nz(est.get("min_weight_g"), 10.0)
    min_h = nz(est.get("min_time_h"), 1.0)
    if not (math.isfinite(weight) and weight > 0):
        warnings.append(Diagnostic(IssueKind.VALUE_CLAMPED,
                                   f"{unit.plate_id}: weight {weight!r} replaced with {min_w} g"))
        weight = min_w
    if not (math.isfinite(hours) and hours > 0):
        warnings.append(Diagnostic(IssueKind.VALUE_CLAMPED,
                                   f"{unit.plate_id}: print time {hours!r} replaced with {min_h} h"))
        hours = min_h
    infill = int(round(min(1.0, max(0.0, config.infill_density)) * 100))
    return PlateData(
        plate_id=unit.plate_id,
        plate_name=unit.plate_name,
        filament_weight=round_never_zero(weight, 2),
        print_hours=round_never_zero(hours, 1),
        layer_height=round(_layer_height(unit, config), 2),
        infill=infill,
        models=tuple(unit.models) or ("Unnamed model",),
    )


# ---------- Решающее ядро ----------
def estimate_plates(
    config: SlicingConfig,
    units: Sequence[EstimationUnit],
    *,
    summaries: Sequence[PlateSummary] = (),
    calibration: Mapping | None = None,
) -> Estimate:
    """Детерминированно: одинаковый вход -> одинаковый выход."""
    cal = calibration if calibration is not None else DEFAULT_CALIBRATION
    units = tuple(units)
    warnings: List[Diagnostic] = []
    if not units:
        return Estimate(plates=(), strategy=STRATEGY_GEOMETRY)

    by_index: Dict[int, PlateSummary] = {s.plate_index: s for s in summaries}
    vol_shares = volume_shares(units)

    def summary_shares(attr: str) -> Optional[List[float]]:
        vals = []
        for u in units:
            s = by_index.get(u.plate_index) if u.plate_index is not None else None
            v = getattr(s, attr) if s is not None else None
            if not v:
                return None
            vals.append(v)
        return _shares(vals)

    if config.has_real_weight and config.has_real_time:
        strategy = STRATEGY_REAL
        w_shares = summary_shares("weight_g") or vol_shares
        h_shares = summary_shares("hours") or vol_shares
        weights = apportion(config.real_weight, w_shares, 2)
        hours = apportion(config.real_time, h_shares, 1)
    elif config.has_real_weight:
        strategy = STRATEGY_PARTIAL_WEIGHT
        warnings.append(Diagnostic(IssueKind.PARTIAL_REAL_DATA,
                                   "Only the slicer's filament weight was found; print time is estimated from geometry"))
        w_shares = summary_shares("weight_g") or vol_shares
        weights = apportion(config.real_weight, w_shares, 2)
        hours = [geometric_hours(u, config, cal) for u in units]
    elif config.has_real_time:
        strategy = STRATEGY_PARTIAL_TIME
        warnings.append(Diagnostic(IssueKind.PARTIAL_REAL_DATA,
                                   "Only the slicer's print time was found; filament weight is estimated from geometry"))
        h_shares = summary_shares("hours") or vol_shares
        weights = [geometric_weight_g(u, config, cal) for u in units]
        hours = apportion(config.real_time, h_shares, 1)
    else:
        strategy = STRATEGY_GEOMETRY
        warnings.append(Diagnostic(IssueKind.NO_REAL_VALUES,
                                   "No slicer totals found; weight and time are geometric estimates"))
        weights = [geometric_weight_g(u, config, cal) for u in units]
        hours = [geometric_hours(u, config, cal) for u in units]

    plates = tuple(validate_plate(u, w, h, config, cal, warnings) for u, w, h in zip(units, weights, hours))
    logger.info("estimate: strategy=%s plates=%d", strategy, len(plates))
    return Estimate(plates=plates, strategy=strategy, warnings=tuple(warnings))


def summarize_plates(plates: Sequence[PlateData]) -> SlicerData:
    plates = tuple(plates)
    return SlicerData(
        plates=plates,
        total_weight=round(sum(p.filament_weight for p in plates), 2),
        total_time=round(sum(p.print_hours for p in plates), 1),
    )


# ---------- Аварийные плиты ----------
def _fixed_plate(plate_id: str, name: str, weight: float, hours: float, config: SlicingConfig, models) -> PlateData:
    return PlateData(
        plate_id=plate_id,
        plate_name=name,
        filament_weight=round_never_zero(weight, 2),
        print_hours=round_never_zero(hours, 1),
        layer_height=round(config.layer_height, 2),
        infill=int(round(min(1.0, max(0.0, config.infill_density)) * 100)),
        models=tuple(models),
    )


def emergency_plate(config: SlicingConfig | None = None, calibration: Mapping | None = None) -> PlateData:
    """Ни одной плиты не получилось — минимальная заглушка."""
    fb = (calibration or DEFAULT_CALIBRATION).get("fallback", {})
    return _fixed_plate("plate_emergency", "Emergency plate",
                        nz(fb.get("emergency_weight_g"), 10.0), nz(fb.get("emergency_time_h"), 1.0),
                        config or SlicingConfig(), ("Default model",))


def fallback_plate(config: SlicingConfig | None = None, calibration: Mapping | None = None) -> PlateData:
    """Неожиданная ошибка после открытия архива."""
    fb = (calibration or DEFAULT_CALIBRATION).get("fallback", {})
    return _fixed_plate("plate_fallback", "Fallback plate",
                        nz(fb.get("failure_weight_g"), 15.0), nz(fb.get("failure_time_h"), 2.0),
                        config or SlicingConfig(), ("Fallback model",))
