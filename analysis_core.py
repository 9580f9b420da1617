# -*- coding: utf-8 -*-
"""
analysis_core.py — оркестратор анализа проекта

open -> (config, plate metadata + итоги, geometry) -> units -> estimate -> summarize.

Гарантии:
- Никогда не бросает исключений наружу.
- Архив не открылся -> ошибка ARCHIVE_UNREADABLE, ноль плит, итоги 0.
- Любой сбой после открытия -> ошибка ANALYSIS_FAILED + фиксированная fallback-плита.
- Оценка не дала плит -> emergency-плита + предупреждение.
- Каждый вызов независим: никакого состояния между вызовами.
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import List, Mapping, Optional, Tuple

from archive_core import MAX_ENTRY_BYTES, ArchiveError, ProjectArchive
from config_core import ConfigExtraction, SlicingConfig, extract_slicing_config
from core_calc import (
    SlicerData,
    calibration_with,
    emergency_plate,
    estimate_plates,
    fallback_plate,
    nz,
    summarize_plates,
    units_from_geometry,
    units_from_metadata,
)
from diag_core import Deadline, DeadlineExceeded, Diagnostic, IssueKind
from geometry_core import GeometryExtraction, extract_geometries
from plate_core import PlateExtraction, PlateSummary, read_plates

logger = logging.getLogger(__name__)

STRATEGY_NONE = "none"
STRATEGY_EMERGENCY = "emergency"
STRATEGY_FALLBACK = "fallback"


@dataclass(frozen=True)
class AnalysisInfo:
    slicer_data: SlicerData
    warnings: Tuple[Diagnostic, ...] = ()
    errors: Tuple[Diagnostic, ...] = ()
    config_found: bool = False
    real_values_found: bool = False
    models_found: int = 0
    files_inspected: Tuple[str, ...] = ()
    strategy: str = STRATEGY_NONE
    elapsed_s: float = 0.0
    plate_summaries: Tuple[PlateSummary, ...] = ()   # итоги слайсера по плитам, с разбивкой по филаментам

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def warning_messages(self) -> Tuple[str, ...]:
        return tuple(d.message for d in self.warnings)

    @property
    def error_messages(self) -> Tuple[str, ...]:
        return tuple(d.message for d in self.errors)

    @property
    def warning_kinds(self) -> Tuple[IssueKind, ...]:
        return tuple(d.kind for d in self.warnings)

    def to_dict(self) -> dict:
        return {
            "slicer_data": self.slicer_data.to_dict(),
            "warnings": [d.to_dict() for d in self.warnings],
            "errors": [d.to_dict() for d in self.errors],
            "config_found": self.config_found,
            "real_values_found": self.real_values_found,
            "models_found": self.models_found,
            "files_inspected": list(self.files_inspected),
            "strategy": self.strategy,
            "elapsed_s": self.elapsed_s,
            "plate_summaries": [s.to_dict() for s in self.plate_summaries],
        }


def _fill_totals_from_summaries(config: SlicingConfig, plates: PlateExtraction) -> SlicingConfig:
    """
    Конфиг без итогов, но итог слайсера есть у каждой известной плиты
    (plate_<n>.json и сами итоги) -> итоги = суммы. Поле заполняется,
    только если оно известно для всех плит.
    """
    if not plates.summaries:
        return config
    indexes = sorted({p.plate_index for p in plates.plates} | {s.plate_index for s in plates.summaries})
    found = [plates.summary_for(i) for i in indexes]
    if any(s is None for s in found):
        logger.info("slicer summaries cover %d of %d plate(s); totals left unset",
                    sum(1 for s in found if s is not None), len(indexes))
        return config
    values = {}
    if not config.has_real_weight and all(s.weight_g for s in found):
        values["real_weight"] = sum(s.weight_g for s in found)
    if not config.has_real_time and all(s.hours for s in found):
        values["real_time"] = sum(s.hours for s in found)
    if values:
        logger.info("slicer totals taken from per-plate summaries: %s", values)
        return replace(config, **values)
    return config


def _run_stages(archive: ProjectArchive, cal: Mapping, deadline: Deadline, parallel: bool):
    def cfg_stage() -> ConfigExtraction:
        return extract_slicing_config(archive, defaults=cal.get("defaults"), deadline=deadline)

    def plate_stage() -> PlateExtraction:
        return read_plates(archive, deadline=deadline)

    def geo_stage() -> GeometryExtraction:
        return extract_geometries(archive, limits=cal.get("limits"), fallback=cal.get("fallback"), deadline=deadline)

    if not parallel:
        return cfg_stage(), plate_stage(), geo_stage()
    with ThreadPoolExecutor(max_workers=3, thread_name_prefix="analyze") as ex:
        f_cfg = ex.submit(cfg_stage)
        f_plates = ex.submit(plate_stage)
        f_geo = ex.submit(geo_stage)
        return f_cfg.result(), f_plates.result(), f_geo.result()


def analyze_archive(
    archive: ProjectArchive,
    *,
    calibration: Mapping | None = None,
    deadline_s: float | None = None,
    parallel: bool = False,
) -> AnalysisInfo:
    """Анализ уже открытого архива (архив не закрывается)."""
    t0 = time.perf_counter()
    cal = calibration_with(calibration)
    deadline = Deadline(deadline_s)
    warnings: List[Diagnostic] = []
    errors: List[Diagnostic] = []
    inspected: List[str] = []
    config: Optional[SlicingConfig] = None
    config_found = False
    models_found = 0
    plate_summaries: Tuple[PlateSummary, ...] = ()

    try:
        cfg, plates, geo = _run_stages(archive, cal, deadline, parallel)
        config_found = cfg.config_found
        plate_summaries = plates.summaries
        models_found = 0 if geo.placeholder_used else len(geo.models)
        inspected = list(dict.fromkeys(cfg.files_used + plates.files_inspected + geo.files_inspected))
        warnings.extend(cfg.warnings + plates.warnings + geo.warnings)

        config = _fill_totals_from_summaries(cfg.config, plates)
        deadline.check("estimation")
        units = units_from_metadata(plates.plates, geo.models, config) or units_from_geometry(geo.models)
        estimate = estimate_plates(config, units, summaries=plates.summaries, calibration=cal)
        warnings.extend(estimate.warnings)
        out_plates = estimate.plates
        strategy = estimate.strategy
        if not out_plates:
            warnings.append(Diagnostic(IssueKind.EMERGENCY_PLATE,
                                       "No plates could be derived; using an emergency plate"))
            out_plates = (emergency_plate(config, cal),)
            strategy = STRATEGY_EMERGENCY
        real_found = config.has_real_weight and config.has_real_time
    except DeadlineExceeded as e:
        logger.warning("%s: %s", archive.label or "<bytes>", e)
        warnings.append(Diagnostic(IssueKind.DEADLINE_EXCEEDED, str(e)))
        warnings.append(Diagnostic(IssueKind.FALLBACK_PLATE, "Analysis incomplete; using a fallback plate"))
        out_plates = (fallback_plate(config, cal),)
        strategy = STRATEGY_FALLBACK
        real_found = False
    except Exception as e:  # оркестратор не бросает наружу
        logger.exception("analysis of %s failed", archive.label or "<bytes>")
        errors.append(Diagnostic(IssueKind.ANALYSIS_FAILED, f"Analysis failed: {type(e).__name__}: {e}"))
        warnings.append(Diagnostic(IssueKind.FALLBACK_PLATE, "Analysis failed; using a fallback plate"))
        out_plates = (fallback_plate(config, cal),)
        strategy = STRATEGY_FALLBACK
        real_found = False

    info = AnalysisInfo(
        slicer_data=summarize_plates(out_plates),
        warnings=tuple(warnings),
        errors=tuple(errors),
        config_found=config_found,
        real_values_found=real_found,
        models_found=models_found,
        files_inspected=tuple(inspected),
        strategy=strategy,
        elapsed_s=time.perf_counter() - t0,
        plate_summaries=plate_summaries,
    )
    logger.info("analysis done: strategy=%s plates=%d weight=%.2f g time=%.1f h (%.3f s)",
                info.strategy, len(info.slicer_data.plates), info.slicer_data.total_weight,
                info.slicer_data.total_time, info.elapsed_s)
    return info


def _unreadable(message: str, t0: float) -> AnalysisInfo:
    logger.warning(message)
    return AnalysisInfo(
        slicer_data=SlicerData(),
        errors=(Diagnostic(IssueKind.ARCHIVE_UNREADABLE, message),),
        strategy=STRATEGY_NONE,
        elapsed_s=time.perf_counter() - t0,
    )


def _max_entry_bytes(calibration: Mapping | None) -> int:
    limits = calibration_with(calibration).get("limits") or {}
    return int(nz(limits.get("max_entry_bytes"), MAX_ENTRY_BYTES))


def analyze_bytes(
    data: bytes,
    *,
    calibration: Mapping | None = None,
    deadline_s: float | None = None,
    parallel: bool = False,
    label: str = "",
) -> AnalysisInfo:
    t0 = time.perf_counter()
    try:
        archive = ProjectArchive.from_bytes(data, label=label, max_entry_bytes=_max_entry_bytes(calibration))
    except ArchiveError as e:
        return _unreadable(f"Archive unreadable: {e}", t0)
    with archive:
        return analyze_archive(archive, calibration=calibration, deadline_s=deadline_s, parallel=parallel)


def analyze_file(
    path: str,
    *,
    calibration: Mapping | None = None,
    deadline_s: float | None = None,
    parallel: bool = False,
) -> AnalysisInfo:
    t0 = time.perf_counter()
    try:
        archive = ProjectArchive.open(path, max_entry_bytes=_max_entry_bytes(calibration))
    except (ArchiveError, OSError) as e:
        return _unreadable(f"Archive unreadable: {e}", t0)
    with archive:
        return analyze_archive(archive, calibration=calibration, deadline_s=deadline_s, parallel=parallel)

