# -*- coding: utf-8 -*-
"""
plate_core.py — метаданные плит (Metadata/plate_<n>.json) и итоги слайсера по плитам

- plate_<n>.json (Bambu/Orca): площадь объектов, bbox, высота слоя, сопло, имена.
- Итоги по плитам: XML slice_info.config (<plate> с metadata index/weight/prediction
  и <filament> по слотам) и комментарии в Metadata/plate_<n>.gcode.
- По слотам AMS/экструдеров сохраняется разбивка: вес, тип, профиль, цвет.
- Любая ошибка разбора (включая JSON не той формы) -> warning, файл пропускается;
  отсутствие файлов — не ошибка.
"""
from __future__ import annotations

import json
import logging
import re
import xml.etree.ElementTree as ET
import zipfile
import zlib
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from archive_core import ArchiveError, ProjectArchive
from config_core import leading_float, parse_slicer_time
from diag_core import NO_DEADLINE, Deadline, Diagnostic, IssueKind

logger = logging.getLogger(__name__)

PLATE_JSON_RE = re.compile(r"^Metadata/plate_(\d+)\.json$")
PLATE_GCODE_RE = re.compile(r"^Metadata/plate_(\d+)\.gcode$")
SLICE_INFO_CANDIDATES = ("Metadata/slice_info.config", "slice_info.config")
WIPE_TOWER = "wipe_tower"

# JSON правильный синтаксически, но не той формы
_SHAPE_ERRORS = (ValueError, TypeError, AttributeError, RecursionError)


@dataclass(frozen=True)
class PlateMetadata:
    plate_index: int
    source: str
    area: float = 0.0                                   # мм², сумма площадей объектов
    bbox: Tuple[float, float, float, float] = (0.0, 0.0, 0.0, 0.0)
    height: Optional[float] = None                      # мм
    layer_height: Optional[float] = None
    nozzle_diameter: Optional[float] = None
    object_names: Tuple[str, ...] = ()


@dataclass(frozen=True)
class FilamentUsage:
    """Один слот филамента на плите (слоты с нулевым весом не хранятся)."""
    index: int                      # номер слота, с 1
    weight_g: float
    filament_type: str = ""
    profile: str = ""
    colour: str = ""

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "weight_g": self.weight_g,
            "filament_type": self.filament_type,
            "profile": self.profile,
            "colour": self.colour,
        }


@dataclass(frozen=True)
class PlateSummary:
    plate_index: int
    weight_g: Optional[float]
    hours: Optional[float]
    source: str
    filaments: Tuple[FilamentUsage, ...] = ()

    @property
    def complete(self) -> bool:
        return bool(self.weight_g) and bool(self.hours)

    def to_dict(self) -> dict:
        return {
            "plate_index": self.plate_index,
            "weight_g": self.weight_g,
            "hours": self.hours,
            "source": self.source,
            "filaments": [f.to_dict() for f in self.filaments],
        }


@dataclass(frozen=True)
class PlateExtraction:
    plates: Tuple[PlateMetadata, ...]
    summaries: Tuple[PlateSummary, ...]
    files_inspected: Tuple[str, ...]
    warnings: Tuple[Diagnostic, ...]

    def summary_for(self, plate_index: int) -> Optional[PlateSummary]:
        for s in self.summaries:
            if s.plate_index == plate_index:
                return s
        return None


def _pos(v) -> Optional[float]:
    f = leading_float(v) if v is not None else None
    return f if f is not None and f > 0 else None


def _indexed(names: List[str], pattern: re.Pattern) -> List[Tuple[int, str]]:
    out = []
    for n in names:
        m = pattern.match(n)
        if m:
            out.append((int(m.group(1)), n))
    return sorted(out)


# ---------- plate_<n>.json ----------
def parse_plate_json(index: int, path: str, text: str) -> PlateMetadata:
    """Разбор одного plate_<n>.json. JSON не той формы -> ValueError."""
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object")

    raw_objects = data.get("bbox_objects")
    if raw_objects is None:
        raw_objects = []
    if not isinstance(raw_objects, list):
        raise ValueError(f"bbox_objects must be a list, got {type(raw_objects).__name__}")
    objects = [o for o in raw_objects if isinstance(o, dict)]
    printable = [o for o in objects if str(o.get("name", "")).strip().lower() != WIPE_TOWER]

    area = 0.0
    for o in printable:
        a = leading_float(o.get("area", 0))
        if a is not None and a > 0:
            area += a

    bbox = (0.0, 0.0, 0.0, 0.0)
    raw_bbox = data.get("bbox_all")
    if raw_bbox is not None and not isinstance(raw_bbox, list):
        raise ValueError(f"bbox_all must be a list, got {type(raw_bbox).__name__}")
    if raw_bbox and len(raw_bbox) >= 4:
        vals = [leading_float(v) for v in raw_bbox[:4]]
        if all(v is not None for v in vals):
            bbox = tuple(vals)

    layer_height = _pos(data.get("layer_height"))
    if layer_height is None and printable:
        layer_height = _pos(printable[0].get("layer_height"))

    names = tuple(str(o["name"]) for o in printable if o.get("name"))
    return PlateMetadata(
        plate_index=index,
        source=path,
        area=area,
        bbox=bbox,
        height=_pos(data.get("height")),
        layer_height=layer_height,
        nozzle_diameter=_pos(data.get("nozzle_diameter")),
        object_names=names,
    )


# ---------- slice_info.config (XML) ----------
def _slice_info_filaments(plate: ET.Element) -> Tuple[FilamentUsage, ...]:
    out = []
    for fil in plate.findall("filament"):
        idx = leading_float(fil.get("id", ""))
        weight = _pos(fil.get("used_g"))
        if idx is None or weight is None:
            continue
        out.append(FilamentUsage(
            index=int(idx),
            weight_g=weight,
            filament_type=fil.get("type", ""),
            profile=fil.get("tray_info_idx", ""),
            colour=fil.get("color", ""),
        ))
    return tuple(sorted(out, key=lambda f: f.index))


def parse_slice_info_xml(path: str, data: bytes) -> List[PlateSummary]:
    root = ET.fromstring(data)
    out = []
    for plate in root.iter("plate"):
        meta: Dict[str, str] = {}
        for md in plate.findall("metadata"):
            key = md.get("key")
            if key:
                meta[key] = md.get("value", "")
        idx = leading_float(meta.get("index", ""))
        if idx is None:
            continue
        weight = _pos(meta.get("weight"))
        seconds = _pos(meta.get("prediction"))
        out.append(PlateSummary(
            plate_index=int(idx),
            weight_g=weight,
            hours=(seconds / 3600.0) if seconds else None,
            source=path,
            filaments=_slice_info_filaments(plate),
        ))
    return out


# ---------- plate_<n>.gcode (комментарии) ----------
_GCODE_WEIGHT_RE = re.compile(r"^;\s*(?:total\s+)?filament used \[g\]\s*=\s*(.+)$", re.I)
_GCODE_TIME_RES = (
    re.compile(r"^;\s*total estimated time:\s*(.+)$", re.I),
    re.compile(r"^;\s*model printing time:\s*([^;]+)", re.I),
    re.compile(r"^;\s*estimated printing time \(normal mode\)\s*=\s*(.+)$", re.I),
)
# списки по слотам, разделитель ';'
_GCODE_SLOT_RES = {
    "filament_type": re.compile(r"^;\s*filament_type\s*=\s*(.+)$", re.I),
    "profile": re.compile(r"^;\s*filament_settings_id\s*=\s*(.+)$", re.I),
    "colour": re.compile(r"^;\s*filament_colou?r\s*=\s*(.+)$", re.I),
}


def _split_slots(value: str) -> List[str]:
    return [p.strip().strip('"').strip() for p in value.split(";")]


def _gcode_filaments(weights: List[Optional[float]], slots: Dict[str, List[str]]) -> Tuple[FilamentUsage, ...]:
    out = []
    for i, w in enumerate(weights):
        if w is None or w <= 0:
            continue

        def slot(name: str) -> str:
            values = slots.get(name) or []
            return values[i] if i < len(values) else ""

        out.append(FilamentUsage(
            index=i + 1,
            weight_g=w,
            filament_type=slot("filament_type"),
            profile=slot("profile"),
            colour=slot("colour"),
        ))
    return tuple(out)


def parse_gcode_summary(index: int, path: str, lines) -> Optional[PlateSummary]:
    """
    Итоги из комментариев G-code. Вес и время обычно в заголовке, а типы/профили/цвета
    слотов в блоке конфига в конце файла: читаем, пока не соберём всё.
    """
    weights: Optional[List[Optional[float]]] = None
    hours: Optional[float] = None
    slots: Dict[str, List[str]] = {}
    for line in lines:
        if not line.startswith(";"):
            continue
        if weights is None:
            m = _GCODE_WEIGHT_RE.match(line)
            if m:
                weights = [leading_float(p) for p in m.group(1).split(",")]
                continue
        if hours is None:
            for rx in _GCODE_TIME_RES:
                m = rx.match(line)
                if m:
                    h = parse_slicer_time(m.group(1).strip())
                    hours = h if h > 0 else None
                    break
        for name, rx in _GCODE_SLOT_RES.items():
            if name not in slots:
                m = rx.match(line)
                if m:
                    slots[name] = _split_slots(m.group(1))
                    break
        if weights is not None and hours is not None and len(slots) == len(_GCODE_SLOT_RES):
            break

    filaments = _gcode_filaments(weights or [], slots)
    total = sum(f.weight_g for f in filaments)
    weight = total if total > 0 else None
    if weight is None and hours is None:
        return None
    return PlateSummary(plate_index=index, weight_g=weight, hours=hours, source=path, filaments=filaments)


# ---------- Сборка ----------
def read_plates(archive: ProjectArchive, *, deadline: Deadline = NO_DEADLINE) -> PlateExtraction:
    names = archive.names()
    warnings: List[Diagnostic] = []
    inspected: List[str] = []

    def warn(kind: IssueKind, msg: str, path: str) -> None:
        logger.warning(msg)
        warnings.append(Diagnostic(kind, msg, path))

    plates: List[PlateMetadata] = []
    for index, path in _indexed(names, PLATE_JSON_RE):
        deadline.check("plate metadata")
        inspected.append(path)
        try:
            plates.append(parse_plate_json(index, path, archive.read_text(path)))
        except ArchiveError as e:
            warn(IssueKind.PLATE_METADATA_INVALID, f"{path}: invalid plate metadata ({e})", path)
        except _SHAPE_ERRORS as e:
            warn(IssueKind.PLATE_METADATA_INVALID,
                 f"{path}: invalid plate metadata ({type(e).__name__}: {e})", path)

    summaries: Dict[int, PlateSummary] = {}
    for path in SLICE_INFO_CANDIDATES:
        if not archive.has(path):
            continue
        inspected.append(path)
        try:
            raw = archive.read_bytes(path)
        except ArchiveError as e:
            warn(IssueKind.PLATE_SUMMARY_INVALID, f"{path}: {e}", path)
            continue
        if not raw.lstrip().startswith(b"<"):
            continue  # key=value вариант читает config_core
        try:
            for s in parse_slice_info_xml(path, raw):
                summaries.setdefault(s.plate_index, s)
        except ET.ParseError as e:
            warn(IssueKind.PLATE_SUMMARY_INVALID, f"{path}: malformed XML ({e})", path)
        except _SHAPE_ERRORS as e:
            warn(IssueKind.PLATE_SUMMARY_INVALID, f"{path}: {type(e).__name__}: {e}", path)

    for index, path in _indexed(names, PLATE_GCODE_RE):
        prev = summaries.get(index)
        if prev is not None and prev.complete:
            continue
        deadline.check("plate summaries")
        inspected.append(path)
        try:
            s = parse_gcode_summary(index, path, archive.iter_lines(path))
        except (ArchiveError, zipfile.BadZipFile, zlib.error, OSError, EOFError) as e:
            warn(IssueKind.PLATE_SUMMARY_INVALID, f"{path}: {e}", path)
            continue
        if s is None:
            continue
        if prev is not None:
            s = PlateSummary(index, prev.weight_g or s.weight_g, prev.hours or s.hours, prev.source,
                             prev.filaments or s.filaments)
        summaries[index] = s

    logger.info("plates: %d metadata file(s), %d slicer summary(ies)", len(plates), len(summaries))
    return PlateExtraction(
        plates=tuple(plates),
        summaries=tuple(summaries[k] for k in sorted(summaries)),
        files_inspected=tuple(inspected),
        warnings=tuple(warnings),
    )
