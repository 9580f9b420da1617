# -*- coding: utf-8 -*-
"""
geometry_core.py — извлечение мешей из 3MF и геометрические метрики

Контракт:
- Кандидаты: записи 3D/Objects/*; если их нет — любые 3D/* с .model/.3mf/.stl/.obj
  или "model" в имени.
- Каждый <object> с <mesh> -> одна ModelGeometry на каждое размещение (namespace
  игнорируем, смотрим local-name). Размещения: <build><item transform> корневой модели,
  затем цепочки <component transform>; объект без размещений берётся как записан.
- Вершины масштабируются в мм по атрибуту unit у <model>; переносы по unit файла,
  где записана трансформация.
- Треугольник принимается, только если все три индекса указывают на конечную вершину.
- Объём: |Σ (знаковая площадь XY-проекции треугольника × средняя z треугольника)|.
  Для замкнутой, согласованно ориентированной сетки это точный объём; для дырявой —
  приближение.
- Площадь: формула Герона по длинам трёх рёбер.
- Ничего не нашли -> одна синтетическая заглушка 50×50×30.
"""
from __future__ import annotations

import logging
import math
import posixpath
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Dict, Iterator, List, Mapping, NamedTuple, Optional, Tuple

import numpy as np

from archive_core import ArchiveError, EntryTooLarge, ProjectArchive
from diag_core import NO_DEADLINE, Deadline, Diagnostic, IssueKind

logger = logging.getLogger(__name__)

MAX_VERTICES = 20_000_000
MAX_TRIANGLES = 40_000_000

ROOT_MODEL = "3D/3dmodel.model"
MODEL_SETTINGS = "Metadata/model_settings.config"
NS_PROD = "http://schemas.microsoft.com/3dmanufacturing/production/2015/06"

MAX_INSTANCES = 10_000
MAX_COMPONENT_DEPTH = 32

PLACEHOLDER_SIZE = (50.0, 50.0, 30.0)
PLACEHOLDER_VOLUME = 15000.0
PLACEHOLDER_SURFACE = 8600.0


ObjectKey = Tuple[str, str]     # (нормализованный путь .model, objectid)


# ---------- Модель ----------
class Vertex(NamedTuple):
    x: float
    y: float
    z: float


class Triangle(NamedTuple):
    v0: Vertex
    v1: Vertex
    v2: Vertex
    normal: Vertex


@dataclass(frozen=True)
class BoundingBox:
    min: Vertex
    max: Vertex

    @property
    def size(self) -> Vertex:
        return Vertex(self.max.x - self.min.x, self.max.y - self.min.y, self.max.z - self.min.z)

    @property
    def height(self) -> float:
        return self.max.z - self.min.z

    @property
    def footprint_area(self) -> float:
        s = self.size
        return s.x * s.y


@dataclass(frozen=True, eq=False)
class ModelGeometry:
    name: str
    source: str
    V: np.ndarray           # (N,3) мм
    T: np.ndarray           # (M,3) индексы в V
    normals: np.ndarray     # (M,3) единичные; 0 для вырожденных
    bounding_box: BoundingBox
    volume: float           # мм³
    surface_area: float     # мм²
    synthetic: bool = False

    @property
    def triangle_count(self) -> int:
        return int(self.T.shape[0])

    @property
    def triangles(self) -> Iterator[Triangle]:
        for (a, b, c), n in zip(self.T, self.normals):
            yield Triangle(Vertex(*map(float, self.V[a])), Vertex(*map(float, self.V[b])),
                           Vertex(*map(float, self.V[c])), Vertex(*map(float, n)))


@dataclass(frozen=True)
class GeometryExtraction:
    models: Tuple[ModelGeometry, ...]
    files_inspected: Tuple[str, ...]
    warnings: Tuple[Diagnostic, ...]

    @property
    def placeholder_used(self) -> bool:
        return any(m.synthetic for m in self.models)


# ---------- Метрики ----------
def _frozen(a: np.ndarray) -> np.ndarray:
    a.setflags(write=False)
    return a


def triangle_normals(V: np.ndarray, T: np.ndarray) -> np.ndarray:
    if T.size == 0:
        return np.zeros((0, 3), dtype=np.float64)
    v0 = V[T[:, 0]]; v1 = V[T[:, 1]]; v2 = V[T[:, 2]]
    cross = np.cross(v1 - v0, v2 - v0)
    length = np.linalg.norm(cross, axis=1)
    out = np.zeros_like(cross)
    ok = length > 0
    out[ok] = cross[ok] / length[ok, None]
    return out


def surface_area_heron(V: np.ndarray, T: np.ndarray) -> float:
    if T.size == 0:
        return 0.0
    v0 = V[T[:, 0]]; v1 = V[T[:, 1]]; v2 = V[T[:, 2]]
    a = np.linalg.norm(v1 - v0, axis=1)
    b = np.linalg.norm(v2 - v1, axis=1)
    c = np.linalg.norm(v0 - v2, axis=1)
    s = (a + b + c) / 2.0
    # на почти вырожденных треугольниках произведение уходит в -0
    return float(np.sqrt(np.clip(s * (s - a) * (s - b) * (s - c), 0.0, None)).sum())


def volume_projected(V: np.ndarray, T: np.ndarray) -> float:
    if T.size == 0:
        return 0.0
    v0 = V[T[:, 0]]; v1 = V[T[:, 1]]; v2 = V[T[:, 2]]
    area_xy = 0.5 * ((v1[:, 0] - v0[:, 0]) * (v2[:, 1] - v0[:, 1])
                     - (v2[:, 0] - v0[:, 0]) * (v1[:, 1] - v0[:, 1]))
    z_mean = (v0[:, 2] + v1[:, 2] + v2[:, 2]) / 3.0
    return abs(float(np.einsum('i,i->', area_xy, z_mean)))


def bounding_box_of(V: np.ndarray) -> BoundingBox:
    if V.size == 0:
        zero = Vertex(0.0, 0.0, 0.0)
        return BoundingBox(zero, zero)
    mins = V.min(axis=0); maxs = V.max(axis=0)
    return BoundingBox(Vertex(*map(float, mins)), Vertex(*map(float, maxs)))


def build_geometry(name: str, source: str, V: np.ndarray, T: np.ndarray) -> ModelGeometry:
    """V/T уже очищены: все индексы T валидны, вершины конечны."""
    V = np.asarray(V, dtype=np.float64).reshape(-1, 3)
    T = np.asarray(T, dtype=np.int64).reshape(-1, 3)
    used = V[np.unique(T)] if T.size else V[:0]
    return ModelGeometry(
        name=name,
        source=source,
        V=_frozen(V),
        T=_frozen(T),
        normals=_frozen(triangle_normals(V, T)),
        bounding_box=bounding_box_of(used),
        volume=volume_projected(V, T),
        surface_area=surface_area_heron(V, T),
    )


def placeholder_geometry(fallback: Mapping | None = None) -> ModelGeometry:
    fb = fallback or {}
    sx, sy, sz = (float(v) for v in fb.get("placeholder_size_mm", PLACEHOLDER_SIZE))
    return ModelGeometry(
        name="Default model",
        source="",
        V=_frozen(np.zeros((0, 3), dtype=np.float64)),
        T=_frozen(np.zeros((0, 3), dtype=np.int64)),
        normals=_frozen(np.zeros((0, 3), dtype=np.float64)),
        bounding_box=BoundingBox(Vertex(0.0, 0.0, 0.0), Vertex(sx, sy, sz)),
        volume=float(fb.get("placeholder_volume_mm3", PLACEHOLDER_VOLUME)),
        surface_area=float(fb.get("placeholder_surface_mm2", PLACEHOLDER_SURFACE)),
        synthetic=True,
    )


# ---------- XML ----------
def _unit_to_mm(unit_str: str) -> float:
    unit = (unit_str or 'millimeter').strip().lower()
    return {
        'micron': 0.001, 'millimeter': 1.0, 'centimeter': 10.0, 'meter': 1000.0, 'inch': 25.4, 'foot': 304.8
    }.get(unit, 1.0)


def _local(tag: str) -> str:
    return tag.rsplit('}', 1)[-1] if isinstance(tag, str) else ""


def _children(node: ET.Element, name: str) -> Iterator[ET.Element]:
    for child in node:
        if _local(child.tag) == name:
            yield child


def _first(node: ET.Element, name: str) -> Optional[ET.Element]:
    return next(_children(node, name), None)


def _iter_local(node: ET.Element, name: str) -> Iterator[ET.Element]:
    for el in node.iter():
        if _local(el.tag) == name:
            yield el


def _norm_model_path(path: str) -> str:
    if not path:
        return ""
    return posixpath.normpath(path.replace("\\", "/").lstrip("/"))


def _float_attr(el: ET.Element, key: str) -> float:
    try:
        return float(el.get(key, "0"))
    except ValueError:
        return math.nan


def _read_mesh(mesh: ET.Element, scale: float) -> Tuple[np.ndarray, np.ndarray, int]:
    """-> (V мм, T валидные, число отброшенных треугольников)."""
    vs = _first(mesh, "vertices")
    verts = []
    if vs is not None:
        for v in _children(vs, "vertex"):
            verts.append((_float_attr(v, "x"), _float_attr(v, "y"), _float_attr(v, "z")))
    V = np.array(verts, dtype=np.float64).reshape(-1, 3) * scale
    finite = np.isfinite(V).all(axis=1)

    ts = _first(mesh, "triangles")
    tris, dropped = [], 0
    n = V.shape[0]
    if ts is not None:
        for t in _children(ts, "triangle"):
            try:
                idx = (int(t.get("v1", "")), int(t.get("v2", "")), int(t.get("v3", "")))
            except ValueError:
                dropped += 1
                continue
            if all(0 <= i < n and finite[i] for i in idx):
                tris.append(idx)
            else:
                dropped += 1
    T = np.array(tris, dtype=np.int64).reshape(-1, 3)
    return V, T, dropped


# ---------- Имена ----------
def _settings_names(archive: ProjectArchive) -> Dict[str, str]:
    """Metadata/model_settings.config: id объекта -> metadata name."""
    if not archive.has(MODEL_SETTINGS):
        return {}
    try:
        root = ET.fromstring(archive.read_bytes(MODEL_SETTINGS))
    except (ArchiveError, ET.ParseError) as e:
        logger.debug("model settings skipped: %s", e)
        return {}
    out = {}
    for obj in _iter_local(root, "object"):
        for md in _children(obj, "metadata"):
            if md.get("key") == "name" and md.get("value"):
                out[obj.get("id", "")] = md.get("value")
                break
    return out


def _ref_path(el: ET.Element, here: str) -> str:
    p_path = el.get(f"{{{NS_PROD}}}path") or el.get("path")
    return _norm_model_path(p_path) if p_path else here


def resolve_component_names(archive: ProjectArchive, root: Optional[ET.Element]) -> Dict[ObjectKey, str]:
    """
    (путь .model, objectid) -> имя родительского объекта из 3D/3dmodel.model.
    Родитель ссылается на меш через <component p:path=... objectid=...>.
    """
    if root is None:
        return {}
    settings = _settings_names(archive)
    names: Dict[ObjectKey, str] = {}
    for obj in _iter_local(root, "object"):
        parent_name = obj.get("name") or settings.get(obj.get("id", ""))
        if not parent_name:
            continue
        comps = _first(obj, "components")
        if comps is None:
            continue
        for c in _children(comps, "component"):
            names.setdefault((_ref_path(c, ROOT_MODEL), c.get("objectid", "")), parent_name)
    return names


# ---------- Трансформации ----------
def parse_transform(value: Optional[str], scale: float = 1.0) -> np.ndarray:
    """
    Атрибут transform: 12 чисел "m00 m01 m02 m10 m11 m12 m20 m21 m22 m30 m31 m32",
    точка-строка: v' = v·A + t. Возвращает 4×4 для apply_transform; перенос в мм
    (scale: единицы файла, где записан атрибут). Пусто, не 12 чисел, nan -> единичная.
    """
    M = np.eye(4)
    if not value:
        return M
    try:
        vals = [float(x) for x in value.split()]
    except ValueError:
        return M
    if len(vals) != 12 or not all(math.isfinite(v) for v in vals):
        logger.debug("transform %r ignored", value)
        return M
    M[:3, :3] = np.array(vals[:9], dtype=np.float64).reshape(3, 3).T
    M[:3, 3] = np.array(vals[9:], dtype=np.float64) * scale
    return M


def apply_transform(V: np.ndarray, M: np.ndarray) -> np.ndarray:
    if V.size == 0:
        return V
    return V @ M[:3, :3].T + M[:3, 3]


def _component_refs(path: str, root: ET.Element, scale: float) -> Dict[ObjectKey, List[Tuple[ObjectKey, np.ndarray]]]:
    here = _norm_model_path(path)
    refs: Dict[ObjectKey, List[Tuple[ObjectKey, np.ndarray]]] = {}
    for obj in _iter_local(root, "object"):
        comps = _first(obj, "components")
        if comps is None:
            continue
        refs[(here, obj.get("id", ""))] = [
            ((_ref_path(c, here), c.get("objectid", "")), parse_transform(c.get("transform"), scale))
            for c in _children(comps, "component")
        ]
    return refs


def _build_items(path: str, root: ET.Element, scale: float) -> List[Tuple[ObjectKey, np.ndarray]]:
    here = _norm_model_path(path)
    build = _first(root, "build")
    if build is None:
        return []
    return [
        ((_ref_path(item, here), item.get("objectid", "")), parse_transform(item.get("transform"), scale))
        for item in _children(build, "item")
    ]


def resolve_placements(refs, items, *, max_instances: int = MAX_INSTANCES) -> Dict[ObjectKey, List[np.ndarray]]:
    """
    Мировые матрицы объектов: build item, затем цепочка component
    (M_мир = M_родитель @ M_компонент). Циклы и глубина > MAX_COMPONENT_DEPTH обрываются.
    """
    placed: Dict[ObjectKey, List[np.ndarray]] = {}
    count = 0

    def walk(key: ObjectKey, M: np.ndarray, stack: frozenset) -> None:
        nonlocal count
        if key in stack or len(stack) > MAX_COMPONENT_DEPTH:
            logger.debug("component chain at %s cut (cycle or depth)", key)
            return
        if count >= max_instances:
            return
        count += 1
        placed.setdefault(key, []).append(M)
        for child, Mc in refs.get(key, ()):
            walk(child, M @ Mc, stack | {key})

    for key, M in items:
        walk(key, M, frozenset())
    if count >= max_instances:
        logger.warning("instance limit %d reached; remaining placements ignored", max_instances)
    return placed


# ---------- Кандидаты ----------
def geometry_candidates(names: List[str]) -> List[str]:
    objects = [n for n in names if n.startswith("3D/Objects/")]
    if objects:
        return objects
    out = []
    for n in names:
        low = n.lower()
        if n.startswith("3D/") and (low.endswith((".model", ".3mf", ".stl", ".obj")) or "model" in low):
            out.append(n)
    return out


def _root_model(archive: ProjectArchive, parsed: Dict[str, Tuple[ET.Element, float]]) -> Optional[ET.Element]:
    if ROOT_MODEL in parsed:
        return parsed[ROOT_MODEL][0]
    if not archive.has(ROOT_MODEL):
        return None
    try:
        return ET.fromstring(archive.read_bytes(ROOT_MODEL))
    except (ArchiveError, ET.ParseError) as e:
        logger.debug("root model skipped: %s", e)
        return None


# ---------- Извлечение ----------
def extract_geometries(
    archive: ProjectArchive,
    *,
    limits: Mapping | None = None,
    fallback: Mapping | None = None,
    deadline: Deadline = NO_DEADLINE,
) -> GeometryExtraction:
    lim = limits or {}
    max_vertices = int(lim.get("max_vertices", MAX_VERTICES))
    max_triangles = int(lim.get("max_triangles", MAX_TRIANGLES))

    warnings: List[Diagnostic] = []
    models: List[ModelGeometry] = []
    inspected: List[str] = []
    totals = {"vertices": 0, "triangles": 0}

    def warn(kind: IssueKind, msg: str, path: str | None = None) -> None:
        logger.warning(msg)
        warnings.append(Diagnostic(kind, msg, path))

    # 1) разбор кандидатов
    parsed: Dict[str, Tuple[ET.Element, float]] = {}
    for path in geometry_candidates(archive.names()):
        deadline.check("geometry extraction")
        inspected.append(path)
        low = path.lower()
        if low.endswith((".stl", ".obj")):
            warn(IssueKind.GEOMETRY_UNSUPPORTED, f"{path}: {low.rsplit('.', 1)[-1].upper()} meshes inside the archive are not supported", path)
            continue
        try:
            root = ET.fromstring(archive.read_bytes(path))
        except EntryTooLarge as e:
            warn(IssueKind.GEOMETRY_LIMIT, str(e), path)
            continue
        except ArchiveError as e:
            warn(IssueKind.GEOMETRY_INVALID, f"{path}: {e}", path)
            continue
        except ET.ParseError as e:
            warn(IssueKind.GEOMETRY_INVALID, f"{path}: malformed XML ({e})", path)
            continue
        parsed[path] = (root, _unit_to_mm(root.get("unit")))

    # 2) сцена: имена, компоненты, build items
    root_model = _root_model(archive, parsed) if parsed else None
    component_names = resolve_component_names(archive, root_model)
    sources = dict(parsed)
    if root_model is not None and ROOT_MODEL not in sources:
        sources[ROOT_MODEL] = (root_model, _unit_to_mm(root_model.get("unit")))
    refs: Dict[ObjectKey, List[Tuple[ObjectKey, np.ndarray]]] = {}
    for path, (root, scale) in sources.items():
        refs.update(_component_refs(path, root, scale))
    if root_model is not None:
        items = _build_items(ROOT_MODEL, root_model, sources[ROOT_MODEL][1])
    else:
        items = [it for path, (root, scale) in parsed.items() for it in _build_items(path, root, scale)]
    placements = resolve_placements(refs, items)

    # 3) меши, по одной геометрии на размещение
    for path, (root, scale) in parsed.items():
        deadline.check("geometry extraction")
        base = posixpath.basename(path)
        here = _norm_model_path(path)
        for obj in _iter_local(root, "object"):
            mesh = _first(obj, "mesh")
            if mesh is None:
                continue
            oid = obj.get("id", "")
            V, T, dropped = _read_mesh(mesh, scale)
            name = (obj.get("name")
                    or component_names.get((here, oid))
                    or f"{base}:object_{oid}")
            if dropped:
                warn(IssueKind.TRIANGLES_DROPPED,
                     f"{name}: dropped {dropped} triangle(s) with invalid or non-finite vertex references", path)
            if T.shape[0] == 0:
                logger.debug("%s: object %s has no usable triangles", path, oid)
                continue
            # не размещён ни build, ни компонентом -> как записан
            for M in placements.get((here, oid)) or [np.eye(4)]:
                if totals["vertices"] + V.shape[0] > max_vertices:
                    warn(IssueKind.GEOMETRY_LIMIT, f"{name}: vertex limit {max_vertices} exceeded, object skipped", path)
                    break
                if totals["triangles"] + T.shape[0] > max_triangles:
                    warn(IssueKind.GEOMETRY_LIMIT, f"{name}: triangle limit {max_triangles} exceeded, object skipped", path)
                    break
                totals["vertices"] += V.shape[0]
                totals["triangles"] += T.shape[0]
                geo = build_geometry(name, path, apply_transform(V, M), T)
                logger.debug("%s: %d triangles, volume %.2f mm3, surface %.2f mm2",
                             name, geo.triangle_count, geo.volume, geo.surface_area)
                models.append(geo)

    if not models:
        warn(IssueKind.PLACEHOLDER_GEOMETRY,
             "No valid mesh geometry found; using a 50x50x30 mm placeholder model")
        models.append(placeholder_geometry(fallback))

    logger.info("geometry: %d model(s) from %d file(s)", len(models), len(inspected))
    return GeometryExtraction(models=tuple(models), files_inspected=tuple(inspected), warnings=tuple(warnings))
