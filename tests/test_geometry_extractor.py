from __future__ import annotations

import numpy as np
import pytest

from archive_core import ProjectArchive
from diag_core import IssueKind, kinds_of
from geometry_core import (
    apply_transform,
    build_geometry,
    extract_geometries,
    geometry_candidates,
    parse_transform,
    resolve_placements,
    surface_area_heron,
    volume_projected,
)
from tests.helpers_3mf import (
    BOX_FACES,
    CORE_NS,
    box_object_xml,
    box_vertices,
    make_3mf_bytes,
    mesh_object_xml,
    model_xml,
)


def _extract(entries, **kw):
    with ProjectArchive.from_bytes(make_3mf_bytes(entries)) as archive:
        return extract_geometries(archive, **kw)


def test_box_metrics():
    V = np.array(box_vertices(50, 50, 30), dtype=np.float64)
    T = np.array(BOX_FACES)
    geo = build_geometry("box", "3D/3dmodel.model", V, T)

    assert np.isclose(geo.volume, 75000.0)
    assert np.isclose(geo.surface_area, 2 * (50 * 50 + 50 * 30 + 50 * 30))
    assert geo.bounding_box.size == (50.0, 50.0, 30.0)
    assert np.isclose(geo.bounding_box.footprint_area, 2500.0)
    assert np.allclose(np.linalg.norm(geo.normals, axis=1), 1.0)
    assert geo.triangle_count == 12


def test_volume_is_translation_invariant_and_orientation_agnostic():
    T = np.array(BOX_FACES)
    V = np.array(box_vertices(10, 20, 30, origin=(100, -40, 7)), dtype=np.float64)

    assert np.isclose(volume_projected(V, T), 6000.0)
    assert np.isclose(volume_projected(V, T[:, ::-1]), 6000.0)


def test_degenerate_triangle_has_zero_normal_and_area():
    V = np.array([[0, 0, 0], [1, 1, 1], [2, 2, 2]], dtype=np.float64)
    T = np.array([[0, 1, 2]])
    geo = build_geometry("line", "x", V, T)

    assert np.allclose(geo.normals, 0.0)
    assert surface_area_heron(V, T) == pytest.approx(0.0, abs=1e-9)


def test_geometry_arrays_are_read_only():
    V = np.array(box_vertices(1, 1, 1), dtype=np.float64)
    geo = build_geometry("box", "x", V, np.array(BOX_FACES))
    with pytest.raises(ValueError):
        geo.V[0, 0] = 5.0
    tri = next(geo.triangles)
    assert len(tri) == 4 and tri.normal == (0.0, 0.0, -1.0)


def test_one_geometry_per_object_with_names():
    xml = model_xml(
        box_object_xml(1, 10, 10, 10, name="Small"),
        box_object_xml(2, 10, 10, 30),
        "<object id=\"3\"><components><component objectid=\"1\"/></components></object>",
    )
    res = _extract({"3D/3dmodel.model": xml})

    assert [g.name for g in res.models] == ["Small", "3dmodel.model:object_2"]
    assert [round(g.volume) for g in res.models] == [1000, 3000]
    assert res.files_inspected == ("3D/3dmodel.model",)
    assert res.warnings == ()


def test_objects_dir_wins_and_names_resolve_through_root_model():
    root = model_xml(
        "<object id=\"10\" name=\"Benchy\" xmlns:p=\"http://schemas.microsoft.com/3dmanufacturing/production/2015/06\">"
        "<components><component p:path=\"/3D/Objects/object_1.model\" objectid=\"1\"/></components>"
        "</object>"
    )
    obj = model_xml(box_object_xml(1, 20, 20, 20))
    res = _extract({
        "3D/3dmodel.model": root,
        "3D/Objects/object_1.model": obj,
    })

    assert res.files_inspected == ("3D/Objects/object_1.model",)
    assert [g.name for g in res.models] == ["Benchy"]
    assert np.isclose(res.models[0].volume, 8000.0)


def test_names_resolve_through_model_settings():
    root = model_xml(
        "<object id=\"4\">"
        "<components><component path=\"/3D/Objects/object_2.model\" objectid=\"2\"/></components>"
        "</object>"
    )
    settings = (
        "<?xml version=\"1.0\"?><config>"
        "<object id=\"4\"><metadata key=\"name\" value=\"Bracket\"/></object>"
        "</config>"
    )
    res = _extract({
        "3D/3dmodel.model": root,
        "3D/Objects/object_2.model": model_xml(box_object_xml(2, 5, 5, 5)),
        "Metadata/model_settings.config": settings,
    })

    assert [g.name for g in res.models] == ["Bracket"]


def test_unit_scaling_to_millimetres():
    res = _extract({"3D/3dmodel.model": model_xml(box_object_xml(1, 1, 1, 1), unit="centimeter")})

    geo = res.models[0]
    assert np.isclose(geo.volume, 1000.0)
    assert geo.bounding_box.size == (10.0, 10.0, 10.0)


def test_invalid_and_non_finite_triangles_are_dropped():
    verts = box_vertices(10, 10, 10) + [(float("nan"), 0, 0)]
    tris = list(BOX_FACES) + [(0, 1, 99), (0, 1, 8), (-1, 0, 1)]
    xml = model_xml(mesh_object_xml(1, verts, tris, name="Holey")).replace(
        "<triangle v1=\"-1\"", "<triangle v1=\"x\""
    )
    res = _extract({"3D/3dmodel.model": xml})

    geo = res.models[0]
    assert geo.triangle_count == 12
    assert np.isclose(geo.volume, 1000.0)
    assert geo.bounding_box.size == (10.0, 10.0, 10.0)
    assert kinds_of(res.warnings) == (IssueKind.TRIANGLES_DROPPED,)
    assert "dropped 3 triangle" in res.warnings[0].message


def test_placeholder_when_nothing_valid():
    res = _extract({"3D/3dmodel.model": "<model><resources><object id=\"1\"><mesh/></object>"})

    assert len(res.models) == 1
    geo = res.models[0]
    assert geo.synthetic and res.placeholder_used
    assert geo.volume == 15000.0 and geo.surface_area == 8600.0
    assert geo.bounding_box.size == (50.0, 50.0, 30.0)
    assert kinds_of(res.warnings) == (IssueKind.GEOMETRY_INVALID, IssueKind.PLACEHOLDER_GEOMETRY)


def test_placeholder_for_archive_without_3d_entries():
    res = _extract({"Metadata/plate_1.json": "{}"})

    assert res.files_inspected == ()
    assert kinds_of(res.warnings) == (IssueKind.PLACEHOLDER_GEOMETRY,)


def test_stl_inside_archive_is_unsupported():
    res = _extract({"3D/Objects/part.stl": b"solid x\nendsolid x\n"})

    assert kinds_of(res.warnings) == (IssueKind.GEOMETRY_UNSUPPORTED, IssueKind.PLACEHOLDER_GEOMETRY)


def test_limits_skip_objects_with_warning():
    xml = model_xml(box_object_xml(1, 1, 1, 1, name="A"), box_object_xml(2, 2, 2, 2, name="B"))
    res = _extract({"3D/3dmodel.model": xml}, limits={"max_triangles": 20})

    assert [g.name for g in res.models] == ["A"]
    assert kinds_of(res.warnings) == (IssueKind.GEOMETRY_LIMIT,)


def test_oversize_entry_is_skipped():
    xml = model_xml(box_object_xml(1, 1, 1, 1))
    data = make_3mf_bytes({"3D/3dmodel.model": xml})
    with ProjectArchive.from_bytes(data, max_entry_bytes=64) as archive:
        res = extract_geometries(archive)

    assert kinds_of(res.warnings) == (IssueKind.GEOMETRY_LIMIT, IssueKind.PLACEHOLDER_GEOMETRY)


def test_geometry_candidates_fallback_scan():
    names = ["3D/3dmodel.model", "3D/_rels/3dmodel.model.rels", "3D/Textures/a.png", "Metadata/x.config"]
    assert geometry_candidates(names) == ["3D/3dmodel.model", "3D/_rels/3dmodel.model.rels"]
    assert geometry_candidates(names + ["3D/Objects/o.model"]) == ["3D/Objects/o.model"]


def _placed_model(objects, items, *, unit="millimeter"):
    build = "".join(
        f"<item objectid=\"{oid}\"" + (f" transform=\"{tr}\"" if tr else "") + "/>"
        for oid, tr in items
    )
    return (
        f"<model unit=\"{unit}\" xmlns=\"{CORE_NS}\" "
        "xmlns:p=\"http://schemas.microsoft.com/3dmanufacturing/production/2015/06\">"
        f"<resources>{''.join(objects)}</resources>"
        f"<build>{build}</build>"
        "</model>"
    )


def test_build_item_scale_is_applied():
    xml = _placed_model([box_object_xml(1, 10, 10, 10, name="Cube")], [(1, "2 0 0 0 2 0 0 0 2 0 0 0")])
    res = _extract({"3D/3dmodel.model": xml})

    (geo,) = res.models
    assert np.isclose(geo.volume, 8000.0)
    assert np.isclose(geo.bounding_box.height, 20.0)
    assert geo.bounding_box.size == (20.0, 20.0, 20.0)


def test_build_item_translation_keeps_volume():
    xml = _placed_model([box_object_xml(1, 10, 10, 10)], [(1, "1 0 0 0 1 0 0 0 1 100 50 3")])
    res = _extract({"3D/3dmodel.model": xml})

    (geo,) = res.models
    assert np.isclose(geo.volume, 1000.0)
    assert geo.bounding_box.min == (100.0, 50.0, 3.0)
    assert geo.bounding_box.height == 10.0


def test_object_placed_twice_gives_two_geometries():
    xml = _placed_model(
        [box_object_xml(1, 10, 10, 10, name="Peg")],
        [(1, "1 0 0 0 1 0 0 0 1 0 0 0"), (1, "1 0 0 0 1 0 0 0 1 40 0 0")],
    )
    res = _extract({"3D/3dmodel.model": xml})

    assert [g.name for g in res.models] == ["Peg", "Peg"]
    assert [g.bounding_box.min.x for g in res.models] == [0.0, 40.0]
    assert sum(g.volume for g in res.models) == pytest.approx(2000.0)


def test_component_and_item_transforms_compose_across_files():
    root = _placed_model(
        ["<object id=\"10\" name=\"Column\">"
         "<components><component p:path=\"/3D/Objects/object_1.model\" objectid=\"1\" "
         "transform=\"1 0 0 0 1 0 0 0 3 0 0 0\"/></components>"
         "</object>"],
        [(10, "1 0 0 0 1 0 0 0 1 128 128 0")],
    )
    res = _extract({
        "3D/3dmodel.model": root,
        "3D/Objects/object_1.model": model_xml(box_object_xml(1, 10, 10, 10)),
    })

    (geo,) = res.models
    assert geo.name == "Column"
    assert np.isclose(geo.volume, 3000.0)
    assert geo.bounding_box.min == (128.0, 128.0, 0.0)
    assert geo.bounding_box.height == 30.0


def test_translation_follows_file_unit():
    xml = _placed_model([box_object_xml(1, 1, 1, 1)], [(1, "1 0 0 0 1 0 0 0 1 2 0 0")], unit="centimeter")
    res = _extract({"3D/3dmodel.model": xml})

    geo = res.models[0]
    assert geo.bounding_box.min.x == 20.0
    assert np.isclose(geo.volume, 1000.0)


def test_parse_transform_row_vector_layout():
    M = parse_transform("0 1 0 -1 0 0 0 0 1 5 0 0")
    out = apply_transform(np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]), M)

    assert np.allclose(out, [[5.0, 1.0, 0.0], [4.0, 0.0, 0.0]])


@pytest.mark.parametrize("value", [None, "", "1 0 0", "1 0 0 0 1 0 0 0 1 0 0 x", "1 0 0 0 1 0 0 0 1 nan 0 0"])
def test_parse_transform_falls_back_to_identity(value):
    assert np.array_equal(parse_transform(value), np.eye(4))


def test_component_cycles_terminate():
    a, b = ("3D/3dmodel.model", "1"), ("3D/3dmodel.model", "2")
    refs = {a: [(b, np.eye(4))], b: [(a, np.eye(4))]}
    placed = resolve_placements(refs, [(a, np.eye(4))])

    assert len(placed[a]) == 1 and len(placed[b]) == 1


def test_instance_limit_caps_placements():
    key = ("3D/3dmodel.model", "1")
    placed = resolve_placements({}, [(key, np.eye(4))] * 5, max_instances=3)

    assert len(placed[key]) == 3
