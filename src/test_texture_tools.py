import numpy as np
import pytest

import accumulator_tools as acc
import constants as cst
import mesh_tools as mt
from error_tools import UnmappableIsland
from surface_tools import SurfaceIndex
from texture_tools import TextureSynthesizer, label_uv_islands, mappable_triangles


def _fill_cells(mesh, n, value_of, materials=("ink",), triangles=None):
    """Snapshot with every cell of `triangles` set to value_of(world centre)."""
    a = acc.EffectAccumulator(list(materials), mesh.triangle_count, subdivisions=n)
    corners = mesh.triangle_positions()
    centres = acc.cell_centers(n)
    for t in (range(mesh.triangle_count) if triangles is None else triangles):
        for c in range(n * n):
            a.add(acc.SurfaceLocation(t, c), materials[0], value_of(centres[c] @ corners[t]))
    a.commit()
    return a.snapshot()


def _mixed_mesh():
    """One good triangle, one without UVs and one with zero UV area."""
    positions = np.array([
        [0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0],
        [2.0, 0.0, 0.0], [3.0, 0.0, 0.0], [2.0, 1.0, 0.0],
        [4.0, 0.0, 0.0], [5.0, 0.0, 0.0], [4.0, 1.0, 0.0],
    ])
    uvs = np.array([
        [0.0, 0.0], [0.5, 0.0], [0.0, 0.5],
        [np.nan, np.nan], [np.nan, np.nan], [np.nan, np.nan],
        [0.8, 0.8], [0.9, 0.9], [0.85, 0.85],
    ])
    return mt.Mesh(positions, np.arange(9).reshape(3, 3), uvs=uvs)


def test_bakes_at_two_resolutions_agree():
    mesh = mt.make_plane(nx=2, ny=2)
    snapshot = _fill_cells(mesh, 8, lambda p: p[0])
    synth = TextureSynthesizer(mesh, fill="none")
    fine = synth.bake(snapshot, 64, 64)["ink"]
    coarse = synth.bake(snapshot, 32, 32)["ink"]
    assert fine.shape == (64, 64)
    assert fine.coverage.all() and coarse.coverage.all()
    diff = np.abs(fine.resample(32, 32) - coarse.values)
    assert diff.max() < 0.15
    assert diff.mean() < 0.05
    # Left to right the texture follows the x coordinate.
    assert coarse.values[:, 0].mean() < coarse.values[:, -1].mean()


def test_uv_seam_keeps_islands_apart():
    mesh = mt.make_plane(nx=2, ny=1, uv_islands=2)
    # Triangles 0 and 3 meet on the 3D surface across the seam.
    index = SurfaceIndex(mesh)
    centre = index.surface_point_at(0, np.full(3, 1.0 / 3.0))
    assert 3 in [p.triangle for p in index.neighbors(centre)]

    snapshot = _fill_cells(mesh, 4, lambda p: 5.0, triangles=[0, 1])
    synth = TextureSynthesizer(mesh, fill="dilate", dilation=4)
    assert synth.island_count == 2
    buf = synth.bake(snapshot, 64, 64)["ink"]
    left = buf.island == synth.islands[0]
    right = buf.island == synth.islands[2]
    assert left.any() and right.any()
    assert np.all(buf.values[right] == 0.0)
    assert np.all(buf.values[left & buf.coverage] == 5.0)
    assert buf.filled.any()


def test_label_islands_follows_shared_vertices():
    labels, count = label_uv_islands(mt.make_plane(nx=4, ny=2))
    assert count == 1
    assert np.all(labels == 0)
    labels, count = label_uv_islands(mt.make_plane(nx=4, ny=2, uv_islands=2))
    assert count == 2
    assert labels[0] == 0
    assert labels[-1] == 1


def test_hard_normal_edges_do_not_split_islands():
    # Two triangles of one quad, every vertex duplicated with its own face normal.
    positions = np.array([[0, 0, 0], [1, 0, 0], [1, 1, 0], [0, 0, 0], [1, 1, 0], [0, 1, 0]], dtype=float)
    uvs = positions[:, :2].copy()
    normals = np.array([[0, 0, 1]] * 3 + [[0, 0.1, 1]] * 3, dtype=float)
    mesh = mt.Mesh(positions, np.array([[0, 1, 2], [3, 4, 5]]), normals=normals, uvs=uvs)
    labels, count = label_uv_islands(mesh)
    assert count == 1
    assert labels.tolist() == [0, 0]

    synth = TextureSynthesizer(mesh, fill="none")
    assert synth.island_count == 1
    buf = synth.bake(_fill_cells(mesh, 4, lambda p: 2.0), 16, 16)["ink"]
    assert np.all(buf.island[buf.coverage] == 0)
    assert np.all(buf.values[buf.coverage] == 2.0)


def test_unmappable_triangles_are_recorded_and_unknown():
    mesh = _mixed_mesh()
    mappable, errors = mappable_triangles(mesh)
    np.testing.assert_array_equal(mappable, [True, False, False])
    assert [e.triangle for e in errors] == [1, 2]

    synth = TextureSynthesizer(mesh, fill="nearest")
    assert [i.kind for i in synth.issues] == ["UnmappableIsland", "UnmappableIsland"]
    snapshot = _fill_cells(mesh, 2, lambda p: 1.0)
    buf = synth.bake(snapshot, 32, 32)["ink"]
    assert buf.unknown.any()
    assert np.all(np.isnan(buf.values[buf.unknown]))
    assert not np.any(buf.unknown & buf.coverage)
    assert np.all(np.isfinite(buf.values[~buf.unknown]))

    with pytest.raises(UnmappableIsland):
        TextureSynthesizer(mesh, strict=True)


def test_mesh_without_uvs_is_entirely_unknown(triangle_mesh):
    bare = mt.Mesh(triangle_mesh.positions, triangle_mesh.triangles)
    synth = TextureSynthesizer(bare)
    buf = synth.bake(_fill_cells(bare, 2, lambda p: 1.0), 8, 8)["ink"]
    assert buf.unknown.all()
    assert np.all(np.isnan(buf.values))
    rgba = buf.to_image_array()
    assert np.all(rgba == np.asarray(cst.UNKNOWN_COLOR, dtype=np.uint8))


def test_empty_snapshot_bakes_to_zero(plane_mesh):
    snapshot = acc.EffectAccumulator(["ink", "rust"], plane_mesh.triangle_count).snapshot()
    textures = TextureSynthesizer(plane_mesh).bake(snapshot, 16, 16)
    assert sorted(textures) == ["ink", "rust"]
    assert np.all(textures["rust"].values == 0.0)


@pytest.mark.parametrize("fill", ["none", "dilate", "nearest"])
def test_gap_fill_modes(triangle_mesh, fill):
    snapshot = _fill_cells(triangle_mesh, 1, lambda p: 2.0)
    buf = TextureSynthesizer(triangle_mesh, fill=fill, dilation=1).bake(snapshot, 16, 16)["ink"]
    covered = buf.coverage
    assert np.all(buf.values[covered] == 2.0)
    if fill == "none":
        assert not buf.filled.any()
        assert np.all(buf.values[~covered] == 0.0)
    elif fill == "nearest":
        np.testing.assert_array_equal(buf.filled, ~covered)
        assert np.all(buf.values == 2.0)
    else:
        assert buf.filled.any()
        # The corner opposite the triangle is out of reach.
        assert not buf.filled[0, -1]
        assert buf.values[0, -1] == 0.0


def test_combine_modes(triangle_mesh):
    tex = np.array([0, 0, 1])
    pv = np.array([[1.0], [3.0], [2.0]])
    ps = np.array([1.0, 3.0, 1.0])
    expected = {"mean": [2.0, 2.0], "max": [3.0, 2.0], "weighted": [2.5, 2.0]}
    for mode, want in expected.items():
        out = TextureSynthesizer(triangle_mesh, combine=mode)._combine(tex, pv, ps, 2, 1)
        np.testing.assert_allclose(out[:, 0], want)


def test_single_deposit_shows_full_mass(triangle_mesh):
    a = acc.EffectAccumulator(["rust"], 1, subdivisions=4)
    a.add(acc.SurfaceLocation(0, 0), "rust", 1.0)
    a.commit()
    buf = TextureSynthesizer(triangle_mesh, combine="max", fill="none").bake(a.snapshot(), 32, 32)["rust"]
    hit = buf.values != 0.0
    assert hit.any()
    assert np.all(buf.values[hit] == 1.0)
    # Cell 0 sits at corner 0 = uv (0, 0), the bottom-left of the image.
    ys, xs = np.nonzero(hit)
    assert ys.min() >= 16 and xs.max() < 16


def test_buffers_are_read_only_and_layout_is_cached(plane_mesh):
    synth = TextureSynthesizer(plane_mesh)
    assert synth.layout(16, 16) is synth.layout(16, 16)
    buf = synth.bake(_fill_cells(plane_mesh, 2, lambda p: 1.0), 16, 16)["ink"]
    with pytest.raises(ValueError):
        buf.values[0, 0] = 3.0


def test_invalid_settings_are_rejected(plane_mesh):
    with pytest.raises(ValueError):
        TextureSynthesizer(plane_mesh, combine="median")
    with pytest.raises(ValueError):
        TextureSynthesizer(plane_mesh, fill="blur")
    with pytest.raises(ValueError):
        TextureSynthesizer(plane_mesh).bake(acc.EffectAccumulator(["ink"], 1).snapshot(), 0, 8)
