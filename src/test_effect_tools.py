import numpy as np
import pytest
from PIL import Image

import accumulator_tools as acc
import constants as cst
import mesh_tools as mt
from config_tools import ReactionRule, TextureEffect
from effect_tools import (
    RampSegment,
    apply_reaction_rules,
    apply_texture_effects,
    base_image,
    blend,
    density_map,
    load_source,
    ramp,
)
from statistics_tools import normalize
from texture_tools import TextureBuffer


def _buffer(values, unknown=None):
    values = np.array(values, dtype=float)
    shape = values.shape
    return TextureBuffer(
        channel="rust",
        values=values,
        coverage=np.ones(shape, dtype=bool),
        filled=np.zeros(shape, dtype=bool),
        unknown=np.zeros(shape, dtype=bool) if unknown is None else np.array(unknown, dtype=bool),
        island=np.zeros(shape, dtype=np.int64),
    )


@pytest.fixture
def wet_surface():
    mesh = mt.make_plane(nx=1, ny=1, material_name="metal")
    a = acc.EffectAccumulator(["water", "rust"], mesh.triangle_count, subdivisions=1)
    for t in range(mesh.triangle_count):
        a.add(acc.SurfaceLocation(t, 0), "water", 1.0)
    a.commit()
    return mesh, a


def test_reaction_rules_convert_then_evaporate(wet_surface):
    mesh, a = wet_surface
    rules = [
        ReactionRule("oxidise", source="water", target="rust", rate=0.5),
        ReactionRule("flake", source="rust", target=None, rate=0.5),
    ]
    evaporated = apply_reaction_rules(a, rules, mesh)
    assert a.pending_locations() == 0
    assert evaporated == {"rust": 2 * acc.mass_to_quanta(0.25)}
    for t in range(2):
        loc = acc.SurfaceLocation(t, 0)
        assert a.committed_quanta(loc, "water") == acc.mass_to_quanta(0.5)
        assert a.committed_quanta(loc, "rust") == acc.mass_to_quanta(0.25)
    assert len(a.snapshot()) == 2


def test_reaction_rules_respect_mesh_materials(wet_surface):
    mesh, a = wet_surface
    before = a.snapshot().digest()
    rules = [ReactionRule("oxidise", source="water", target="rust", rate=0.5, mesh_materials=("stone",))]
    assert apply_reaction_rules(a, rules, mesh) == {}
    assert a.snapshot().digest() == before


def test_normalize_keeps_unknowns():
    out = normalize(np.array([1.0, 3.0, np.nan]))
    np.testing.assert_allclose(out[:2], [0.0, 1.0])
    assert np.isnan(out[2])
    np.testing.assert_allclose(normalize(np.array([2.0, 2.0])), [1.0, 1.0])
    np.testing.assert_allclose(normalize(np.array([2.0, 2.0]), vmin=2.0), [0.0, 0.0])
    np.testing.assert_allclose(normalize(np.array([-1.0, 1.0]), nonnegative=True), [0.0, 1.0])


def test_density_map_marks_unknown_texels():
    buf = _buffer([[0.0, 1.0], [0.5, np.nan]], unknown=[[False, False], [False, True]])
    img = density_map(buf)
    assert img.shape == (2, 2, 4) and img.dtype == np.uint8
    assert tuple(img[0, 0]) == (0, 0, 0, 255)
    assert tuple(img[0, 1]) == (255, 255, 255, 255)
    assert tuple(img[1, 1]) == cst.UNKNOWN_COLOR


def test_blend_lerps_towards_overlay():
    buf = _buffer([[0.0, 1.0], [0.5, 2.0]], unknown=[[False, False], [False, True]])
    img = blend(buf, base=(0, 0, 0), overlay=(200, 100, 0), vmin=0.0, vmax=1.0)
    assert tuple(img[0, 0]) == (0, 0, 0, 255)
    assert tuple(img[0, 1]) == (200, 100, 0, 255)
    assert tuple(img[1, 0]) == (100, 50, 0, 255)
    assert tuple(img[1, 1]) == cst.UNKNOWN_COLOR


def test_blend_resamples_images():
    base = np.zeros((1, 1, 3), dtype=np.uint8)
    overlay = np.full((4, 4), 100, dtype=np.uint8)
    img = blend(_buffer([[1.0, 1.0], [1.0, 1.0]]), base, overlay, vmin=0.0, vmax=1.0)
    assert np.all(img[..., :3] == 100)
    assert np.all(img[..., 3] == 255)


def test_ramp_segments():
    buf = _buffer([[0.2, 0.6], [1.5, np.nan]])
    segments = [
        RampSegment(0.0, 1.0, low=(0, 0, 0), high=(255, 255, 255)),
        RampSegment(1.0, 2.0, low=(255, 0, 0), high=(0, 255, 0)),
    ]
    img = ramp(buf, segments)
    assert tuple(img[0, 0]) == (51, 51, 51, 255)
    assert tuple(img[0, 1]) == (153, 153, 153, 255)
    assert tuple(img[1, 0]) == (128, 128, 0, 255)
    assert tuple(img[1, 1]) == (0, 0, 255, 255)


def test_ramp_outside_segments_uses_fallback():
    buf = _buffer([[5.0]])
    img = ramp(buf, [RampSegment(0.0, 1.0, high=(255, 255, 255))], base=(10, 10, 10),
               fallback_color=(1, 2, 3, 4))
    assert tuple(img[0, 0]) == (1, 2, 3, 4)
    with pytest.raises(ValueError):
        ramp(buf, [RampSegment(1.0, 1.0, (0, 0, 0), (0, 0, 0))])
    with pytest.raises(ValueError):
        ramp(buf, [RampSegment(0.0, 1.0, high=(0, 0, 0))])


def test_blend_resamples_with_nearest_texels():
    base = np.array([[[0, 0, 0], [255, 255, 255]]], dtype=np.uint8)
    img = blend(_buffer([[0.0, 0.0, 0.0, 0.0]]), base, (0, 0, 0), vmin=0.0, vmax=1.0)
    assert img[0, :, 0].tolist() == [0, 0, 255, 255]


def test_load_source(tmp_path):
    assert load_source("120 60 20") == (120, 60, 20)
    assert load_source("10, 20, 30, 40") == (10, 20, 30, 40)
    assert load_source("red") == (255, 0, 0)
    assert load_source((1, 2, 3)) == (1, 2, 3)
    Image.new("RGB", (3, 2), (0, 128, 0)).save(tmp_path / "moss.png")
    img = load_source("moss.png", str(tmp_path))
    assert img.size == (3, 2) and img.mode == "RGBA"
    with pytest.raises(FileNotFoundError):
        load_source("lichen.png", str(tmp_path))


def test_base_image_prefers_the_diffuse_map(tmp_path):
    Image.new("RGB", (1, 1), (0, 255, 0)).save(tmp_path / "moss.png")
    img = base_image({"Kd": "1 0 0", "map_Kd": "-s 1 1 1 moss.png"}, str(tmp_path))
    assert img.getpixel((0, 0)) == (0, 255, 0, 255)
    assert base_image({"Kd": "1 0.5 0"}) == (255, 128, 0)
    assert base_image({}) == (255, 255, 255)


def test_texture_effects_start_from_each_material(tmp_path):
    Image.new("RGB", (1, 1), (0, 255, 0)).save(tmp_path / "moss.png")
    rust = _buffer([[0.0, 1.0], [0.5, np.nan]], unknown=[[False, False], [False, True]])
    effects = [
        TextureEffect("stain", channel="rust", kind="blend", overlay="255 0 0", vmin=0.0, vmax=1.0,
                      mesh_materials=("metal",)),
        TextureEffect("moss", channel="rust", kind="ramp", segments=[(0.0, 0.75, None, "white")],
                      mesh_materials=("stone",)),
    ]
    base = {"metal": {"Kd": "0 0 1"}, "stone": {"map_Kd": "moss.png"}}
    images = apply_texture_effects({"rust": rust}, effects, ["metal", "stone", "glass"], base, str(tmp_path))
    assert sorted(images) == ["metal", "stone"]

    metal = images["metal"]
    assert metal.shape == (2, 2, 4) and metal.dtype == np.uint8
    assert tuple(metal[0, 0]) == (0, 0, 255, 255)
    assert tuple(metal[0, 1]) == (255, 0, 0, 255)
    assert tuple(metal[1, 0]) == (128, 0, 128, 255)
    assert tuple(metal[1, 1]) == cst.UNKNOWN_COLOR

    stone = images["stone"]
    assert tuple(stone[0, 0]) == (0, 255, 0, 255)
    assert tuple(stone[1, 0]) == (170, 255, 170, 255)
    assert tuple(stone[0, 1]) == cst.UNKNOWN_COLOR


def test_texture_effects_chain_in_order():
    rust = _buffer([[0.0, 2.0]])
    effects = [
        TextureEffect("gray", channel="rust", kind="density"),
        TextureEffect("tint", channel="rust", kind="blend", overlay="blue", vmin=0.0, vmax=2.0),
    ]
    image = apply_texture_effects({"rust": rust}, effects, ["default"])["default"]
    assert tuple(image[0, 0]) == (0, 0, 0, 255)
    assert tuple(image[0, 1]) == (0, 0, 255, 255)
    np.testing.assert_array_equal(
        apply_texture_effects({"rust": rust}, effects[:1], ["default"])["default"], density_map(rust, 0.0, None))
