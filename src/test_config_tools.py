import numpy as np
import pytest

from config_tools import EmissionRegion, MaterialParameters, ReactionRule, TextureEffect, TextureSettings
from emission_tools import Emitter, emission_rng
from error_tools import ConfigurationError
from surface_tools import SurfaceIndex


def test_default_factory_config_is_valid(make_config):
    config = make_config()
    assert config.validate() is config
    assert config.material_names == ["dirt", "rock"]
    assert config.material("rock").substrate == 1.0
    with pytest.raises(KeyError):
        config.material("lava")


@pytest.mark.parametrize("overrides", [
    dict(iterations=0),
    dict(particles_per_iteration=-1),
    dict(seed=-1),
    dict(max_steps=2.5),
    dict(workers=0),
    dict(step_length=0.0),
    dict(energy_decay=-0.1),
    dict(inertia=-1.0),
    dict(jitter=float("nan")),
    dict(flow_vector=(0.0, -1.0)),
    dict(materials=[]),
    dict(materials=[MaterialParameters("dirt"), MaterialParameters("dirt")]),
    dict(materials=[MaterialParameters("dirt", deposition_probability=1.5)]),
    dict(materials=[MaterialParameters("dirt", decay_rate=-0.1)]),
    dict(materials=[MaterialParameters("dirt", erosion_rate=-1.0)]),
    dict(emission_regions=[]),
    dict(emission_regions=[EmissionRegion("rain", kind="cloud")]),
    dict(emission_regions=[EmissionRegion("rain", payload={"lava": 1.0})]),
    dict(emission_regions=[EmissionRegion("rain", payload={"dirt": -1.0})]),
    dict(emission_regions=[EmissionRegion("rain", kind="box", box_min=(1, 0, 0), box_max=(0, 1, 1))]),
    dict(emission_regions=[EmissionRegion("rain", triangles=())]),
    dict(emission_regions=[EmissionRegion("a", weight=0.0), EmissionRegion("b", weight=0.0)]),
    dict(reactions=[ReactionRule("r", source="lava", target="dirt", rate=0.1)]),
    dict(reactions=[ReactionRule("r", source="dirt", target="dirt", rate=0.1)]),
    dict(reactions=[ReactionRule("r", source="dirt", target="rock", rate=2.0)]),
    dict(effects=[TextureEffect("e", channel="lava", overlay="red")]),
    dict(effects=[TextureEffect("e", channel="dirt", kind="sepia")]),
    dict(effects=[TextureEffect("e", channel="dirt", kind="blend")]),
    dict(effects=[TextureEffect("e", channel="dirt", overlay="red", vmin=1.0, vmax=1.0)]),
    dict(effects=[TextureEffect("e", channel="dirt", kind="ramp")]),
    dict(effects=[TextureEffect("e", channel="dirt", kind="ramp", segments=[(0.0, 1.0, None)])]),
    dict(effects=[TextureEffect("e", channel="dirt", kind="ramp", segments=[(1.0, 0.0, None, "red")])]),
    dict(texture=TextureSettings(width=0)),
    dict(texture=TextureSettings(combine="median")),
    dict(texture=TextureSettings(fill="blur")),
    dict(texture=TextureSettings(dilation=-1)),
])
def test_invalid_configurations_are_rejected(make_config, overrides):
    with pytest.raises(ConfigurationError, match=r"\[SimulationConfig\]"):
        make_config(**overrides).validate()


def test_emitter_draws_requested_count(plane_mesh):
    index = SurfaceIndex(plane_mesh)
    regions = [EmissionRegion("rain", payload={"dirt": 0.5}, energy=2.0)]
    emissions, issues = Emitter(index, regions).emit(25, emission_rng(1, 0))
    assert len(emissions) == 25 and issues == []
    assert all(e.payload == {"dirt": 500_000_000} and e.energy == 2.0 for e in emissions)


def test_emission_streams_are_reproducible(plane_mesh):
    index = SurfaceIndex(plane_mesh)
    emitter = Emitter(index, [EmissionRegion("rain")])
    a, _ = emitter.emit(10, emission_rng(3, 2))
    b, _ = emitter.emit(10, emission_rng(3, 2))
    c, _ = emitter.emit(10, emission_rng(3, 3))
    assert [e.point.triangle for e in a] == [e.point.triangle for e in b]
    np.testing.assert_array_equal([e.point.position for e in a], [e.point.position for e in b])
    assert not np.array_equal([e.point.position for e in a], [e.point.position for e in c])


def test_region_weights_choose_regions(plane_mesh):
    index = SurfaceIndex(plane_mesh)
    regions = [
        EmissionRegion("never", triangles=(0,), weight=0.0),
        EmissionRegion("always", triangles=(5,), weight=1.0),
    ]
    emissions, _ = Emitter(index, regions).emit(30, emission_rng(0, 0))
    assert {e.region for e in emissions} == {"always"}
    assert {e.point.triangle for e in emissions} == {5}


def test_point_and_box_regions_project_onto_surface(plane_mesh):
    index = SurfaceIndex(plane_mesh)
    regions = [
        EmissionRegion("drip", kind="point", position=(0.5, 0.5, 0.3), radius=0.1),
        EmissionRegion("dust", kind="box", box_min=(0.2, 0.2, 0.5), box_max=(0.4, 0.4, 1.0)),
    ]
    emissions, issues = Emitter(index, regions).emit(40, emission_rng(0, 0))
    assert len(emissions) == 40 and not issues
    for e in emissions:
        assert e.point.position[2] == pytest.approx(0.0)
        if e.region == "dust":
            assert 0.2 <= e.point.position[0] <= 0.4


def test_out_of_reach_emissions_are_recorded(plane_mesh):
    index = SurfaceIndex(plane_mesh)
    regions = [EmissionRegion("cloud", kind="point", position=(0.5, 0.5, 1.0), max_distance=0.01)]
    emissions, issues = Emitter(index, regions).emit(5, emission_rng(0, 0))
    assert emissions == []
    assert [i.kind for i in issues] == ["OutOfBoundsQuery"] * 5
