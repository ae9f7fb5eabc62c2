import math

import numpy as np
import pytest

import accumulator_tools as acc
import mesh_tools as mt
from config_tools import MaterialParameters
from error_tools import OutOfBoundsQuery
from surface_tools import SurfaceIndex
from transport_tools import TerminationReason, TransportEngine, particle_rng


def _engine(mesh, config):
    index = SurfaceIndex(mesh)
    accumulator = acc.EffectAccumulator(
        config.material_names, mesh.triangle_count, config.cell_subdivisions,
        substrate={m.name: m.substrate for m in config.materials},
    )
    return TransportEngine(index, accumulator, config), index, accumulator


def _payload(**masses):
    return {k: acc.mass_to_quanta(v) for k, v in masses.items()}


@pytest.mark.parametrize("decay", [0.1, 0.25, 0.3, 0.5, 1.0])
def test_steps_are_bounded_by_energy_over_decay(make_config, decay):
    # Flow along the normal has no tangent component: the walk is a random one.
    config = make_config(energy_decay=decay, step_length=0.01, flow_vector=(0.0, 0.0, -1.0),
                         inertia=0.0, jitter=0.0, max_steps=1000)
    engine, index, _ = _engine(mt.make_plane(nx=4, ny=4, size=10.0), config)
    start = index.nearest_surface_point(np.array([5.0, 5.0, 0.0]))
    outcome = engine.run_particle(engine.spawn(start, _payload(dirt=1.0), 1.0), particle_rng(1, 0, 0))
    assert outcome.reason is TerminationReason.ENERGY_DEPLETED
    assert 1 <= outcome.steps <= math.ceil(1.0 / decay)


def test_step_cap_terminates_without_energy_decay(make_config):
    config = make_config(energy_decay=0.0, step_length=0.001, max_steps=7, flow_vector=(0.0, 0.0, 1.0))
    engine, index, _ = _engine(mt.make_plane(nx=2, ny=2, size=10.0), config)
    start = index.nearest_surface_point(np.array([5.0, 5.0, 0.0]))
    outcome = engine.run_particle(engine.spawn(start, {}, 1.0), particle_rng(1, 0, 0))
    assert outcome.reason is TerminationReason.MAX_STEPS
    assert outcome.steps == 7


def test_erosion_happens_before_deposition(triangle_mesh, make_config):
    config = make_config(inertia=0.0, jitter=0.0, materials=[
        MaterialParameters("dirt", deposition_probability=1.0, erosion_rate=0.5, substrate=1.0),
    ])
    engine, index, accumulator = _engine(triangle_mesh, config)
    # Lands on the open bottom edge and flows straight off the mesh.
    start = index.nearest_surface_point(np.array([0.5, 0.0, 0.0]))
    outcome = engine.run_particle(engine.spawn(start, {}, 1.0), particle_rng(3, 0, 0))
    assert outcome.reason is TerminationReason.EXITED_MESH
    half = acc.mass_to_quanta(0.5)
    assert outcome.eroded == {"dirt": half}
    assert outcome.deposited == {"dirt": half}
    assert outcome.lost == {}
    accumulator.commit()
    loc = acc.location_for(start, config.cell_subdivisions)
    assert accumulator.committed_quanta(loc, "dirt") == 0
    assert accumulator.snapshot().entries[0].samples == 2


def test_materials_interact_independently(triangle_mesh, make_config):
    config = make_config(inertia=0.0, jitter=0.0, materials=[
        MaterialParameters("rock", deposition_probability=0.0, erosion_rate=0.5, substrate=1.0),
        MaterialParameters("paint", deposition_probability=0.5),
    ], emission_regions=[])
    engine, index, accumulator = _engine(triangle_mesh, config)
    start = index.nearest_surface_point(np.array([0.5, 0.0, 0.0]))
    outcome = engine.run_particle(engine.spawn(start, _payload(paint=1.0), 1.0), particle_rng(3, 0, 0))
    accumulator.commit()
    loc = acc.location_for(start, config.cell_subdivisions)
    half = acc.mass_to_quanta(0.5)
    assert accumulator.committed_quanta(loc, "rock") == -half
    assert accumulator.committed_quanta(loc, "paint") == half
    assert outcome.lost == {"rock": half, "paint": half}


def test_dislodged_material_is_not_carried(triangle_mesh, make_config):
    config = make_config(inertia=0.0, jitter=0.0, materials=[
        MaterialParameters("rock", deposition_probability=1.0, erosion_rate=0.25, pickup=False, substrate=1.0),
    ])
    engine, index, _ = _engine(triangle_mesh, config)
    start = index.nearest_surface_point(np.array([0.5, 0.0, 0.0]))
    outcome = engine.run_particle(engine.spawn(start, {}, 1.0), particle_rng(3, 0, 0))
    quarter = acc.mass_to_quanta(0.25)
    assert outcome.eroded == {"rock": quarter}
    assert outcome.dislodged == {"rock": quarter}
    assert outcome.deposited == {}
    assert outcome.net_quanta() == -quarter


def test_unresolvable_step_loses_the_payload(plane_mesh, make_config, monkeypatch):
    config = make_config(materials=[MaterialParameters("dirt", deposition_probability=0.5)])
    engine, index, _ = _engine(plane_mesh, config)

    def _fail(point, target):
        raise OutOfBoundsQuery("isolated fragment")

    monkeypatch.setattr(index, "resolve_step", _fail)
    start = index.nearest_surface_point(np.array([0.5, 0.5, 0.0]))
    outcome = engine.run_particle(engine.spawn(start, _payload(dirt=1.0), 1.0), particle_rng(0, 0, 0))
    assert outcome.reason is TerminationReason.UNRESOLVABLE
    assert outcome.steps == 1
    assert outcome.deposited == {"dirt": acc.mass_to_quanta(0.5)}
    assert outcome.lost == {"dirt": acc.mass_to_quanta(0.5)}


def test_every_quantum_is_accounted_for(plane_mesh, make_config):
    config = make_config(record_paths=True)
    engine, index, accumulator = _engine(plane_mesh, config)
    for k in range(20):
        rng = particle_rng(5, 0, k)
        start = index.sample_uniform(rng)
        outcome = engine.run_particle(engine.spawn(start, _payload(dirt=1.0), 1.0), rng)
        assert len(outcome.path) == outcome.steps + 1 or outcome.reason is TerminationReason.UNRESOLVABLE
        for m in config.material_names:
            came_in = outcome.emitted.get(m, 0) + outcome.eroded.get(m, 0) - outcome.dislodged.get(m, 0)
            went_out = outcome.deposited.get(m, 0) + outcome.decayed.get(m, 0) + outcome.lost.get(m, 0)
            assert came_in == went_out


def test_same_stream_gives_the_same_walk(plane_mesh, make_config):
    config = make_config(record_paths=True)
    engine, index, _ = _engine(plane_mesh, config)
    start = index.nearest_surface_point(np.array([0.5, 0.9, 0.0]))
    a = engine.run_particle(engine.spawn(start, _payload(dirt=1.0), 1.0), particle_rng(9, 2, 4))
    b = engine.run_particle(engine.spawn(start, _payload(dirt=1.0), 1.0), particle_rng(9, 2, 4))
    assert a.reason is b.reason
    assert a.steps == b.steps
    np.testing.assert_array_equal(np.array(a.path), np.array(b.path))
    assert a.deposited == b.deposited


@pytest.mark.parametrize("particles", [1, 3, 5])
def test_particles_sharing_a_cell_never_overdraw_it(triangle_mesh, make_config, particles):
    config = make_config(inertia=0.0, jitter=0.0, materials=[
        MaterialParameters("rock", erosion_rate=1.0, pickup=False, substrate=1.0),
    ])
    engine, index, accumulator = _engine(triangle_mesh, config)
    start = index.nearest_surface_point(np.array([0.5, 0.0, 0.0]))
    budget = acc.ErosionBudget(accumulator)
    traces = [engine.trace(engine.spawn(start, {}, 1.0), particle_rng(3, 0, k)) for k in range(particles)]
    for trace in traces:
        engine.claim(trace, budget)
    outcomes = [engine.settle(trace, budget) for trace in reversed(traces)]
    accumulator.commit()

    unit = acc.mass_to_quanta(1.0)
    loc = acc.location_for(start, config.cell_subdivisions)
    assert budget.claimed(loc, "rock") == particles * unit
    share = unit // particles
    assert [o.dislodged["rock"] for o in outcomes] == [share] * particles
    assert accumulator.committed_quanta(loc, "rock") == -share * particles
    assert accumulator.committed_quanta(loc, "rock") >= -unit


def test_deposited_mass_is_eroded_at_most_once(triangle_mesh, make_config):
    config = make_config(inertia=0.0, jitter=0.0, materials=[
        MaterialParameters("rock", erosion_rate=1.0, pickup=False),
    ])
    engine, index, accumulator = _engine(triangle_mesh, config)
    start = index.nearest_surface_point(np.array([0.5, 0.0, 0.0]))
    loc = acc.location_for(start, config.cell_subdivisions)
    accumulator.add(loc, "rock", 1.0)
    accumulator.commit()

    budget = acc.ErosionBudget(accumulator)
    traces = [engine.trace(engine.spawn(start, {}, 1.0), particle_rng(0, 1, k)) for k in range(5)]
    for trace in traces:
        engine.claim(trace, budget)
    assert budget.contended() == 1
    for trace in traces:
        engine.settle(trace, budget)
    accumulator.commit()
    assert accumulator.committed_quanta(loc, "rock") == 0
    assert accumulator.available_quanta(loc, "rock") == 0


def test_picked_up_share_is_what_gets_carried(triangle_mesh, make_config):
    config = make_config(inertia=0.0, jitter=0.0, materials=[
        MaterialParameters("dirt", erosion_rate=1.0, substrate=1.0),
    ])
    engine, index, accumulator = _engine(triangle_mesh, config)
    start = index.nearest_surface_point(np.array([0.5, 0.0, 0.0]))
    budget = acc.ErosionBudget(accumulator)
    traces = [engine.trace(engine.spawn(start, {}, 1.0), particle_rng(1, 0, k)) for k in range(4)]
    for trace in traces:
        engine.claim(trace, budget)
    outcomes = [engine.settle(trace, budget) for trace in traces]
    quarter = acc.mass_to_quanta(0.25)
    assert all(o.eroded == {"dirt": quarter} and o.lost == {"dirt": quarter} for o in outcomes)
