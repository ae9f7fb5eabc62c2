"""
Particle transport over the surface.

A particle is spawned on a SurfacePoint, interacts once where it lands and
then steps along the tangent-plane flow until it runs out of energy, leaves
the mesh through an open edge, hits the step cap, or can no longer be
resolved on the surface.

The walk does not depend on what the particle carries, so transport runs in
two passes. `trace` walks the surface and records every visited location
with the erosion the particle asks for there, read from the committed
accumulator state. Once every particle of an iteration has registered its
requests in an ErosionBudget, `settle` replays the visits with the granted
amounts and writes the integer deltas into the EffectAccumulator. A
particle's result depends only on its own random stream, the committed
state and the total requests on the cells it visits.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

import constants as cst
import mesh_tools as mt
from accumulator_tools import EffectAccumulator, ErosionBudget, SurfaceLocation, location_for
from config_tools import SimulationConfig
from error_tools import GeometryError
from surface_tools import SurfaceIndex, SurfacePoint

logger = logging.getLogger(__name__)


def particle_rng(seed: int, iteration: int, particle: int) -> np.random.Generator:
    """Independent random stream of one particle of one iteration."""
    ss = np.random.SeedSequence(seed, spawn_key=(iteration, particle))
    return np.random.Generator(np.random.PCG64(ss))


class TerminationReason(Enum):
    ENERGY_DEPLETED = "energy_depleted"
    EXITED_MESH = "exited_mesh"
    MAX_STEPS = "max_steps"
    UNRESOLVABLE = "unresolvable"


@dataclass
class Particle:
    """
    Transport agent.

    Attributes
    ----------
    position : SurfacePoint
        Current location on the surface.
    direction : np.ndarray
        Previous unit step direction (zeros before the first step).
    carried : dict[str, int]
        Carried amount per material, in quanta.
    energy : float
        Remaining energy budget.
    steps : int
        Steps taken so far.
    """
    position: SurfacePoint
    direction: np.ndarray
    carried: dict[str, int]
    energy: float
    steps: int = 0


@dataclass
class ParticleOutcome:
    """
    Everything a finished particle did, as integer quanta per material.

    `dislodged` is eroded material that was not picked up; `lost` is the
    payload still carried at termination.
    """
    reason: TerminationReason
    steps: int = 0
    distance: float = 0.0
    emitted: dict[str, int] = field(default_factory=dict)
    eroded: dict[str, int] = field(default_factory=dict)
    deposited: dict[str, int] = field(default_factory=dict)
    decayed: dict[str, int] = field(default_factory=dict)
    dislodged: dict[str, int] = field(default_factory=dict)
    lost: dict[str, int] = field(default_factory=dict)
    path: list[np.ndarray] | None = None

    @property
    def moved_quanta(self) -> int:
        """Quanta written to the surface: eroded plus deposited."""
        return sum(self.eroded.values()) + sum(self.deposited.values())

    def net_quanta(self) -> int:
        """Net amount this particle added to the accumulator."""
        return sum(self.deposited.values()) - sum(self.eroded.values())


def _bump(counter: dict[str, int], material: str, amount: int) -> None:
    if amount:
        counter[material] = counter.get(material, 0) + amount


@dataclass(frozen=True)
class Visit:
    """One interaction of a traced particle: where, and the erosion it requests there."""
    location: SurfaceLocation
    claims: tuple[tuple[str, int], ...]
    decays: bool


@dataclass
class ParticleTrace:
    """Surface walk of one particle, before any mass is moved."""
    particle: Particle
    reason: TerminationReason
    visits: list[Visit] = field(default_factory=list)
    steps: int = 0
    distance: float = 0.0
    path: list[np.ndarray] | None = None


class TransportEngine:
    """
    Steps particles across the surface and applies the interaction rules.

    The engine holds no per-particle state and only reads the SurfaceIndex
    and the committed accumulator state, so `trace` and `settle` may be
    called concurrently from several threads.

    Parameters
    ----------
    index : SurfaceIndex
        Shared, read-only surface index.
    accumulator : EffectAccumulator
        Destination of all surface deltas.
    config : SimulationConfig
        Validated configuration.
    """

    def __init__(self, index: SurfaceIndex, accumulator: EffectAccumulator, config: SimulationConfig):
        self.index = index
        self.accumulator = accumulator
        self.config = config
        self.materials = [m for m in config.materials]
        self.flow = np.asarray(config.flow_vector, dtype=float)
        self.subdivisions = accumulator.subdivisions
        self._pickup = {m.name: m.pickup for m in config.materials}

    def spawn(self, point: SurfacePoint, payload: dict[str, int], energy: float) -> Particle:
        return Particle(position=point, direction=np.zeros(3), carried=dict(payload), energy=float(energy))

    def flow_direction(self, particle: Particle, rng: np.random.Generator) -> np.ndarray:
        """
        Unit tangent direction of the next step.

        Flow vector projected on the tangent plane, plus inertia times the
        previous direction, plus jitter times a random tangent direction.
        Falls back to the random tangent when the sum vanishes.
        """
        normal = particle.position.normal
        e1, e2 = mt.perpendicular_basis(normal)
        theta = rng.uniform(0.0, 2.0 * np.pi)
        random_dir = np.cos(theta) * e1 + np.sin(theta) * e2

        g = mt.normalized(mt.project_onto_plane(self.flow, normal), eps=1e-12)
        d = np.zeros(3) if g is None else g
        if self.config.inertia:
            d = d + self.config.inertia * mt.project_onto_plane(particle.direction, normal)
        if self.config.jitter:
            d = d + self.config.jitter * random_dir
        d = mt.normalized(d, eps=1e-12)
        return random_dir if d is None else d

    def _visit(self, particle: Particle, decays: bool) -> Visit:
        """Erosion requested at the particle's location, from the committed state."""
        location = location_for(particle.position, self.subdivisions)
        energy = max(particle.energy, 0.0)
        claims = []
        for m in self.materials:
            if m.erosion_rate > 0.0:
                available = self.accumulator.available_quanta(location, m.name)
                fraction = min(1.0, m.erosion_rate * energy)
                take = min(available, int(np.floor(available * fraction)))
                if take > 0:
                    claims.append((m.name, take))
        return Visit(location, tuple(claims), decays)

    def trace(self, particle: Particle, rng: np.random.Generator) -> ParticleTrace:
        """
        Walk one particle until it terminates, without moving any mass.

        Parameters
        ----------
        particle : Particle
            Freshly spawned particle; its position, direction, energy and
            step count are advanced by this call, its payload is not.
        rng : np.random.Generator
            The particle's own random stream.

        Returns
        -------
        ParticleTrace
            Visited locations with their erosion requests.
        """
        cfg = self.config
        trace = ParticleTrace(particle=particle, reason=TerminationReason.ENERGY_DEPLETED)
        if cfg.record_paths:
            trace.path = [particle.position.position.copy()]

        trace.visits.append(self._visit(particle, decays=False))

        while True:
            if particle.energy <= cst.ENERGY_EPSILON:
                trace.reason = TerminationReason.ENERGY_DEPLETED
                break
            if particle.steps >= cfg.max_steps:
                trace.reason = TerminationReason.MAX_STEPS
                break

            direction = self.flow_direction(particle, rng)
            start = particle.position
            target = start.position + cfg.step_length * direction
            particle.steps += 1
            try:
                resolved = self.index.resolve_step(start, target)
            except GeometryError as err:
                logger.debug("[TransportEngine] particle stopped: %s", err)
                trace.reason = TerminationReason.UNRESOLVABLE
                break

            moved = float(np.linalg.norm(resolved.position - start.position))
            trace.distance += moved
            if cfg.record_paths:
                trace.path.append(resolved.position.copy())
            if self.index.is_boundary_exit(resolved, target):
                trace.reason = TerminationReason.EXITED_MESH
                break

            step_dir = mt.normalized(resolved.position - start.position, eps=1e-15)
            particle.direction = direction if step_dir is None else step_dir
            particle.position = resolved

            trace.visits.append(self._visit(particle, decays=True))
            particle.energy -= cfg.energy_decay + cfg.energy_decay_per_distance * moved

        trace.steps = particle.steps
        return trace

    def claim(self, trace: ParticleTrace, budget: ErosionBudget) -> None:
        """Register the erosion requests of a trace."""
        for visit in trace.visits:
            for name, quanta in visit.claims:
                budget.claim(visit.location, name, quanta)

    def _interact(self, particle: Particle, visit: Visit, budget: ErosionBudget, outcome: ParticleOutcome) -> None:
        """Granted erosion, then deposition, for every material at one location."""
        acc = self.accumulator
        location = visit.location
        for name, quanta in visit.claims:
            take = budget.granted(location, name, quanta)
            if take > 0:
                acc.add_quanta(location, name, -take)
                _bump(outcome.eroded, name, take)
                if self._pickup[name]:
                    particle.carried[name] = particle.carried.get(name, 0) + take
                else:
                    _bump(outcome.dislodged, name, take)
        for m in self.materials:
            carried = particle.carried.get(m.name, 0)
            if carried > 0 and m.deposition_probability > 0.0:
                put = min(carried, int(np.floor(carried * m.deposition_probability)))
                if put > 0:
                    acc.add_quanta(location, m.name, put)
                    particle.carried[m.name] = carried - put
                    _bump(outcome.deposited, m.name, put)

    def _decay_payload(self, particle: Particle, outcome: ParticleOutcome) -> None:
        for m in self.materials:
            carried = particle.carried.get(m.name, 0)
            if carried > 0 and m.decay_rate > 0.0:
                loss = min(carried, int(np.floor(carried * m.decay_rate)))
                if loss > 0:
                    particle.carried[m.name] = carried - loss
                    _bump(outcome.decayed, m.name, loss)

    def settle(self, trace: ParticleTrace, budget: ErosionBudget) -> ParticleOutcome:
        """
        Replay a trace with the granted erosion and write its deltas.

        Every requested amount must already be registered in `budget`.

        Returns
        -------
        ParticleOutcome
            Ledger of the particle's effect on the surface.
        """
        particle = trace.particle
        outcome = ParticleOutcome(reason=trace.reason, steps=trace.steps, distance=trace.distance,
                                  emitted={k: v for k, v in particle.carried.items() if v}, path=trace.path)
        for visit in trace.visits:
            self._interact(particle, visit, budget, outcome)
            if visit.decays:
                self._decay_payload(particle, outcome)
        for name, amount in particle.carried.items():
            _bump(outcome.lost, name, amount)
        particle.carried = {}
        return outcome

    def run_particle(self, particle: Particle, rng: np.random.Generator) -> ParticleOutcome:
        """Trace and settle a single particle on its own erosion budget."""
        trace = self.trace(particle, rng)
        budget = ErosionBudget(self.accumulator)
        self.claim(trace, budget)
        return self.settle(trace, budget)
