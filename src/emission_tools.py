import logging
from dataclasses import dataclass

import numpy as np

from accumulator_tools import mass_to_quanta
from config_tools import EmissionRegion
from error_tools import GeometryError, Issue
from surface_tools import SurfaceIndex, SurfacePoint

logger = logging.getLogger(__name__)


def emission_rng(seed: int, iteration: int) -> np.random.Generator:
    """Random stream used to place the particles of one iteration."""
    ss = np.random.SeedSequence(seed, spawn_key=(iteration,))
    return np.random.Generator(np.random.PCG64(ss))


@dataclass(frozen=True, eq=False)
class Emission:
    """A particle to spawn: where, with what payload (quanta) and energy."""
    point: SurfacePoint
    payload: dict[str, int]
    energy: float
    region: str


def sample_region(index: SurfaceIndex, region: EmissionRegion, rng: np.random.Generator) -> SurfacePoint:
    """
    Draw one surface point from an emission region.

    Raises
    ------
    GeometryError
        If the drawn position cannot be projected onto the surface.
    """
    if region.kind == "surface":
        return index.sample_uniform(rng, region.triangles)

    if region.kind == "point":
        p = np.asarray(region.position, dtype=float)
        if region.radius > 0.0:
            # Uniform in a ball.
            v = rng.normal(size=3)
            v /= max(np.linalg.norm(v), 1e-300)
            p = p + region.radius * rng.random() ** (1.0 / 3.0) * v
    else:
        lo = np.asarray(region.box_min, dtype=float)
        hi = np.asarray(region.box_max, dtype=float)
        p = lo + rng.random(3) * (hi - lo)

    tol = np.inf if region.max_distance is None else float(region.max_distance)
    return index.nearest_surface_point(p, tolerance=tol)


class Emitter:
    """
    Samples the particles of an iteration from the configured regions.

    Regions may overlap. The region of every particle is drawn with
    probability proportional to its weight (equal weights give a uniform
    choice); the position is uniform within the region.
    """

    def __init__(self, index: SurfaceIndex, regions: list[EmissionRegion]):
        self.index = index
        self.regions = list(regions)
        w = np.array([float(r.weight) for r in self.regions], dtype=float)
        self._p = w / w.sum()
        self._payloads = [{k: mass_to_quanta(v) for k, v in r.payload.items()} for r in self.regions]

    def emit(self, count: int, rng: np.random.Generator) -> tuple[list[Emission], list[Issue]]:
        """
        Draw `count` particles.

        Returns
        -------
        emissions : list[Emission]
            Particles in emission order; failed draws are left out.
        issues : list[Issue]
            One entry per draw whose position could not be projected.
        """
        choice = rng.choice(len(self.regions), size=count, p=self._p)
        emissions, issues = [], []
        for k in choice:
            region = self.regions[int(k)]
            try:
                point = sample_region(self.index, region, rng)
            except GeometryError as err:
                logger.warning("[Emitter] region %r: %s", region.name, err)
                issues.append(Issue.from_error(err))
                continue
            emissions.append(Emission(point, dict(self._payloads[int(k)]), float(region.energy), region.name))
        return emissions, issues
