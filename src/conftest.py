import matplotlib
matplotlib.use("Agg")  # headless

import numpy as np
import pytest

import mesh_tools as mt
from config_tools import EmissionRegion, MaterialParameters, SimulationConfig, TextureSettings


@pytest.fixture
def triangle_mesh() -> mt.Mesh:
    """Unit right triangle in the z = 0 plane, UVs equal to (x, y)."""
    positions = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
    return mt.Mesh(positions, np.array([[0, 1, 2]]), uvs=positions[:, :2].copy(), name="triangle")


@pytest.fixture
def plane_mesh() -> mt.Mesh:
    return mt.make_plane(nx=4, ny=4, size=1.0)


@pytest.fixture
def make_config():
    """Factory for small valid configurations; keyword arguments override fields."""

    def _make(**overrides) -> SimulationConfig:
        kw = dict(
            iterations=2,
            particles_per_iteration=20,
            seed=11,
            materials=[
                MaterialParameters("dirt", deposition_probability=0.3, erosion_rate=0.0, decay_rate=0.05),
                MaterialParameters("rock", deposition_probability=0.2, erosion_rate=0.4, substrate=1.0),
            ],
            emission_regions=[EmissionRegion("rain", kind="surface", payload={"dirt": 1.0}, energy=1.0)],
            step_length=0.05,
            max_steps=64,
            energy_decay=0.1,
            flow_vector=(0.0, -1.0, 0.0),
            inertia=0.3,
            jitter=0.5,
            cell_subdivisions=4,
            texture=TextureSettings(width=32, height=32),
        )
        kw.update(overrides)
        return SimulationConfig(**kw)

    return _make
