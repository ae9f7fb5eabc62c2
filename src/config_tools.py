"""
Simulation configuration.

A `SimulationConfig` is assembled once (by hand, or from Inputs.txt through
`import_tools.import_inputs`) and validated before the driver starts. It is
treated as read-only for the whole run.
"""

import logging
import math
from dataclasses import dataclass, field

import constants as cst
from error_tools import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class MaterialParameters:
    """
    Transport parameters of one material kind.

    Attributes
    ----------
    name : str
        Material kind (texture channel name).
    deposition_probability : float
        Fraction of the carried amount written to the surface at every
        interaction, in [0, 1].
    erosion_rate : float
        Fraction of the local surface amount removed per unit of particle
        energy, >= 0. The removed fraction is capped at 1.
    decay_rate : float
        Fraction of the carried amount lost per step, in [0, 1].
    pickup : bool
        If True eroded material is added to the particle payload, otherwise
        it is dislodged and leaves the system.
    substrate : float
        Initial amount per surface cell that erosion can draw from.
    """
    name: str
    deposition_probability: float = 0.0
    erosion_rate: float = 0.0
    decay_rate: float = 0.0
    pickup: bool = True
    substrate: float = 0.0


@dataclass
class EmissionRegion:
    """
    Where and with what particles are spawned.

    kind "point" emits around `position` (uniform in a ball of `radius`),
    "box" uniformly in the box [`box_min`, `box_max`], and "surface"
    area-weighted over `triangles` (all triangles when None). Point and box
    samples are projected onto the surface; `max_distance` limits that
    projection (None: unbounded).
    """
    name: str
    kind: str = "surface"
    payload: dict[str, float] = field(default_factory=dict)
    energy: float = cst.DEFAULT_ENERGY
    weight: float = 1.0
    position: tuple[float, float, float] = (0.0, 0.0, 0.0)
    radius: float = 0.0
    box_min: tuple[float, float, float] = (0.0, 0.0, 0.0)
    box_max: tuple[float, float, float] = (0.0, 0.0, 0.0)
    triangles: tuple[int, ...] | None = None
    max_distance: float | None = None


@dataclass
class ReactionRule:
    """
    Transfer between materials applied at every iteration boundary.

    At each touched surface cell `floor(rate * available(source))` moves from
    `source` to `target`; with `target=None` the amount evaporates.
    `mesh_materials` restricts the rule to triangles of those mesh materials.
    """
    name: str
    source: str
    target: str | None = None
    rate: float = 0.0
    mesh_materials: tuple[str, ...] | None = None


@dataclass
class TextureEffect:
    """
    Image effect that turns a baked channel into a weathered diffuse map.

    kind "density" draws the channel in grayscale, "blend" lerps the current
    map towards `overlay` by concentration over [vmin, vmax], and "ramp" maps
    raw concentrations through `segments` of (min, max, low, high), where
    low / high name a colour or an image file and None stands for the current
    map. The effects of one mesh material run in configuration order, each on
    the output of the previous one, starting from the material's own diffuse
    map. `mesh_materials` restricts the effect (None: every mesh material).
    """
    name: str
    channel: str
    kind: str = "blend"
    overlay: str | tuple | None = None
    vmin: float | None = 0.0
    vmax: float | None = None
    segments: list[tuple] = field(default_factory=list)
    mesh_materials: tuple[str, ...] | None = None


@dataclass
class TextureSettings:
    width: int = cst.DEFAULT_TEXTURE_SIZE
    height: int = cst.DEFAULT_TEXTURE_SIZE
    combine: str = "mean"
    fill: str = "dilate"
    dilation: int = cst.DEFAULT_DILATION


@dataclass
class ExportSettings:
    """Switches for the files written after a run (all relative to the project folder)."""
    output_folder: str = "results"
    textures: bool = True
    obj: bool = True
    history: bool = True
    plot_history: bool = False
    hit_map: bool = False


@dataclass
class SimulationConfig:
    """
    Everything a run needs besides the mesh.

    Attributes
    ----------
    iterations : int
        Number of sequential iterations.
    particles_per_iteration : int
        Particles emitted per iteration (over all regions).
    seed : int
        Seed of every random stream of the run.
    materials : list[MaterialParameters]
        Tracked material kinds; each gets one texture channel.
    emission_regions : list[EmissionRegion]
        At least one region.
    step_length : float
        Distance moved per step.
    max_steps : int
        Hard cap on steps per particle.
    energy_decay : float
        Energy removed per step.
    energy_decay_per_distance : float
        Energy removed per unit of distance moved.
    flow_vector : tuple[float, float, float]
        Driving direction (e.g. gravity), projected onto the tangent plane.
    inertia : float
        Weight of the previous direction when choosing the next one.
    jitter : float
        Weight of a random tangent direction when choosing the next one.
    cell_subdivisions : int
        Accumulator cells per triangle edge.
    workers : int
        Worker threads per iteration (1 runs particles inline).
    accumulator_shards : int
        Lock partitions of the accumulator.
    reactions : list[ReactionRule]
    effects : list[TextureEffect]
        Texture effects applied to the mesh materials on export.
    texture : TextureSettings
    export : ExportSettings
    record_paths : bool
        Keep particle paths for the hit-map export.
    query_tolerance : float | None
        Surface query tolerance (None: derived from the mesh size).
    mesh_file : str | None
        OBJ file of the mesh, used by `run()` when no mesh is passed.
    """
    iterations: int = 1
    particles_per_iteration: int = 1
    seed: int = 0
    materials: list[MaterialParameters] = field(default_factory=list)
    emission_regions: list[EmissionRegion] = field(default_factory=list)
    step_length: float = cst.DEFAULT_STEP_LENGTH
    max_steps: int = cst.DEFAULT_MAX_STEPS
    energy_decay: float = cst.DEFAULT_ENERGY_DECAY
    energy_decay_per_distance: float = 0.0
    flow_vector: tuple[float, float, float] = cst.DEFAULT_FLOW_VECTOR
    inertia: float = cst.DEFAULT_INERTIA
    jitter: float = cst.DEFAULT_JITTER
    cell_subdivisions: int = cst.DEFAULT_CELL_SUBDIVISIONS
    workers: int = 1
    accumulator_shards: int = cst.DEFAULT_ACCUMULATOR_SHARDS
    reactions: list[ReactionRule] = field(default_factory=list)
    effects: list[TextureEffect] = field(default_factory=list)
    texture: TextureSettings = field(default_factory=TextureSettings)
    export: ExportSettings = field(default_factory=ExportSettings)
    record_paths: bool = False
    query_tolerance: float | None = None
    mesh_file: str | None = None

    @property
    def material_names(self) -> list[str]:
        return [m.name for m in self.materials]

    def material(self, name: str) -> MaterialParameters:
        for m in self.materials:
            if m.name == name:
                return m
        raise KeyError(f"unknown material {name!r}")

    def validate(self) -> "SimulationConfig":
        """
        Check the configuration and return it unchanged.

        Raises
        ------
        ConfigurationError
            On the first invalid field found.
        """
        def _fail(msg: str):
            raise ConfigurationError(f"[SimulationConfig] {msg}")

        def _finite(value, name: str) -> float:
            try:
                v = float(value)
            except (TypeError, ValueError):
                _fail(f"{name} must be a number, got {value!r}.")
            if not math.isfinite(v):
                _fail(f"{name} must be finite, got {value!r}.")
            return v

        def _unit(value, name: str) -> None:
            v = _finite(value, name)
            if not 0.0 <= v <= 1.0:
                _fail(f"{name} must lie in [0, 1], got {v}.")

        def _positive_int(value, name: str) -> None:
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                _fail(f"{name} must be a positive integer, got {value!r}.")

        _positive_int(self.iterations, "iterations")
        _positive_int(self.particles_per_iteration, "particles_per_iteration")
        _positive_int(self.max_steps, "max_steps")
        _positive_int(self.cell_subdivisions, "cell_subdivisions")
        _positive_int(self.workers, "workers")
        _positive_int(self.accumulator_shards, "accumulator_shards")
        if isinstance(self.seed, bool) or not isinstance(self.seed, int) or self.seed < 0:
            _fail(f"seed must be a non-negative integer, got {self.seed!r}.")

        if _finite(self.step_length, "step_length") <= 0.0:
            _fail("step_length must be > 0.")
        if _finite(self.energy_decay, "energy_decay") < 0.0:
            _fail("energy_decay must be >= 0.")
        if _finite(self.energy_decay_per_distance, "energy_decay_per_distance") < 0.0:
            _fail("energy_decay_per_distance must be >= 0.")
        if len(tuple(self.flow_vector)) != 3:
            _fail("flow_vector must have three components.")
        for k, c in enumerate(self.flow_vector):
            _finite(c, f"flow_vector[{k}]")
        if _finite(self.inertia, "inertia") < 0.0:
            _fail("inertia must be >= 0.")
        if _finite(self.jitter, "jitter") < 0.0:
            _fail("jitter must be >= 0.")
        if self.query_tolerance is not None and _finite(self.query_tolerance, "query_tolerance") <= 0.0:
            _fail("query_tolerance must be > 0.")

        if not self.materials:
            _fail("at least one material is required.")
        names = self.material_names
        if len(set(names)) != len(names):
            _fail(f"material names must be unique, got {names}.")
        for m in self.materials:
            if not m.name:
                _fail("material names must not be empty.")
            _unit(m.deposition_probability, f"{m.name}.deposition_probability")
            _unit(m.decay_rate, f"{m.name}.decay_rate")
            if _finite(m.erosion_rate, f"{m.name}.erosion_rate") < 0.0:
                _fail(f"{m.name}.erosion_rate must be >= 0.")
            if _finite(m.substrate, f"{m.name}.substrate") < 0.0:
                _fail(f"{m.name}.substrate must be >= 0.")

        if not self.emission_regions:
            _fail("at least one emission region is required.")
        for r in self.emission_regions:
            if r.kind not in cst.EMISSION_KINDS:
                _fail(f"emission region {r.name!r} has unknown kind {r.kind!r} "
                      f"(expected one of {cst.EMISSION_KINDS}).")
            for mat, amount in r.payload.items():
                if mat not in names:
                    _fail(f"emission region {r.name!r} carries unknown material {mat!r}.")
                if _finite(amount, f"{r.name}.payload[{mat}]") < 0.0:
                    _fail(f"emission region {r.name!r} has a negative payload for {mat!r}.")
            if _finite(r.energy, f"{r.name}.energy") < 0.0:
                _fail(f"emission region {r.name!r} has negative energy.")
            if _finite(r.weight, f"{r.name}.weight") < 0.0:
                _fail(f"emission region {r.name!r} has a negative weight.")
            if _finite(r.radius, f"{r.name}.radius") < 0.0:
                _fail(f"emission region {r.name!r} has a negative radius.")
            if r.max_distance is not None and _finite(r.max_distance, f"{r.name}.max_distance") < 0.0:
                _fail(f"emission region {r.name!r} has a negative max_distance.")
            if r.kind == "box" and any(float(a) > float(b) for a, b in zip(r.box_min, r.box_max)):
                _fail(f"emission region {r.name!r} has box_min > box_max.")
            if r.kind == "surface" and r.triangles is not None and len(r.triangles) == 0:
                _fail(f"emission region {r.name!r} lists no triangles.")
        if sum(float(r.weight) for r in self.emission_regions) <= 0.0:
            _fail("emission region weights must not all be zero.")

        for rule in self.reactions:
            if rule.source not in names:
                _fail(f"reaction {rule.name!r} has unknown source material {rule.source!r}.")
            if rule.target is not None and rule.target not in names:
                _fail(f"reaction {rule.name!r} has unknown target material {rule.target!r}.")
            if rule.target == rule.source:
                _fail(f"reaction {rule.name!r} has the same source and target.")
            _unit(rule.rate, f"{rule.name}.rate")

        for fx in self.effects:
            if fx.kind not in cst.EFFECT_KINDS:
                _fail(f"effect {fx.name!r} has unknown kind {fx.kind!r} (expected one of {cst.EFFECT_KINDS}).")
            if fx.channel not in names:
                _fail(f"effect {fx.name!r} reads unknown material {fx.channel!r}.")
            lo = None if fx.vmin is None else _finite(fx.vmin, f"{fx.name}.vmin")
            hi = None if fx.vmax is None else _finite(fx.vmax, f"{fx.name}.vmax")
            if lo is not None and hi is not None and not hi > lo:
                _fail(f"effect {fx.name!r} needs vmin < vmax.")
            if fx.kind == "blend" and fx.overlay in (None, ""):
                _fail(f"blend effect {fx.name!r} needs an overlay.")
            if fx.kind == "ramp":
                if not fx.segments:
                    _fail(f"ramp effect {fx.name!r} needs at least one segment.")
                for seg in fx.segments:
                    if len(seg) != 4:
                        _fail(f"ramp effect {fx.name!r} segments are (min, max, low, high), got {seg!r}.")
                    if not _finite(seg[1], f"{fx.name}.segment max") > _finite(seg[0], f"{fx.name}.segment min"):
                        _fail(f"ramp effect {fx.name!r} has an empty segment [{seg[0]}, {seg[1]}).")

        tex = self.texture
        for dim in ("width", "height"):
            v = getattr(tex, dim)
            if isinstance(v, bool) or not isinstance(v, int) or v < 1:
                _fail(f"texture {dim} must be a positive integer, got {v!r}.")
        if tex.combine not in cst.COMBINE_MODES:
            _fail(f"unknown combine mode {tex.combine!r} (expected one of {cst.COMBINE_MODES}).")
        if tex.fill not in cst.FILL_MODES:
            _fail(f"unknown fill mode {tex.fill!r} (expected one of {cst.FILL_MODES}).")
        if isinstance(tex.dilation, bool) or not isinstance(tex.dilation, int) or tex.dilation < 0:
            _fail(f"dilation must be a non-negative integer, got {tex.dilation!r}.")

        logger.debug("[SimulationConfig] validated: %d iterations x %d particles, materials %s",
                     self.iterations, self.particles_per_iteration, names)
        return self
