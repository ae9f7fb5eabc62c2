import accumulator_tools as acc
import effect_tools as fx
import emission_tools as em
import export_tools as ex
import import_tools as impt
import logging_tools as logt
import mesh_tools as mt
import statistics_tools as stat
import surface_tools as surf
import texture_tools as tex
import transport_tools as tr
from config_tools import SimulationConfig
from error_tools import ConfigurationError, SimulationStateError
import os
import time
import logging
import threading
import argparse
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable
from tqdm import tqdm

logger = logging.getLogger(__name__)

Reporter = Callable[[stat.IterationStatistics], None]


class SimulationState(Enum):
    CONFIGURED = "configured"
    RUNNING = "running"
    COMPLETED = "completed"


_TRANSITIONS = {
    SimulationState.CONFIGURED: {SimulationState.RUNNING},
    SimulationState.RUNNING: {SimulationState.COMPLETED},
    SimulationState.COMPLETED: set(),
}


@dataclass(frozen=True, eq=False)
class CompletedSimulation:
    """
    Handle on a finished run.

    Attributes
    ----------
    textures : dict[str, tex.TextureBuffer]
        One baked buffer per material, at the configured resolution.
    snapshot : acc.AccumulatorSnapshot
        Final accumulator state.
    report : stat.SimulationReport
        Per-iteration statistics, mass ledger and absorbed issues.
    state : SimulationState
        Always COMPLETED.
    mesh : mt.Mesh
    config : SimulationConfig
    synthesizer : tex.TextureSynthesizer
        Synthesizer used for the final bake; `rebake` reuses it.
    paths : list
        Recorded particle paths (empty unless `record_paths` is set).
    """
    textures: dict
    snapshot: acc.AccumulatorSnapshot
    report: stat.SimulationReport
    state: SimulationState
    mesh: mt.Mesh
    config: SimulationConfig
    synthesizer: tex.TextureSynthesizer
    paths: list

    def texture(self, material: str) -> tex.TextureBuffer:
        return self.textures[material]

    def rebake(self, width: int, height: int) -> dict:
        """Bake the final snapshot at another resolution, without simulating again."""
        return self.synthesizer.bake(self.snapshot, width, height)


class Weatherer:
    """
    Particle weathering simulation driver.

    This class:
      - Validates the configuration and builds the surface index, the
        accumulator, the transport engine and the emitter.
      - Runs the iterations strictly one after the other; the particles of
        one iteration run on a thread pool and their deltas are committed
        before the next iteration starts.
      - Applies reaction rules at every iteration boundary.
      - Reports per-iteration statistics to the registered reporters.
      - Bakes the textures exactly once when the run completes.

    State machine: CONFIGURED -> RUNNING -> COMPLETED. `request_stop()`
    ends the run after the iteration in progress; a partial iteration is
    never left behind.

    Parameters
    ----------
    config : SimulationConfig
        Run configuration; rejected with ConfigurationError before any work
        when invalid.
    mesh : mt.Mesh
        Surface to weather.
    reporters : iterable of callables, optional
        Called with the IterationStatistics of every completed iteration.
    schedule : callable, optional
        Maps the list of particle indices of an iteration to the order in
        which they are submitted. The result does not depend on it.
    verbose : bool
        Show a tqdm progress bar.
    """

    def __init__(
            self,
            config: SimulationConfig,
            mesh: mt.Mesh,
            reporters: Iterable[Reporter] = (),
            schedule: Callable[[list[int]], list[int]] | None = None,
            verbose: bool = False,
    ):
        if not isinstance(config, SimulationConfig):
            raise ConfigurationError(f"expected a SimulationConfig, got {type(config).__name__}")
        self.config = config.validate()
        self.mesh = mesh
        self.verbose = verbose
        self._reporters = list(reporters)
        self._schedule = schedule
        self._state = SimulationState.CONFIGURED
        self._stop = threading.Event()
        self._iteration = 0

        # Shared read-only geometry.
        self.index = surf.SurfaceIndex(mesh, config.query_tolerance)
        # The only mutable shared structure.
        self.accumulator = acc.EffectAccumulator(
            config.material_names,
            mesh.triangle_count,
            subdivisions=config.cell_subdivisions,
            shards=config.accumulator_shards,
            substrate={m.name: m.substrate for m in config.materials},
        )
        self.engine = tr.TransportEngine(self.index, self.accumulator, config)
        self.emitter = em.Emitter(self.index, config.emission_regions)
        self.report = stat.SimulationReport(issues=list(self.index.issues))
        self.paths: list = []
        self.snapshot: acc.AccumulatorSnapshot | None = None
        self.textures: dict | None = None
        self.synthesizer: tex.TextureSynthesizer | None = None

    @property
    def state(self) -> SimulationState:
        return self._state

    @property
    def iteration(self) -> int:
        """Index of the iteration in progress (or the last one run)."""
        return self._iteration

    def _transition(self, new: SimulationState) -> None:
        if new not in _TRANSITIONS[self._state]:
            raise SimulationStateError(f"illegal transition {self._state.name} -> {new.name}")
        logger.debug("[Weatherer] %s -> %s", self._state.name, new.name)
        self._state = new

    def add_reporter(self, reporter: Reporter) -> None:
        self._reporters.append(reporter)

    def request_stop(self) -> None:
        """Stop after the iteration in progress. Safe to call from any thread."""
        self._stop.set()

    def _trace_particle(self, iteration: int, k: int, emission: em.Emission) -> tr.ParticleTrace:
        rng = tr.particle_rng(self.config.seed, iteration, k)
        particle = self.engine.spawn(emission.point, emission.payload, emission.energy)
        return self.engine.trace(particle, rng)

    @staticmethod
    def _map(pool: ThreadPoolExecutor | None, fn, order: list[int], args: list) -> list:
        """Call `fn(*args[k])` for every k, submitted in `order`; results are indexed by k."""
        results: list = [None] * len(args)
        if pool is None:
            for k in order:
                results[k] = fn(*args[k])
        else:
            futures = [(k, pool.submit(fn, *args[k])) for k in order]
            for k, future in futures:
                results[k] = future.result()
        return results

    def _order(self, count: int) -> list[int]:
        order = list(range(count))
        if self._schedule is None:
            return order
        order = [int(k) for k in self._schedule(order)]
        if sorted(order) != list(range(count)):
            raise ValueError("schedule must return a permutation of the particle indices")
        return order

    def run_iteration(self, iteration: int, pool: ThreadPoolExecutor | None = None) -> stat.IterationStatistics:
        """
        Emit, transport and commit the particles of one iteration.

        Only valid while RUNNING.
        """
        if self._state is not SimulationState.RUNNING:
            raise SimulationStateError(f"run_iteration needs state RUNNING, not {self._state.name}")
        cfg = self.config
        t0 = time.perf_counter()
        emissions, issues = self.emitter.emit(cfg.particles_per_iteration, em.emission_rng(cfg.seed, iteration))
        self.report.issues.extend(issues)

        order = self._order(len(emissions))
        # Walk every particle first, then grant the erosion requests of the
        # whole iteration together so that no cell gives more than it holds.
        traces = self._map(pool, self._trace_particle, order, [(iteration, k, e) for k, e in enumerate(emissions)])
        budget = acc.ErosionBudget(self.accumulator)
        for trace in traces:
            self.engine.claim(trace, budget)
        contended = budget.contended()
        if contended:
            logger.debug("iteration %d: erosion scaled down on %d cells", iteration, contended)
        outcomes = self._map(pool, self.engine.settle, order, [(t, budget) for t in traces])

        # Iteration boundary: everything written becomes visible at once.
        self.accumulator.commit()
        evaporated = fx.apply_reaction_rules(self.accumulator, cfg.reactions, self.mesh)

        ledger = self.report.ledger
        terminations: dict[str, int] = {}
        emitted: dict[str, int] = {}
        moved = steps = 0
        for outcome in outcomes:
            ledger.add_outcome(outcome)
            terminations[outcome.reason.value] = terminations.get(outcome.reason.value, 0) + 1
            for name, q in outcome.emitted.items():
                emitted[name] = emitted.get(name, 0) + q
            moved += outcome.moved_quanta
            steps += outcome.steps
            if cfg.record_paths and outcome.path is not None:
                self.paths.append(outcome.path)
        ledger.add_rule_decay(evaporated)

        totals = {k: acc.quanta_to_mass(v) for k, v in self.accumulator.committed_totals().items()}
        stats = stat.IterationStatistics(
            iteration=iteration,
            particle_count=len(outcomes),
            moved_mass=acc.quanta_to_mass(moved),
            emitted={k: acc.quanta_to_mass(v) for k, v in sorted(emitted.items())},
            totals=totals,
            terminations=terminations,
            max_step_terminations=terminations.get(tr.TerminationReason.MAX_STEPS.value, 0),
            mean_steps=steps / len(outcomes) if outcomes else 0.0,
            issues=len(issues),
            elapsed=time.perf_counter() - t0,
        )
        self.report.iterations.append(stats)
        logger.info(
            "iteration %d: %d particles, moved %.6g, totals %s",
            iteration, stats.particle_count, stats.moved_mass,
            ", ".join(f"{k}={v:.6g}" for k, v in totals.items()),
        )
        if stats.max_step_terminations:
            logger.warning("iteration %d: %d particles hit the step limit (%d)",
                           iteration, stats.max_step_terminations, cfg.max_steps)
        for reporter in self._reporters:
            try:
                reporter(stats)
            except Exception:
                logger.exception("[Weatherer] reporter %r failed", reporter)
        return stats

    def simulate(self) -> CompletedSimulation:
        """
        Run all iterations (or until a stop is requested) and bake the textures.

        Returns
        -------
        CompletedSimulation
            Textures, snapshot and report of the run.

        Raises
        ------
        SimulationStateError
            If the simulation was already run.
        """
        self._transition(SimulationState.RUNNING)
        cfg = self.config
        progress = tqdm(range(cfg.iterations), total=cfg.iterations, desc="Simulating weathering",
                        unit="iteration", disable=not self.verbose)
        pool = None
        if cfg.workers > 1:
            pool = ThreadPoolExecutor(max_workers=cfg.workers, thread_name_prefix="weathering")
        try:
            for i in progress:
                self._iteration = i
                self.run_iteration(i, pool)
                if self._stop.is_set() and i < cfg.iterations - 1:
                    self.report.stopped_early = True
                    logger.info("stop requested: ending after iteration %d of %d", i + 1, cfg.iterations)
                    break
        finally:
            progress.close()
            if pool is not None:
                pool.shutdown(wait=True)

        self._transition(SimulationState.COMPLETED)
        self.snapshot = self.accumulator.snapshot()
        self._check_ledger()
        self._synthesize()
        return CompletedSimulation(
            textures=self.textures,
            snapshot=self.snapshot,
            report=self.report,
            state=self._state,
            mesh=self.mesh,
            config=cfg,
            synthesizer=self.synthesizer,
            paths=self.paths,
        )

    def _check_ledger(self) -> None:
        net = self.snapshot.net_quanta()
        expected = self.report.ledger.expected_net_quanta()
        if net != expected:
            logger.error("mass ledger mismatch: accumulator net %d quanta, expected %d", net, expected)

    def _synthesize(self) -> None:
        if self._state is not SimulationState.COMPLETED:
            raise SimulationStateError("textures are baked only once the run is COMPLETED")
        if self.textures is not None:
            raise SimulationStateError("textures were already baked for this run")
        settings = self.config.texture
        self.synthesizer = tex.TextureSynthesizer.from_settings(self.mesh, settings)
        self.report.issues.extend(self.synthesizer.issues)
        self.textures = self.synthesizer.bake(self.snapshot, settings.width, settings.height)
        logger.info("baked %d textures at %dx%d", len(self.textures), settings.width, settings.height)


def run(
        config: SimulationConfig,
        mesh: mt.Mesh | None = None,
        reporters: Iterable[Reporter] = (),
        verbose: bool = False,
        project_folder: str = ".",
) -> CompletedSimulation:
    """
    Run a complete simulation.

    Parameters
    ----------
    config : SimulationConfig
        Run configuration.
    mesh : mt.Mesh, optional
        Surface to weather. Loaded from `config.mesh_file` (relative to
        `project_folder`) when omitted.
    reporters : iterable of callables, optional
        Per-iteration statistics callbacks.
    verbose : bool
        Show a progress bar.
    project_folder : str
        Base folder for `config.mesh_file`.
    """
    if mesh is None:
        if not config.mesh_file:
            raise ConfigurationError("no mesh given and no mesh file configured")
        mesh = impt.import_obj(project_folder, config.mesh_file)
    return Weatherer(config, mesh, reporters=reporters, verbose=verbose).simulate()


def export_results(
        result: CompletedSimulation,
        project_folder: str,
        base_materials: dict[str, dict[str, str]] | None = None,
        materials_folder: str | None = None,
) -> dict[str, str]:
    """
    Write the outputs switched on in `config.export`; returns the written paths by kind.

    With texture effects configured, every affected mesh material gets a
    weathered diffuse map (`<mesh>_<material>_weathered.png`) built from its
    entry in `base_materials`, and the exported MTL points at it. Image
    files named in `base_materials` are relative to `materials_folder`
    (default: the project folder).
    """
    settings = result.config.export
    folder = os.path.join(os.path.abspath(project_folder), settings.output_folder)
    os.makedirs(folder, exist_ok=True)
    written: dict[str, str] = {}
    texture_paths: dict[str, str] = {}
    diffuse_maps: dict[str, str] = {}
    base_materials = base_materials or {}
    materials_folder = project_folder if materials_folder is None else materials_folder
    if settings.textures or settings.obj:
        texture_paths = ex.export_textures(result.textures, folder, prefix=result.mesh.name)
        written.update({f"texture_{k}": v for k, v in texture_paths.items()})
    if result.config.effects:
        images = fx.apply_texture_effects(result.textures, result.config.effects, result.mesh.material_names,
                                          base_materials, project_folder, materials_folder)
        for material, image in images.items():
            diffuse_maps[material] = ex.write_png(image, folder, f"{result.mesh.name}_{material}_weathered.png")
        written.update({f"material_{k}": v for k, v in diffuse_maps.items()})
    if settings.obj:
        written["obj"] = ex.export_obj(
            result.mesh, folder, f"{result.mesh.name}_weathered", texture_paths,
            base_materials=ex.rebase_material_maps(base_materials, materials_folder, folder),
            diffuse_maps=diffuse_maps,
        )
    if settings.history:
        written["history"] = ex.export_weathering_history(result.report, folder, "weathering_history.txt")
    if settings.plot_history:
        written["plot"] = ex.plot_weathering_history(result.report, folder, "weathering_history.png")
    if settings.hit_map:
        written["hit_map"] = ex.export_hit_map(result.snapshot, result.mesh, folder, "hit_map.obj",
                                               paths=result.paths)
    return written


def run_project(project_folder: str, inputs_file: str = "Inputs.txt", verbose: bool = True) -> CompletedSimulation:
    """Load Inputs.txt and the mesh from a project folder, run, and export the results."""
    config = impt.import_inputs(project_folder, inputs_file)
    result = run(config, verbose=verbose, project_folder=project_folder)
    # The material library and its images sit next to the OBJ file.
    mesh_folder = os.path.join(os.path.abspath(project_folder), os.path.dirname(config.mesh_file or ""))
    base_materials = {}
    if result.mesh.mtllib:
        if os.path.isfile(os.path.join(mesh_folder, result.mesh.mtllib)):
            base_materials = impt.import_mtl(mesh_folder, result.mesh.mtllib)
        else:
            logger.warning("material library %s not found; exporting default materials", result.mesh.mtllib)
    export_results(result, project_folder, base_materials, mesh_folder)
    logger.info("run finished\n%s", result.report.summary())
    return result


def main():
    """
    CLI entry point.

    Expects a single positional argument `project_name` pointing to the project folder
    containing Inputs.txt and the mesh it references.
    """
    parser = argparse.ArgumentParser(description="Run particle weathering simulation.")
    parser.add_argument(
        "project_name",
        type=str,
        help="Project folder name (e.g. 'test_project')."
    )
    parser.add_argument("--inputs", default="Inputs.txt", help="Inputs file inside the project folder.")
    parser.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ...).")
    parser.add_argument("--log-file", default=None, help="Optional log file.")
    parser.add_argument("--quiet", action="store_true", help="Hide the progress bar.")
    args = parser.parse_args()

    logt.setup_logging(args.log_level, args.log_file)
    run_project(args.project_name, args.inputs, verbose=not args.quiet)


if __name__ == "__main__":
    main()
