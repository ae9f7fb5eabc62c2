from dataclasses import dataclass, field

import numpy as np

from accumulator_tools import quanta_to_mass
from error_tools import Issue


def normalize(
        values: np.ndarray,
        vmin: float | None = None,
        vmax: float | None = None,
        nonnegative: bool = False,
) -> np.ndarray:
    """
    Map a channel linearly onto [0, 1].

    Parameters
    ----------
    values : np.ndarray
        Channel values; NaN entries (unknown texels) are kept as NaN.
    vmin, vmax : float, optional
        Range mapped to 0 and 1. Default: finite min / max of `values`.
    nonnegative : bool, default False
        If True, clip values to be >= 0 before normalising.

    Returns
    -------
    np.ndarray
        Normalised array of the same shape. A constant channel maps to 0
        (or to 1 when the constant is positive and `vmin` was not given).
    """
    v = np.asarray(values, dtype=float)
    finite = np.isfinite(v)
    if nonnegative:
        v = np.where(finite, np.clip(v, 0.0, np.inf), v)
    if not finite.any():
        return np.full_like(v, np.nan)
    lo = float(v[finite].min()) if vmin is None else float(vmin)
    hi = float(v[finite].max()) if vmax is None else float(vmax)
    if not hi > lo:
        fill = 1.0 if (vmin is None and hi > 0.0) else 0.0
        return np.where(finite, fill, np.nan)
    out = (v - lo) / (hi - lo)
    return np.where(finite, np.clip(out, 0.0, 1.0), np.nan)


@dataclass(frozen=True)
class IterationStatistics:
    """
    Summary of one completed iteration, handed to reporter callbacks.

    Masses are in mass units; `totals` are the accumulator net sums per
    material after the iteration was committed.
    """
    iteration: int
    particle_count: int
    moved_mass: float
    emitted: dict[str, float]
    totals: dict[str, float]
    terminations: dict[str, int]
    max_step_terminations: int
    mean_steps: float
    issues: int
    elapsed: float


@dataclass
class MassLedger:
    """
    Run-wide mass bookkeeping in integer quanta per material.

    The accumulator net sum always equals
    emitted - decayed - dislodged - lost - rule_decayed.
    """
    emitted: dict[str, int] = field(default_factory=dict)
    eroded: dict[str, int] = field(default_factory=dict)
    deposited: dict[str, int] = field(default_factory=dict)
    decayed: dict[str, int] = field(default_factory=dict)
    dislodged: dict[str, int] = field(default_factory=dict)
    lost: dict[str, int] = field(default_factory=dict)
    rule_decayed: dict[str, int] = field(default_factory=dict)

    _FIELDS = ("emitted", "eroded", "deposited", "decayed", "dislodged", "lost")

    @staticmethod
    def _merge(into: dict[str, int], other: dict[str, int]) -> None:
        for k, v in other.items():
            into[k] = into.get(k, 0) + v

    def add_outcome(self, outcome) -> None:
        for name in self._FIELDS:
            self._merge(getattr(self, name), getattr(outcome, name))

    def add_rule_decay(self, decayed: dict[str, int]) -> None:
        self._merge(self.rule_decayed, decayed)

    def expected_net_quanta(self) -> int:
        return (sum(self.emitted.values()) - sum(self.decayed.values()) - sum(self.dislodged.values())
                - sum(self.lost.values()) - sum(self.rule_decayed.values()))

    def as_mass(self) -> dict[str, dict[str, float]]:
        out = {}
        for name in self._FIELDS + ("rule_decayed",):
            out[name] = {k: quanta_to_mass(v) for k, v in sorted(getattr(self, name).items())}
        return out


@dataclass
class SimulationReport:
    """Statistics of a whole run plus every absorbed geometry or synthesis issue."""
    iterations: list[IterationStatistics] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)
    ledger: MassLedger = field(default_factory=MassLedger)
    stopped_early: bool = False

    @property
    def completed_iterations(self) -> int:
        return len(self.iterations)

    @property
    def max_step_terminations(self) -> int:
        return sum(s.max_step_terminations for s in self.iterations)

    def issues_of(self, kind: str) -> list[Issue]:
        return [i for i in self.issues if i.kind == kind]

    def history(self) -> dict[str, np.ndarray]:
        """Per-iteration columns for export and plotting."""
        materials = sorted({m for s in self.iterations for m in s.totals})
        cols = {
            "iteration": np.array([s.iteration for s in self.iterations], dtype=int),
            "particles": np.array([s.particle_count for s in self.iterations], dtype=int),
            "moved_mass": np.array([s.moved_mass for s in self.iterations], dtype=float),
            "max_step_terminations": np.array([s.max_step_terminations for s in self.iterations], dtype=int),
            "mean_steps": np.array([s.mean_steps for s in self.iterations], dtype=float),
        }
        for m in materials:
            cols[f"total_{m}"] = np.array([s.totals.get(m, 0.0) for s in self.iterations], dtype=float)
        return cols

    def summary(self) -> str:
        lines = [f"iterations completed: {self.completed_iterations}"
                 + (" (stopped early)" if self.stopped_early else "")]
        for name, per_mat in self.ledger.as_mass().items():
            if per_mat:
                lines.append(f"{name}: " + ", ".join(f"{k}={v:.6g}" for k, v in per_mat.items()))
        lines.append(f"max-step terminations: {self.max_step_terminations}")
        lines.append(f"issues: {len(self.issues)}")
        for issue in self.issues:
            lines.append(f"  [{issue.kind}] {issue.message}")
        return "\n".join(lines)
