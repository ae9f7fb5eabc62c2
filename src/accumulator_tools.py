"""
Per-surface-location store of accumulated material deltas.

Masses are kept as integer quanta (`constants.MASS_QUANTA_PER_UNIT` per unit
of mass). Integer sums are exact, so the final state does not depend on the
order in which concurrent writers land their deltas.

Locations are (triangle, cell) pairs. Every triangle is split into n * n
equal-area sub-triangles on its barycentric grid:

    lower cell (i, j):  corners (i, j), (i+1, j), (i, j+1)          i + j <= n - 1
    upper cell (i, j):  corners (i+1, j), (i, j+1), (i+1, j+1)      i + j <= n - 2

where (i, j) count steps of 1/n along the barycentric weights of corners 1
and 2. Lower cells are numbered first, then upper cells, row by row.
"""

import hashlib
import threading
from dataclasses import dataclass
from functools import lru_cache

import numpy as np

import constants as cst


def mass_to_quanta(mass: float) -> int:
    return int(round(float(mass) * cst.MASS_QUANTA_PER_UNIT))


def quanta_to_mass(quanta: int) -> float:
    return quanta / cst.MASS_QUANTA_PER_UNIT


@dataclass(frozen=True, order=True)
class SurfaceLocation:
    triangle: int
    cell: int


@lru_cache(maxsize=32)
def _cell_table(n: int) -> np.ndarray:
    """(n*n, 3) rows of (i, j, upper) for every cell index."""
    rows = []
    for i in range(n):
        for j in range(n - i):
            rows.append((i, j, 0))
    for i in range(n - 1):
        for j in range(n - 1 - i):
            rows.append((i, j, 1))
    return np.asarray(rows, dtype=np.int64)


def cell_indices(barycentric: np.ndarray, n: int) -> np.ndarray:
    """Cells of an n-subdivided triangle containing each row of a (K, 3) barycentric array."""
    b = np.asarray(barycentric, dtype=float).reshape(-1, 3)
    s = np.clip(b[:, 1], 0.0, 1.0) * n
    t = np.clip(b[:, 2], 0.0, 1.0) * n
    i = np.minimum(np.floor(s).astype(np.int64), n - 1)
    j = np.minimum(np.floor(t).astype(np.int64), n - 1)
    # On (or numerically past) the edge opposite corner 0.
    j = np.where(i + j > n - 1, n - 1 - i, j)
    upper = ((s - i) + (t - j) > 1.0) & (i + j <= n - 2)
    lower_idx = i * n - i * (i - 1) // 2 + j
    upper_idx = n * (n + 1) // 2 + i * (n - 1) - i * (i - 1) // 2 + j
    return np.where(upper, upper_idx, lower_idx)


def cell_index(barycentric: np.ndarray, n: int) -> int:
    """Cell of an n-subdivided triangle that contains the barycentric point."""
    return int(cell_indices(barycentric, n)[0])


def cell_center(cell: int, n: int) -> np.ndarray:
    """Barycentric centroid of a cell."""
    i, j, upper = _cell_table(n)[cell]
    off = 2.0 / 3.0 if upper else 1.0 / 3.0
    b1 = (i + off) / n
    b2 = (j + off) / n
    return np.array([1.0 - b1 - b2, b1, b2])


def cell_centers(n: int) -> np.ndarray:
    """(n*n, 3) barycentric centroids of all cells, in cell order."""
    table = _cell_table(n)
    off = np.where(table[:, 2] == 1, 2.0 / 3.0, 1.0 / 3.0)
    b1 = (table[:, 0] + off) / n
    b2 = (table[:, 1] + off) / n
    return np.column_stack([1.0 - b1 - b2, b1, b2])


def location_for(point, n: int) -> SurfaceLocation:
    """SurfaceLocation of a SurfacePoint on an n-subdivided triangle grid."""
    return SurfaceLocation(int(point.triangle), cell_index(point.barycentric, n))


@dataclass(frozen=True)
class AccumulatorEntry:
    """
    Accumulated state of one surface location.

    Attributes
    ----------
    location : SurfaceLocation
    quanta : tuple[int, ...]
        Net signed delta per material, in quanta, ordered like the
        accumulator's materials.
    samples : int
        Number of non-zero writes that touched this location.
    """
    location: SurfaceLocation
    quanta: tuple[int, ...]
    samples: int

    def delta(self, material_index: int) -> float:
        return quanta_to_mass(self.quanta[material_index])


class _Shard:
    __slots__ = ("lock", "pending")

    def __init__(self):
        self.lock = threading.Lock()
        # location -> [quanta per material..., samples]
        self.pending: dict[SurfaceLocation, list[int]] = {}


class EffectAccumulator:
    """
    Concurrent, commutative store of per-location material deltas.

    Writers call `add` / `add_quanta` from any thread. Locations are
    partitioned over `shards` locks by triangle id, so writers only contend
    when they touch triangles of the same shard. Writes go to a pending
    layer; `commit()` folds it into the committed state at an iteration
    boundary, and readers (`committed_quanta`) only ever see committed
    state. Both layers hold integers, so no delta is lost or reordered.

    Writes with an unknown material or a location outside the mesh are
    ignored.

    Parameters
    ----------
    materials : sequence of str
        Tracked material kinds.
    triangle_count : int
        Number of triangles of the mesh.
    subdivisions : int
        Cells per triangle edge (each triangle has subdivisions**2 cells).
    shards : int
        Number of lock partitions.
    substrate : dict[str, float], optional
        Initial surface amount per material that erosion can draw from, on
        top of the accumulated delta.
    """

    def __init__(
            self,
            materials,
            triangle_count: int,
            subdivisions: int = cst.DEFAULT_CELL_SUBDIVISIONS,
            shards: int = cst.DEFAULT_ACCUMULATOR_SHARDS,
            substrate: dict[str, float] | None = None,
    ):
        self.materials = tuple(materials)
        if not self.materials:
            raise ValueError("at least one material is required.")
        if subdivisions < 1:
            raise ValueError("subdivisions must be >= 1.")
        self._material_index = {m: k for k, m in enumerate(self.materials)}
        self.triangle_count = int(triangle_count)
        self.subdivisions = int(subdivisions)
        self.cell_count = self.subdivisions ** 2
        self._shards = [_Shard() for _ in range(max(1, int(shards)))]
        self._committed: dict[SurfaceLocation, list[int]] = {}
        substrate = substrate or {}
        self._substrate = tuple(mass_to_quanta(substrate.get(m, 0.0)) for m in self.materials)

    def material_index(self, material: str) -> int | None:
        return self._material_index.get(material)

    def is_valid_location(self, location: SurfaceLocation) -> bool:
        return 0 <= location.triangle < self.triangle_count and 0 <= location.cell < self.cell_count

    def add(self, location: SurfaceLocation, material: str, delta: float) -> None:
        """Add a signed mass delta (float) for one material at one location."""
        self.add_quanta(location, material, mass_to_quanta(delta))

    def add_quanta(self, location: SurfaceLocation, material: str, quanta: int) -> None:
        """Add a signed delta in integer quanta."""
        m = self._material_index.get(material)
        if m is None or quanta == 0 or not self.is_valid_location(location):
            return
        shard = self._shards[location.triangle % len(self._shards)]
        with shard.lock:
            row = shard.pending.get(location)
            if row is None:
                row = [0] * (len(self.materials) + 1)
                shard.pending[location] = row
            row[m] += int(quanta)
            row[-1] += 1

    def commit(self) -> int:
        """
        Fold all pending writes into the committed state.

        Must only be called when no writer is active (iteration boundary).

        Returns
        -------
        int
            Number of locations that received pending writes.
        """
        touched = 0
        for shard in self._shards:
            with shard.lock:
                for location, row in shard.pending.items():
                    cur = self._committed.get(location)
                    if cur is None:
                        self._committed[location] = list(row)
                    else:
                        for k, v in enumerate(row):
                            cur[k] += v
                    touched += 1
                shard.pending.clear()
        return touched

    def pending_locations(self) -> int:
        return sum(len(s.pending) for s in self._shards)

    def committed_quanta(self, location: SurfaceLocation, material: str) -> int:
        """Committed net delta of one material at one location (0 if untouched)."""
        m = self._material_index.get(material)
        if m is None:
            return 0
        row = self._committed.get(location)
        return 0 if row is None else row[m]

    def available_quanta(self, location: SurfaceLocation, material: str) -> int:
        """Surface amount erosion can draw from: substrate plus committed delta, floored at 0."""
        m = self._material_index.get(material)
        if m is None:
            return 0
        return max(0, self._substrate[m] + self.committed_quanta(location, material))

    def committed_locations(self) -> list[SurfaceLocation]:
        return sorted(self._committed)

    def committed_totals(self) -> dict[str, int]:
        """Net committed quanta per material."""
        totals = [0] * len(self.materials)
        for row in self._committed.values():
            for k in range(len(totals)):
                totals[k] += row[k]
        return dict(zip(self.materials, totals))

    def snapshot(self) -> "AccumulatorSnapshot":
        """Immutable view of the committed state."""
        entries = tuple(
            AccumulatorEntry(loc, tuple(row[:-1]), row[-1])
            for loc, row in sorted(self._committed.items())
        )
        return AccumulatorSnapshot(self.materials, self.subdivisions, entries)


class ErosionBudget:
    """
    Erosion requests of one iteration, granted against committed availability.

    Particles of an iteration all read the same committed state, so their
    requests on one cell can add up to more than the cell holds. Every
    request is registered first; when the total exceeds the available
    amount each request is scaled down by ``available / total`` (floored),
    so the grants on a cell never exceed what it holds and do not depend on
    the order of the requests.
    """

    def __init__(self, accumulator: EffectAccumulator):
        self._acc = accumulator
        self._lock = threading.Lock()
        self._claimed: dict[tuple[SurfaceLocation, str], int] = {}

    def claim(self, location: SurfaceLocation, material: str, quanta: int) -> None:
        if quanta <= 0:
            return
        key = (location, material)
        with self._lock:
            self._claimed[key] = self._claimed.get(key, 0) + int(quanta)

    def claimed(self, location: SurfaceLocation, material: str) -> int:
        return self._claimed.get((location, material), 0)

    def granted(self, location: SurfaceLocation, material: str, quanta: int) -> int:
        """Part of one registered request that may actually be eroded."""
        total = self.claimed(location, material)
        available = self._acc.available_quanta(location, material)
        if total <= available:
            return int(quanta)
        return int(quanta) * available // total

    def contended(self) -> int:
        """Number of (location, material) pairs whose requests were scaled down."""
        return sum(1 for (loc, m), total in self._claimed.items() if total > self._acc.available_quanta(loc, m))


class AccumulatorSnapshot:
    """
    Read-only view of accumulated entries, sorted by location.

    This is what the texture synthesizer consumes; it can be baked any number
    of times at any resolution.
    """

    def __init__(self, materials: tuple[str, ...], subdivisions: int, entries: tuple[AccumulatorEntry, ...]):
        self.materials = tuple(materials)
        self.subdivisions = int(subdivisions)
        self.entries = tuple(entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def material_index(self, material: str) -> int:
        try:
            return self.materials.index(material)
        except ValueError:
            raise KeyError(f"material {material!r} is not tracked") from None

    def total_quanta(self, material: str) -> int:
        m = self.material_index(material)
        return sum(e.quanta[m] for e in self.entries)

    def total(self, material: str) -> float:
        return quanta_to_mass(self.total_quanta(material))

    def net_quanta(self) -> int:
        """Sum of all deltas of all materials."""
        return sum(sum(e.quanta) for e in self.entries)

    def value_map(self, material: str) -> dict[SurfaceLocation, float]:
        m = self.material_index(material)
        return {e.location: e.delta(m) for e in self.entries if e.quanta[m] != 0}

    def as_arrays(self) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """
        Returns
        -------
        triangles : np.ndarray
            (E,) triangle index of every entry.
        cells : np.ndarray
            (E,) cell index of every entry.
        values : np.ndarray
            (E, M) net delta per material, as mass.
        samples : np.ndarray
            (E,) write counts.
        """
        n_e, n_m = len(self.entries), len(self.materials)
        triangles = np.fromiter((e.location.triangle for e in self.entries), dtype=np.int64, count=n_e)
        cells = np.fromiter((e.location.cell for e in self.entries), dtype=np.int64, count=n_e)
        samples = np.fromiter((e.samples for e in self.entries), dtype=np.int64, count=n_e)
        values = np.array([e.quanta for e in self.entries], dtype=float).reshape(n_e, n_m)
        return triangles, cells, values / cst.MASS_QUANTA_PER_UNIT, samples

    def digest(self) -> str:
        """SHA-256 of the canonical serialisation; equal digests mean bit-identical snapshots."""
        h = hashlib.sha256()
        h.update(("|".join(self.materials) + f"#{self.subdivisions}\n").encode())
        for e in self.entries:
            h.update(f"{e.location.triangle},{e.location.cell}:{','.join(map(str, e.quanta))}:{e.samples}\n".encode())
        return h.hexdigest()
