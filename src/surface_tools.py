import logging
from dataclasses import dataclass

import numpy as np
from scipy.spatial import cKDTree

import constants as cst
import mesh_tools as mt
from error_tools import DegenerateGeometry, Issue, OutOfBoundsQuery

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class SurfacePoint:
    """
    A resolved location on the mesh.

    Attributes
    ----------
    triangle : int
        Owning triangle index.
    barycentric : np.ndarray
        Weights (w0, w1, w2) of the triangle corners, summing to 1.
    position : np.ndarray
        World position, shape (3,).
    normal : np.ndarray
        Interpolated unit normal, shape (3,).
    uv : np.ndarray
        Interpolated texture coordinate, shape (2,). NaN if the mesh has no UVs.
    """
    triangle: int
    barycentric: np.ndarray
    position: np.ndarray
    normal: np.ndarray
    uv: np.ndarray


@dataclass(frozen=True, eq=False)
class TriangleGeometry:
    index: int
    positions: np.ndarray
    normal: np.ndarray
    area: float
    uvs: np.ndarray
    material: str


class SurfaceIndex:
    """
    Spatial acceleration structure over the triangles of a Mesh.

    The index is built once and is read-only afterwards, so it can be shared
    by any number of simulation worker threads without locking.

    Triangles with (near) zero area are left out of the index. Each one is
    logged and recorded in `issues` as a `DegenerateGeometry` entry; only a
    mesh without a single usable triangle is rejected.

    Nearest-point queries use a cKDTree over triangle centroids to gather
    candidates and then an exact closest-point-on-triangle test. The
    candidate radius is the distance to the best triangle found so far plus
    the largest centroid-to-corner radius, so the answer is exact and not a
    centroid approximation.

    Parameters
    ----------
    mesh : mt.Mesh
        Mesh to index. It is referenced, not copied.
    tolerance : float, optional
        Largest accepted distance between a query position and the surface.
        Defaults to `constants.DEFAULT_QUERY_TOLERANCE` times the mesh
        bounding-box diagonal.
    """

    def __init__(self, mesh: mt.Mesh, tolerance: float | None = None):
        self.mesh = mesh
        self.issues: list[Issue] = []

        corners = mesh.triangle_positions()
        areas = mesh.triangle_areas()
        finite = np.all(np.isfinite(corners), axis=(1, 2))
        valid = finite & (areas > cst.DEGENERATE_AREA)
        for t in np.flatnonzero(~valid):
            err = DegenerateGeometry(f"triangle {int(t)} has zero area and was skipped", triangle=int(t))
            logger.warning("[SurfaceIndex] %s", err)
            self.issues.append(Issue.from_error(err))

        self._ids = np.flatnonzero(valid)
        if self._ids.size == 0:
            raise DegenerateGeometry("mesh has no triangle with non-zero area")

        self._valid = valid
        self._corners = corners
        self._areas = areas
        self._face_normals = mesh.face_normals()
        self._centroids = corners[self._ids].mean(axis=1)
        spread = np.linalg.norm(corners[self._ids] - self._centroids[:, None, :], axis=2)
        self._radius = float(spread.max())
        self._tree = cKDTree(self._centroids)

        diag = max(mesh.diagonal(), 1e-12)
        self.scale = diag
        self.tolerance = float(tolerance) if tolerance is not None else cst.DEFAULT_QUERY_TOLERANCE * diag
        self._tie_eps = 1e-12 * diag

        self._neighbors, self._open_edges = self._build_adjacency()
        self._cumulative_area = np.cumsum(np.where(valid, areas, 0.0))

        logger.debug("[SurfaceIndex] indexed %d of %d triangles", self._ids.size, mesh.triangle_count)

    def _build_adjacency(self) -> tuple[list[tuple[int, ...]], np.ndarray]:
        """
        Edge adjacency on the welded surface.

        Returns the sorted neighbour tuple of every triangle and a (T, 3) mask
        marking open edges; edge k is the edge opposite corner k.
        """
        weld = self.mesh.welded_vertex_ids()
        tri_w = weld[self.mesh.triangles]
        edge_owner: dict[tuple[int, int], list[int]] = {}
        for t in self._ids:
            for k in range(3):
                a, b = tri_w[t, (k + 1) % 3], tri_w[t, (k + 2) % 3]
                key = (int(min(a, b)), int(max(a, b)))
                edge_owner.setdefault(key, []).append(int(t))

        neighbors: list[set[int]] = [set() for _ in range(self.mesh.triangle_count)]
        open_edges = np.zeros((self.mesh.triangle_count, 3), dtype=bool)
        for t in self._ids:
            for k in range(3):
                a, b = tri_w[t, (k + 1) % 3], tri_w[t, (k + 2) % 3]
                owners = edge_owner[(int(min(a, b)), int(max(a, b)))]
                others = [o for o in owners if o != t]
                if others:
                    neighbors[t].update(others)
                else:
                    open_edges[t, k] = True
        return [tuple(sorted(n)) for n in neighbors], open_edges

    @property
    def triangle_ids(self) -> np.ndarray:
        """Indices of the triangles kept in the index."""
        return self._ids

    def is_indexed(self, triangle: int) -> bool:
        return 0 <= triangle < self._valid.size and bool(self._valid[triangle])

    def triangle_at(self, index: int) -> TriangleGeometry:
        """
        Geometry of one triangle.

        Raises
        ------
        IndexError
            If the index is outside the mesh.
        DegenerateGeometry
            If the triangle was skipped when the index was built.
        """
        if not 0 <= index < self.mesh.triangle_count:
            raise IndexError(f"triangle {index} out of range (mesh has {self.mesh.triangle_count})")
        if not self._valid[index]:
            raise DegenerateGeometry(f"triangle {index} is degenerate", triangle=index)
        return TriangleGeometry(
            index=int(index),
            positions=self._corners[index],
            normal=self._face_normals[index],
            area=float(self._areas[index]),
            uvs=self.mesh.uvs[self.mesh.triangles[index]],
            material=self.mesh.material_of(index),
        )

    def surface_point_at(self, triangle: int, barycentric: np.ndarray) -> SurfacePoint:
        """Build a SurfacePoint from a triangle index and barycentric weights."""
        bary = np.asarray(barycentric, dtype=float).reshape(3)
        corners = self.mesh.triangles[triangle]
        position = bary @ self._corners[triangle]
        normal = mt.normalized(bary @ self.mesh.normals[corners])
        if normal is None:
            normal = self._face_normals[triangle]
        uv = bary @ self.mesh.uvs[corners]
        return SurfacePoint(int(triangle), bary, position, normal, uv)

    def _closest_on(self, triangle: int, p: np.ndarray) -> tuple[float, np.ndarray]:
        a, b, c = self._corners[triangle]
        q, bary = mt.closest_point_on_triangle(p, a, b, c)
        return float(np.linalg.norm(p - q)), bary

    def _best_of(self, candidates, p: np.ndarray) -> tuple[float, int, np.ndarray]:
        """
        Closest candidate triangle; distances within the tie tolerance go to
        the lower triangle index so edge landings resolve reproducibly.
        """
        results = []
        for t in candidates:
            d, bary = self._closest_on(int(t), p)
            results.append((d, int(t), bary))
        d_min = min(r[0] for r in results)
        tied = [r for r in results if r[0] <= d_min + self._tie_eps]
        return min(tied, key=lambda r: r[1])

    def nearest_surface_point(self, position: np.ndarray, tolerance: float | None = None) -> SurfacePoint:
        """
        Project a position onto the closest point of the surface.

        Parameters
        ----------
        position : np.ndarray
            Query position, shape (3,).
        tolerance : float, optional
            Overrides the index tolerance for this query. Use `np.inf` to
            accept any distance.

        Returns
        -------
        SurfacePoint
            Closest surface point.

        Raises
        ------
        OutOfBoundsQuery
            If the position is not finite or farther than the tolerance from
            every triangle.
        """
        p = np.asarray(position, dtype=float).reshape(3)
        if not np.all(np.isfinite(p)):
            raise OutOfBoundsQuery(f"query position {p} is not finite")
        tol = self.tolerance if tolerance is None else float(tolerance)

        _, i0 = self._tree.query(p)
        d0, _ = self._closest_on(int(self._ids[i0]), p)
        nearby = self._tree.query_ball_point(p, d0 + self._radius + self._tie_eps)
        d, t, bary = self._best_of(sorted(self._ids[i] for i in nearby), p)
        if d > tol:
            raise OutOfBoundsQuery(f"position {p} is {d:.6g} from the surface (tolerance {tol:.6g})", distance=d)
        return self.surface_point_at(t, bary)

    def neighbors(self, point: SurfacePoint) -> list[SurfacePoint]:
        """
        Candidate surface points on the triangles adjacent to `point`.

        One SurfacePoint per triangle sharing an edge with the point's
        triangle (on the welded surface, so UV seams do not cut adjacency),
        located at the closest point of that triangle to `point.position`,
        ordered by triangle index.
        """
        out = []
        for t in self._neighbors[point.triangle]:
            _, bary = self._closest_on(t, point.position)
            out.append(self.surface_point_at(t, bary))
        return out

    def resolve_step(self, point: SurfacePoint, target: np.ndarray) -> SurfacePoint:
        """
        Re-resolve a particle that moved from `point` towards `target`.

        The point's own triangle and its neighbours are tried first; a target
        on that patch is returned directly. Otherwise the global query is
        used with a tolerance of the step distance, which always succeeds
        because the starting point itself lies within that distance.
        """
        p = np.asarray(target, dtype=float).reshape(3)
        if not np.all(np.isfinite(p)):
            raise OutOfBoundsQuery(f"step target {p} is not finite")
        local = (point.triangle,) + self._neighbors[point.triangle]
        d, t, bary = self._best_of(sorted(local), p)
        if d <= self._tie_eps:
            return self.surface_point_at(t, bary)
        step = float(np.linalg.norm(p - point.position))
        return self.nearest_surface_point(p, tolerance=step + self.tolerance)

    def on_open_edge(self, point: SurfacePoint) -> bool:
        """True when the point lies on an edge that no other triangle shares."""
        bary = point.barycentric
        return bool(np.any((bary <= cst.BARY_EPSILON) & self._open_edges[point.triangle]))

    def is_boundary_exit(self, resolved: SurfacePoint, target: np.ndarray) -> bool:
        """
        True when a step towards `target` left the mesh through an open edge.

        The resolved point must sit on an open edge and the target must lie
        beyond it within the tangent plane.
        """
        if not self.on_open_edge(resolved):
            return False
        residual = mt.project_onto_plane(np.asarray(target, dtype=float) - resolved.position,
                                         self._face_normals[resolved.triangle])
        return float(np.linalg.norm(residual)) > 1e-9 * self.scale

    def sample_uniform(self, rng: np.random.Generator, triangle_ids=None) -> SurfacePoint:
        """
        Area-weighted uniform sample on the surface.

        Parameters
        ----------
        rng : np.random.Generator
            Source of randomness.
        triangle_ids : iterable of int, optional
            Restrict sampling to these triangles (degenerate ones are ignored).
        """
        if triangle_ids is None:
            cumulative = self._cumulative_area
            ids = None
        else:
            ids = np.array(sorted(int(t) for t in triangle_ids if self.is_indexed(int(t))), dtype=np.int64)
            if ids.size == 0:
                raise DegenerateGeometry("no usable triangle to sample from")
            cumulative = np.cumsum(self._areas[ids])
        r = rng.random() * cumulative[-1]
        k = int(np.searchsorted(cumulative, r, side="right"))
        k = min(k, cumulative.size - 1)
        t = k if ids is None else int(ids[k])
        if not self._valid[t]:
            t = int(self._ids[min(int(np.searchsorted(self._ids, t)), self._ids.size - 1)])
        r1, r2 = rng.random(), rng.random()
        s = np.sqrt(r1)
        bary = np.array([1.0 - s, s * (1.0 - r2), s * r2])
        return self.surface_point_at(t, bary)
