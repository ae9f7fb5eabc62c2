import numpy as np
import constants as cst


def perpendicular_basis(n: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Build two orthonormal vectors perpendicular to a unit direction n.

    Parameters
    ----------
    n : np.ndarray
        Unit direction vector.

    Returns
    -------
    (e1, e2) : tuple[np.ndarray, np.ndarray]
        Orthonormal basis spanning the plane normal to n.
    """
    # Choose a vector not too aligned with n, then Gram-Schmidt it.
    a = np.array([1.0, 0.0, 0.0]) if abs(n[0]) < 0.9 else np.array([0.0, 1.0, 0.0])
    e1 = a - np.dot(a, n) * n
    e1_norm = np.linalg.norm(e1)
    if e1_norm == 0.0:
        e1 = np.array([0.0, 0.0, 1.0]) - n[2] * n
        e1_norm = np.linalg.norm(e1)
    e1 = e1 / e1_norm
    e2 = np.cross(n, e1)
    e2 /= np.linalg.norm(e2)
    return e1, e2


def project_onto_plane(v: np.ndarray, normal: np.ndarray) -> np.ndarray:
    """Remove the component of v along the unit vector `normal`."""
    return v - np.dot(v, normal) * normal


def normalized(v: np.ndarray, eps: float = 1e-15) -> np.ndarray | None:
    """Unit vector along v, or None when |v| <= eps."""
    norm = float(np.linalg.norm(v))
    if not np.isfinite(norm) or norm <= eps:
        return None
    return v / norm


def closest_point_on_triangle(
        p: np.ndarray,
        a: np.ndarray,
        b: np.ndarray,
        c: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Closest point to p on triangle (a, b, c) and its barycentric weights.

    Walks the Voronoi regions of the triangle (vertices, edges, face) so the
    returned point always lies on the triangle, also for points far outside it.

    Parameters
    ----------
    p : np.ndarray
        Query point, shape (3,).
    a, b, c : np.ndarray
        Triangle corners, shape (3,).

    Returns
    -------
    point : np.ndarray
        Closest point on the triangle.
    bary : np.ndarray
        Weights (wa, wb, wc) with wa + wb + wc = 1, all >= 0.
    """
    ab = b - a
    ac = c - a
    ap = p - a
    d1 = np.dot(ab, ap)
    d2 = np.dot(ac, ap)
    if d1 <= 0.0 and d2 <= 0.0:
        return a.copy(), np.array([1.0, 0.0, 0.0])

    bp = p - b
    d3 = np.dot(ab, bp)
    d4 = np.dot(ac, bp)
    if d3 >= 0.0 and d4 <= d3:
        return b.copy(), np.array([0.0, 1.0, 0.0])

    vc = d1 * d4 - d3 * d2
    if vc <= 0.0 and d1 >= 0.0 and d3 <= 0.0:
        v = d1 / (d1 - d3)
        return a + v * ab, np.array([1.0 - v, v, 0.0])

    cp = p - c
    d5 = np.dot(ab, cp)
    d6 = np.dot(ac, cp)
    if d6 >= 0.0 and d5 <= d6:
        return c.copy(), np.array([0.0, 0.0, 1.0])

    vb = d5 * d2 - d1 * d6
    if vb <= 0.0 and d2 >= 0.0 and d6 <= 0.0:
        w = d2 / (d2 - d6)
        return a + w * ac, np.array([1.0 - w, 0.0, w])

    va = d3 * d6 - d5 * d4
    if va <= 0.0 and (d4 - d3) >= 0.0 and (d5 - d6) >= 0.0:
        w = (d4 - d3) / ((d4 - d3) + (d5 - d6))
        return b + w * (c - b), np.array([0.0, 1.0 - w, w])

    denom = 1.0 / (va + vb + vc)
    v = vb * denom
    w = vc * denom
    return a + ab * v + ac * w, np.array([1.0 - v - w, v, w])


def barycentric_2d(
        p: np.ndarray,
        a: np.ndarray,
        b: np.ndarray,
        c: np.ndarray,
) -> np.ndarray | None:
    """
    Barycentric weights of 2D point(s) p with respect to triangle (a, b, c).

    p may be a single point (2,) or an array of points (M, 2). Returns None
    when the triangle has zero signed area.
    """
    p = np.asarray(p, dtype=float)
    v0 = b - a
    v1 = c - a
    den = v0[0] * v1[1] - v1[0] * v0[1]
    if abs(den) < 1e-300:
        return None
    v2 = p - a
    wb = (v2[..., 0] * v1[1] - v1[0] * v2[..., 1]) / den
    wc = (v0[0] * v2[..., 1] - v2[..., 0] * v0[1]) / den
    return np.stack([1.0 - wb - wc, wb, wc], axis=-1)


class Mesh:
    """
    Immutable triangle mesh with per-vertex normals and UVs.

    Vertices are split wherever UVs or normals differ (as OBJ loaders do), so
    a UV seam shows up as two vertices sharing one position. Triangles whose
    edge corners agree in position *and* UV are connected in UV space (see
    `uv_welded_vertex_ids`), while triangles that only share vertex
    *positions* are connected on the 3D surface only.

    Attributes
    ----------
    positions : np.ndarray
        (N, 3) vertex positions.
    normals : np.ndarray
        (N, 3) unit vertex normals (computed from faces when not supplied).
    uvs : np.ndarray
        (N, 2) texture coordinates; NaN where a vertex has no UV.
    triangles : np.ndarray
        (T, 3) vertex indices.
    triangle_materials : np.ndarray
        (T,) index into `material_names` for every triangle.
    material_names : list[str]
        Names of the materials referenced by the triangles.
    name : str
        Object name used when exporting.
    """

    def __init__(
            self,
            positions: np.ndarray,
            triangles: np.ndarray,
            normals: np.ndarray | None = None,
            uvs: np.ndarray | None = None,
            triangle_materials: np.ndarray | None = None,
            material_names: list[str] | None = None,
            name: str = "mesh",
    ):
        positions = np.asarray(positions, dtype=float)
        triangles = np.asarray(triangles, dtype=np.int64)
        if positions.ndim != 2 or positions.shape[1] != 3:
            raise ValueError(f"positions must have shape (N, 3), got {positions.shape}")
        if triangles.ndim != 2 or triangles.shape[1] != 3:
            raise ValueError(f"triangles must have shape (T, 3), got {triangles.shape}")
        if triangles.size and (triangles.min() < 0 or triangles.max() >= positions.shape[0]):
            raise ValueError("triangle indices out of range.")
        n_vtx = positions.shape[0]

        if uvs is None:
            uvs = np.full((n_vtx, 2), np.nan)
        uvs = np.asarray(uvs, dtype=float)
        if uvs.shape != (n_vtx, 2):
            raise ValueError(f"uvs must have shape ({n_vtx}, 2), got {uvs.shape}")

        if triangle_materials is None:
            triangle_materials = np.zeros(triangles.shape[0], dtype=np.int64)
        triangle_materials = np.asarray(triangle_materials, dtype=np.int64)
        if triangle_materials.shape != (triangles.shape[0],):
            raise ValueError("triangle_materials must have one entry per triangle.")
        if material_names is None:
            material_names = ["default"]
        if triangle_materials.size and triangle_materials.max() >= len(material_names):
            raise ValueError("triangle_materials references an unknown material.")

        self.positions = positions
        self.triangles = triangles
        self.uvs = uvs
        self.triangle_materials = triangle_materials
        self.material_names = list(material_names)
        self.name = name
        # Material library referenced by the source file, if any.
        self.mtllib: str | None = None
        self.normals = self._vertex_normals() if normals is None else self._unit_rows(normals)

        for arr in (self.positions, self.triangles, self.uvs, self.normals, self.triangle_materials):
            arr.setflags(write=False)

    @staticmethod
    def _unit_rows(normals: np.ndarray) -> np.ndarray:
        n = np.array(normals, dtype=float)
        norm = np.linalg.norm(n, axis=1, keepdims=True)
        return np.where(norm > 0, n / np.where(norm > 0, norm, 1.0), 0.0)

    def _vertex_normals(self) -> np.ndarray:
        # Area weighted average of the face normals around each vertex.
        acc = np.zeros_like(self.positions)
        face_n = self.face_normals(normalize=False)
        for k in range(3):
            np.add.at(acc, self.triangles[:, k], face_n)
        return self._unit_rows(acc)

    @property
    def vertex_count(self) -> int:
        return int(self.positions.shape[0])

    @property
    def triangle_count(self) -> int:
        return int(self.triangles.shape[0])

    def triangle_positions(self) -> np.ndarray:
        """(T, 3, 3) corner positions of every triangle."""
        return self.positions[self.triangles]

    def triangle_uvs(self) -> np.ndarray:
        """(T, 3, 2) corner UVs of every triangle."""
        return self.uvs[self.triangles]

    def face_normals(self, normalize: bool = True) -> np.ndarray:
        tri = self.triangle_positions()
        n = np.cross(tri[:, 1] - tri[:, 0], tri[:, 2] - tri[:, 0])
        return self._unit_rows(n) if normalize else n

    def triangle_areas(self) -> np.ndarray:
        return 0.5 * np.linalg.norm(self.face_normals(normalize=False), axis=1)

    def uv_areas(self) -> np.ndarray:
        """Signed UV-space area of every triangle (NaN when a corner lacks UVs)."""
        t = self.triangle_uvs()
        e1 = t[:, 1] - t[:, 0]
        e2 = t[:, 2] - t[:, 0]
        return 0.5 * (e1[:, 0] * e2[:, 1] - e1[:, 1] * e2[:, 0])

    def bounds(self) -> tuple[np.ndarray, np.ndarray]:
        return self.positions.min(axis=0), self.positions.max(axis=0)

    def diagonal(self) -> float:
        lo, hi = self.bounds()
        return float(np.linalg.norm(hi - lo))

    def material_of(self, triangle: int) -> str:
        return self.material_names[int(self.triangle_materials[triangle])]

    def welded_vertex_ids(self) -> np.ndarray:
        """Map each vertex to a representative id shared by all vertices at the same position."""
        keys = np.round(self.positions, cst.WELD_DECIMALS)
        _, inverse = np.unique(keys, axis=0, return_inverse=True)
        return np.asarray(inverse).reshape(-1)

    def uv_welded_vertex_ids(self) -> np.ndarray:
        """
        Like `welded_vertex_ids`, but vertices must also share their UV.

        Vertices split only because their normals differ (hard edges, flat
        shading) get one id; vertices split along a UV seam keep two.
        """
        uvs = np.nan_to_num(self.uvs, nan=np.inf)
        keys = np.column_stack([np.round(self.positions, cst.WELD_DECIMALS), np.round(uvs, cst.WELD_DECIMALS)])
        _, inverse = np.unique(keys, axis=0, return_inverse=True)
        return np.asarray(inverse).reshape(-1)


def make_plane(
        nx: int = 1,
        ny: int = 1,
        size: float = 1.0,
        normal_axis: int = 2,
        uv_islands: int = 1,
        material_name: str = "default",
) -> Mesh:
    """
    Regular grid of quads in a coordinate plane, each split into two triangles.

    Parameters
    ----------
    nx, ny : int
        Number of quads along the two in-plane axes.
    size : float
        Edge length of the square plane.
    normal_axis : int
        Axis the plane faces (0 = x, 1 = y, 2 = z).
    uv_islands : int
        1 maps the whole plane to the unit UV square. 2 cuts the plane in half
        along its first axis and lays the halves out as two disjoint UV islands
        (left half to u in [0, 0.45], right half to u in [0.55, 1.0]) with
        duplicated vertices along the cut, i.e. a UV seam.
    material_name : str
        Material assigned to all triangles.
    """
    if nx < 1 or ny < 1:
        raise ValueError("nx and ny must be >= 1.")
    if uv_islands not in (1, 2):
        raise ValueError("uv_islands must be 1 or 2.")
    if uv_islands == 2 and nx % 2:
        raise ValueError("uv_islands=2 needs an even nx.")

    axes = [a for a in range(3) if a != normal_axis]
    positions, uvs, triangles = [], [], []

    def _add_block(i0: int, i1: int, u0: float, u1: float) -> None:
        base = len(positions)
        cols = i1 - i0 + 1
        for j in range(ny + 1):
            for i in range(i0, i1 + 1):
                p = np.zeros(3)
                p[axes[0]] = size * i / nx
                p[axes[1]] = size * j / ny
                positions.append(p)
                s = (i - i0) / (i1 - i0)
                uvs.append((u0 + (u1 - u0) * s, j / ny))
        for j in range(ny):
            for i in range(i1 - i0):
                v00 = base + j * cols + i
                v10 = v00 + 1
                v01 = v00 + cols
                v11 = v01 + 1
                triangles.append((v00, v10, v11))
                triangles.append((v00, v11, v01))

    if uv_islands == 1:
        _add_block(0, nx, 0.0, 1.0)
    else:
        _add_block(0, nx // 2, 0.0, 0.45)
        _add_block(nx // 2, nx, 0.55, 1.0)

    tri = np.asarray(triangles, dtype=np.int64)
    pos = np.asarray(positions, dtype=float)
    # Orient faces towards +normal_axis.
    n = np.cross(pos[tri[:, 1]] - pos[tri[:, 0]], pos[tri[:, 2]] - pos[tri[:, 0]])
    flip = n[:, normal_axis] < 0
    tri[flip] = tri[flip][:, [0, 2, 1]]
    return Mesh(pos, tri, uvs=np.asarray(uvs, dtype=float), material_names=[material_name], name="plane")
