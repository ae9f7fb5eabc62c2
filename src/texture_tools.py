"""
Baking accumulated surface state into texel grids.

The synthesizer works from an AccumulatorSnapshot and the mesh only, so one
snapshot can be baked at any resolution without running the simulation
again. Every texel is owned by at most one triangle (and therefore one UV
island): contributions from other islands never reach it, which keeps
islands that touch in 3D but are disjoint in UV from sharing values.
"""

import logging
from dataclasses import dataclass

import numpy as np
from scipy import ndimage, sparse
from scipy.sparse.csgraph import connected_components

import constants as cst
import mesh_tools as mt
from accumulator_tools import AccumulatorSnapshot, cell_centers, cell_indices
from config_tools import TextureSettings
from error_tools import Issue, UnmappableIsland
from statistics_tools import normalize

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class TextureBuffer:
    """
    Dense texel grid of one channel.

    Row 0 is the top of the image (v = 1).

    Attributes
    ----------
    channel : str
        Material kind or effect name.
    values : np.ndarray
        (H, W) float texel values; NaN on unknown texels.
    coverage : np.ndarray
        (H, W) bool, texels whose centre lies on a mapped triangle.
    filled : np.ndarray
        (H, W) bool, texels given a value by gap fill.
    unknown : np.ndarray
        (H, W) bool, texels touched by an unmappable triangle.
    island : np.ndarray
        (H, W) int UV island label of each texel, -1 where none.
    """
    channel: str
    values: np.ndarray
    coverage: np.ndarray
    filled: np.ndarray
    unknown: np.ndarray
    island: np.ndarray

    def __post_init__(self):
        for arr in (self.values, self.coverage, self.filled, self.unknown, self.island):
            arr.setflags(write=False)

    @property
    def width(self) -> int:
        return int(self.values.shape[1])

    @property
    def height(self) -> int:
        return int(self.values.shape[0])

    @property
    def shape(self) -> tuple[int, int]:
        return self.height, self.width

    def resample(self, width: int, height: int) -> np.ndarray:
        """
        Values on another grid, for comparing bakes of different sizes.

        Integer down-scaling averages blocks of texels (ignoring NaN);
        anything else picks the texel under each new texel centre.
        """
        h, w = self.shape
        if w % width == 0 and h % height == 0:
            v = self.values.reshape(height, h // height, width, w // width)
            finite = np.isfinite(v)
            total = np.where(finite, v, 0.0).sum(axis=(1, 3))
            count = finite.sum(axis=(1, 3))
            return np.where(count > 0, total / np.maximum(count, 1), np.nan)
        ys = np.minimum(((np.arange(height) + 0.5) * h / height).astype(int), h - 1)
        xs = np.minimum(((np.arange(width) + 0.5) * w / width).astype(int), w - 1)
        return self.values[ys[:, None], xs[None, :]]

    def to_image_array(self, vmin: float | None = None, vmax: float | None = None,
                       unknown_color=cst.UNKNOWN_COLOR) -> np.ndarray:
        """(H, W, 4) uint8 grayscale RGBA image; unknown texels get `unknown_color`."""
        g = normalize(self.values, vmin, vmax)
        gray = np.round(np.nan_to_num(g, nan=0.0) * 255.0).astype(np.uint8)
        rgba = np.empty(self.shape + (4,), dtype=np.uint8)
        rgba[..., :3] = gray[..., None]
        rgba[..., 3] = 255
        rgba[self.unknown] = np.asarray(unknown_color, dtype=np.uint8)
        return rgba


def mappable_triangles(mesh: mt.Mesh) -> tuple[np.ndarray, list[UnmappableIsland]]:
    """
    Triangles that can be placed on the texture.

    A triangle is unmappable when a corner has no finite UV or its UV area
    is zero. Only unmappable triangles with a real 3D area are reported;
    3D-degenerate ones are already reported by the surface index.
    """
    uv = mesh.triangle_uvs()
    finite = np.all(np.isfinite(uv), axis=(1, 2))
    uv_area = np.abs(np.nan_to_num(mesh.uv_areas(), nan=0.0))
    ok = finite & (uv_area > cst.DEGENERATE_UV_AREA)
    real = mesh.triangle_areas() > cst.DEGENERATE_AREA
    errors = []
    for t in np.flatnonzero(~ok & real):
        reason = "has no valid UV coordinates" if not finite[t] else "has zero UV area"
        errors.append(UnmappableIsland(f"triangle {int(t)} {reason}", triangle=int(t)))
    return ok, errors


def label_uv_islands(mesh: mt.Mesh, mappable: np.ndarray | None = None) -> tuple[np.ndarray, int]:
    """
    Connected components of the UV layout.

    Two mappable triangles are connected when they share an edge whose
    corners agree in both position and UV. Vertices split along a UV seam
    break the connection; vertices split only by their normals do not.

    Returns
    -------
    labels : np.ndarray
        (T,) island label per triangle, -1 for unmappable triangles.
    count : int
        Number of islands.
    """
    t_count = mesh.triangle_count
    if mappable is None:
        mappable, _ = mappable_triangles(mesh)
    ids = np.flatnonzero(mappable)
    labels = np.full(t_count, -1, dtype=np.int64)
    if ids.size == 0:
        return labels, 0

    welded = mesh.uv_welded_vertex_ids()
    tri = welded[mesh.triangles[ids]]
    v_count = np.int64(welded.max() + 1)
    keys, owners = [], []
    for k in range(3):
        a = tri[:, (k + 1) % 3]
        b = tri[:, (k + 2) % 3]
        keys.append(np.minimum(a, b) * v_count + np.maximum(a, b))
        owners.append(ids)
    keys = np.concatenate(keys)
    owners = np.concatenate(owners)
    order = np.argsort(keys, kind="stable")
    keys, owners = keys[order], owners[order]
    same = keys[1:] == keys[:-1]
    rows, cols = owners[1:][same], owners[:-1][same]
    graph = sparse.coo_matrix((np.ones(rows.size), (rows, cols)), shape=(t_count, t_count))
    _, comp = connected_components(graph, directed=False)

    # Compact labels in order of the first triangle of each island.
    _, first, inverse = np.unique(comp[ids], return_index=True, return_inverse=True)
    rank = np.argsort(np.argsort(first))
    labels[ids] = rank[np.asarray(inverse).reshape(-1)]
    return labels, int(first.size)


def rasterize_uv(mesh: mt.Mesh, mappable: np.ndarray, width: int, height: int) -> tuple[np.ndarray, np.ndarray]:
    """
    Assign every texel centre to the triangle covering it in UV space.

    Triangles are drawn in increasing index order and never overwrite a
    texel, so centres on a shared edge go to the lower triangle index.

    Returns
    -------
    owner : np.ndarray
        (H, W) triangle index per texel, -1 where no triangle covers it.
    bary : np.ndarray
        (H, W, 3) barycentric weights of the texel centre in its owner.
    """
    owner = np.full((height, width), -1, dtype=np.int64)
    bary = np.zeros((height, width, 3))
    uvs = mesh.triangle_uvs()
    eps = cst.UV_INSIDE_EPSILON
    for t in np.flatnonzero(mappable):
        c = uvs[t]
        # Texel centres sit at integer pixel coordinates.
        px = c[:, 0] * width - 0.5
        py = (1.0 - c[:, 1]) * height - 0.5
        x0 = max(0, int(np.ceil(px.min() - 1e-6)))
        x1 = min(width - 1, int(np.floor(px.max() + 1e-6)))
        y0 = max(0, int(np.ceil(py.min() - 1e-6)))
        y1 = min(height - 1, int(np.floor(py.max() + 1e-6)))
        if x0 > x1 or y0 > y1:
            continue
        gx, gy = np.meshgrid(np.arange(x0, x1 + 1), np.arange(y0, y1 + 1))
        centres = np.stack([(gx + 0.5) / width, 1.0 - (gy + 0.5) / height], axis=-1)
        b = mt.barycentric_2d(centres, c[0], c[1], c[2])
        if b is None:
            continue
        sub_owner = owner[y0:y1 + 1, x0:x1 + 1]
        sub_bary = bary[y0:y1 + 1, x0:x1 + 1]
        take = np.all(b >= -eps, axis=-1) & (sub_owner < 0)
        sub_owner[take] = t
        sub_bary[take] = np.clip(b[take], 0.0, 1.0)
    return owner, bary


def _footprint(corners_uv: np.ndarray, width: int, height: int) -> tuple[np.ndarray, np.ndarray]:
    """Texels touched by the edges of a (possibly zero-area) UV triangle."""
    xs, ys = [], []
    for k in range(3):
        a, b = corners_uv[k], corners_uv[(k + 1) % 3]
        span = max(abs(b[0] - a[0]) * width, abs(b[1] - a[1]) * height)
        s = np.linspace(0.0, 1.0, int(np.ceil(2.0 * span)) + 2)
        p = a[None, :] + s[:, None] * (b - a)[None, :]
        xs.append(np.clip(np.floor(p[:, 0] * width), 0, width - 1).astype(np.int64))
        ys.append(np.clip(np.floor((1.0 - p[:, 1]) * height), 0, height - 1).astype(np.int64))
    return np.concatenate(ys), np.concatenate(xs)


class TextureSynthesizer:
    """
    Converts accumulator snapshots into one TextureBuffer per material.

    For every texel the contributing samples are the accumulator cells of
    the texel's own UV island whose UV centre falls inside the texel, plus
    the cell under the texel centre (an untouched cell contributes 0). They
    are combined with `combine`:

    - "mean": plain average,
    - "max": largest value,
    - "weighted": average weighted by the cells' write counts.

    Texels not covered by any triangle are then filled from the nearest
    covered texel, within `dilation` texels ("dilate") or without limit
    ("nearest"); "none" leaves them at 0.

    Triangles without usable UVs are recorded in `issues`; texels touched by
    a zero-UV-area triangle are marked unknown (NaN). With `strict=True`
    the first unmappable triangle raises `UnmappableIsland` instead.

    Parameters
    ----------
    mesh : mt.Mesh
        Mesh whose UV layout defines the texture.
    combine : str
        One of `constants.COMBINE_MODES`.
    fill : str
        One of `constants.FILL_MODES`.
    dilation : int
        Gap fill radius in texels for fill mode "dilate".
    strict : bool
        Raise on unmappable triangles instead of recording them.
    """

    def __init__(self, mesh: mt.Mesh, combine: str = "mean", fill: str = "dilate",
                 dilation: int = cst.DEFAULT_DILATION, strict: bool = False):
        if combine not in cst.COMBINE_MODES:
            raise ValueError(f"[TextureSynthesizer] unknown combine mode {combine!r}")
        if fill not in cst.FILL_MODES:
            raise ValueError(f"[TextureSynthesizer] unknown fill mode {fill!r}")
        if dilation < 0:
            raise ValueError("[TextureSynthesizer] dilation must be >= 0")
        self.mesh = mesh
        self.combine = combine
        self.fill = fill
        self.dilation = int(dilation)

        self.mappable, errors = mappable_triangles(mesh)
        if errors and strict:
            raise errors[0]
        self.issues: list[Issue] = []
        for err in errors:
            logger.warning("[TextureSynthesizer] %s", err)
            self.issues.append(Issue.from_error(err))
        self.islands, self.island_count = label_uv_islands(mesh, self.mappable)
        self._layouts: dict[tuple[int, int], tuple[np.ndarray, np.ndarray, np.ndarray]] = {}
        logger.debug("[TextureSynthesizer] %d UV islands, %d unmappable triangles",
                     self.island_count, len(errors))

    @classmethod
    def from_settings(cls, mesh: mt.Mesh, settings: TextureSettings) -> "TextureSynthesizer":
        return cls(mesh, combine=settings.combine, fill=settings.fill, dilation=settings.dilation)

    def layout(self, width: int, height: int) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Cached (owner, bary, unknown) rasters for one resolution."""
        key = (int(width), int(height))
        if key not in self._layouts:
            owner, bary = rasterize_uv(self.mesh, self.mappable, width, height)
            unknown = np.zeros((height, width), dtype=bool)
            if not self.mappable.any():
                unknown[:] = True
            uvs = self.mesh.triangle_uvs()
            for issue in self.issues:
                c = uvs[issue.triangle]
                if np.all(np.isfinite(c)):
                    ys, xs = _footprint(c, width, height)
                    unknown[ys, xs] = True
            unknown &= owner < 0
            self._layouts[key] = (owner, bary, unknown)
        return self._layouts[key]

    def bake(self, snapshot: AccumulatorSnapshot, width: int, height: int) -> dict[str, TextureBuffer]:
        """
        Bake every material of a snapshot.

        Parameters
        ----------
        snapshot : AccumulatorSnapshot
            Accumulated state; not modified.
        width, height : int
            Output resolution in texels.

        Returns
        -------
        dict[str, TextureBuffer]
            One buffer per material of the snapshot.
        """
        if width < 1 or height < 1:
            raise ValueError(f"[TextureSynthesizer] texture size must be positive, got {width}x{height}")
        owner, bary, unknown = self.layout(width, height)
        n = snapshot.subdivisions
        n_cells = np.int64(n * n)
        n_mat = len(snapshot.materials)
        covered = owner >= 0

        tris, cells, values, samples = snapshot.as_arrays()
        entry_keys = tris * n_cells + cells

        # Cell under every covered texel centre.
        tex_a = np.flatnonzero(covered.ravel())
        own_a = owner.ravel()[tex_a]
        key_a = own_a * n_cells + cell_indices(bary.reshape(-1, 3)[tex_a], n)

        # Cells whose UV centre lands in a texel of the same island.
        tex_b = np.zeros(0, dtype=np.int64)
        key_b = np.zeros(0, dtype=np.int64)
        keep = (tris < self.mesh.triangle_count)
        keep[keep] = self.mappable[tris[keep]]
        if keep.any():
            k_tris = tris[keep]
            centre_uv = np.einsum("ek,ekd->ed", cell_centers(n)[cells[keep]], self.mesh.triangle_uvs()[k_tris])
            x = np.clip(np.floor(centre_uv[:, 0] * width), 0, width - 1).astype(np.int64)
            y = np.clip(np.floor((1.0 - centre_uv[:, 1]) * height), 0, height - 1).astype(np.int64)
            flat = y * width + x
            own = owner.ravel()[flat]
            same = own >= 0
            same[same] = self.islands[own[same]] == self.islands[k_tris[same]]
            tex_b = flat[same]
            key_b = entry_keys[keep][same]

        pairs = np.column_stack([np.concatenate([tex_a, tex_b]),
                                 np.concatenate([key_a, key_b])]).astype(np.int64)
        if pairs.shape[0]:
            pairs = np.unique(pairs, axis=0)
        tex, keys = pairs[:, 0], pairs[:, 1]
        pv = np.zeros((keys.size, n_mat))
        ps = np.zeros(keys.size)
        if entry_keys.size:
            pos = np.minimum(np.searchsorted(entry_keys, keys), entry_keys.size - 1)
            found = entry_keys[pos] == keys
            pv[found] = values[pos[found]]
            ps[found] = samples[pos[found]]

        grid = self._combine(tex, pv, ps, width * height, n_mat).reshape(height, width, n_mat)
        island = np.where(covered, self.islands[np.maximum(owner, 0)], -1)
        grid, island, filled = self._fill_gaps(grid, covered, unknown, island)
        grid[unknown] = np.nan

        buffers = {}
        for m, name in enumerate(snapshot.materials):
            buffers[name] = TextureBuffer(
                channel=name,
                values=np.ascontiguousarray(grid[..., m]),
                coverage=covered.copy(),
                filled=filled.copy(),
                unknown=unknown.copy(),
                island=island.copy(),
            )
        logger.debug("[TextureSynthesizer] baked %d channels at %dx%d from %d entries",
                     n_mat, width, height, len(snapshot))
        return buffers

    def _combine(self, tex: np.ndarray, pv: np.ndarray, ps: np.ndarray, size: int, n_mat: int) -> np.ndarray:
        out = np.zeros((size, n_mat))
        if tex.size == 0:
            return out
        if self.combine == "max":
            best = np.full((size, n_mat), -np.inf)
            np.maximum.at(best, tex, pv)
            return np.where(np.isfinite(best), best, 0.0)
        if self.combine == "weighted":
            num = np.zeros((size, n_mat))
            np.add.at(num, tex, pv * ps[:, None])
            den = np.bincount(tex, weights=ps, minlength=size)
            np.divide(num, den[:, None], out=out, where=den[:, None] > 0)
            return out
        total = np.zeros((size, n_mat))
        np.add.at(total, tex, pv)
        count = np.bincount(tex, minlength=size).astype(float)
        np.divide(total, count[:, None], out=out, where=count[:, None] > 0)
        return out

    def _fill_gaps(self, grid: np.ndarray, covered: np.ndarray, unknown: np.ndarray, island: np.ndarray):
        filled = np.zeros_like(covered)
        if self.fill == "none" or not covered.any() or covered.all():
            return grid, island, filled
        dist, (iy, ix) = ndimage.distance_transform_edt(~covered, return_indices=True)
        target = ~covered & ~unknown
        if self.fill == "dilate":
            target &= dist <= self.dilation
        grid[target] = grid[iy[target], ix[target]]
        island = island.copy()
        island[target] = island[iy[target], ix[target]]
        filled[target] = True
        return grid, island, filled
