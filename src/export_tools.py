import os
import logging
import numpy as np
import matplotlib.pyplot as plt
from matplotlib.gridspec import GridSpec
from PIL import Image
from typing import Dict, Iterable

import accumulator_tools as acc
import mesh_tools as mt
import statistics_tools as stat
import texture_tools as tex

logger = logging.getLogger(__name__)


def _with_extension(file_name: str, ext: str) -> str:
    return file_name if file_name.lower().endswith(ext) else f"{file_name}{ext}"


def write_png(image: np.ndarray, folder_name: str, file_name: str) -> str:
    """Write an (H, W), (H, W, 3) or (H, W, 4) uint8 array as PNG; returns the path."""
    arr = np.asarray(image)
    if arr.dtype != np.uint8:
        raise ValueError(f"[write_png] expected uint8 data, got {arr.dtype}")
    if not (arr.ndim == 2 or (arr.ndim == 3 and arr.shape[2] in (3, 4))):
        raise ValueError(f"[write_png] unsupported image shape {arr.shape}")
    os.makedirs(folder_name, exist_ok=True)
    out_path = os.path.join(folder_name, _with_extension(file_name, ".png"))
    Image.fromarray(arr).save(out_path)
    return out_path


def export_texture(
        buffer: tex.TextureBuffer,
        folder_name: str,
        file_name: str,
        vmin: float | None = None,
        vmax: float | None = None,
) -> str:
    """
    Write one channel as a grayscale density PNG.

    Values are normalised to [0, 1] over [vmin, vmax] (default: channel
    range); unknown texels are drawn in `constants.UNKNOWN_COLOR`.
    """
    path = write_png(buffer.to_image_array(vmin, vmax), folder_name, file_name)
    logger.info("[export_texture] wrote %s (%dx%d)", path, buffer.width, buffer.height)
    return path


def export_textures(textures: Dict[str, tex.TextureBuffer], folder_name: str, prefix: str = "mesh") -> Dict[str, str]:
    """Write every channel as `<prefix>_<channel>.png`; returns channel -> path."""
    return {name: export_texture(buf, folder_name, f"{prefix}_{name}.png") for name, buf in textures.items()}


def export_obj(
        mesh: mt.Mesh,
        folder_name: str,
        file_name: str,
        texture_paths: Dict[str, str] | None = None,
        base_materials: Dict[str, Dict[str, str]] | None = None,
        diffuse_maps: Dict[str, str] | None = None,
) -> str:
    """
    Write the mesh as OBJ with a companion MTL file.

    Every mesh material group gets ``usemtl``. Its MTL entry keeps the
    statements of `base_materials` (if given, with map paths already
    relative to `folder_name`, see `rebase_material_maps`). A material with
    an entry in `diffuse_maps` gets that image as ``map_Kd``. The channel
    textures are listed as comments so they stay discoverable.

    Returns
    -------
    str
        Path of the written OBJ file.
    """
    os.makedirs(folder_name, exist_ok=True)
    obj_name = _with_extension(file_name, ".obj")
    mtl_name = os.path.splitext(obj_name)[0] + ".mtl"
    obj_path = os.path.join(folder_name, obj_name)
    mtl_path = os.path.join(folder_name, mtl_name)
    texture_paths = texture_paths or {}
    base_materials = base_materials or {}
    diffuse_maps = diffuse_maps or {}

    has_uv = np.all(np.isfinite(mesh.uvs), axis=1)
    with open(obj_path, "w", encoding="utf-8") as f:
        f.write(f"mtllib {mtl_name}\n")
        f.write(f"o {mesh.name}\n")
        for p in mesh.positions:
            f.write(f"v {p[0]:.9g} {p[1]:.9g} {p[2]:.9g}\n")
        for uv in mesh.uvs:
            u, v = (uv if np.all(np.isfinite(uv)) else (0.0, 0.0))
            f.write(f"vt {u:.9g} {v:.9g}\n")
        for n in mesh.normals:
            f.write(f"vn {n[0]:.9g} {n[1]:.9g} {n[2]:.9g}\n")
        for m, mat_name in enumerate(mesh.material_names):
            tris = np.flatnonzero(mesh.triangle_materials == m)
            if tris.size == 0:
                continue
            f.write(f"usemtl {mat_name}\n")
            for t in tris:
                refs = []
                for vi in mesh.triangles[t] + 1:
                    refs.append(f"{vi}/{vi}/{vi}" if has_uv[vi - 1] else f"{vi}//{vi}")
                f.write("f " + " ".join(refs) + "\n")

    rel = {k: os.path.relpath(v, folder_name) for k, v in texture_paths.items()}
    with open(mtl_path, "w", encoding="utf-8") as f:
        for mat_name in mesh.material_names:
            f.write(f"newmtl {mat_name}\n")
            props = dict(base_materials.get(mat_name, {}))
            props.setdefault("Ka", "1 1 1")
            props.setdefault("Kd", "1 1 1")
            props.setdefault("Ks", "0 0 0")
            props.setdefault("d", "1")
            props.setdefault("illum", "1")
            if mat_name in diffuse_maps:
                props["map_Kd"] = os.path.relpath(diffuse_maps[mat_name], folder_name)
            for key, value in props.items():
                f.write(f"{key} {value}\n")
            for channel, path in rel.items():
                f.write(f"# weathering channel {channel}: {path}\n")
            f.write("\n")
    logger.info("[export_obj] wrote %s and %s", obj_path, mtl_path)
    return obj_path


def rebase_material_maps(
        materials: Dict[str, Dict[str, str]],
        source_folder: str,
        target_folder: str,
) -> Dict[str, Dict[str, str]]:
    """Copy of MTL statements with every ``map_*`` file made relative to `target_folder`."""
    out = {}
    for name, props in materials.items():
        props = dict(props)
        for key, value in list(props.items()):
            if not key.startswith("map_") or not value.split():
                continue
            *options, file_name = value.split()
            if not os.path.isabs(file_name):
                file_name = os.path.relpath(os.path.join(os.path.abspath(source_folder), file_name), target_folder)
            props[key] = " ".join(options + [file_name.replace(os.sep, "/")])
        out[name] = props
    return out


def export_weathering_history(report: stat.SimulationReport, folder_name: str, file_name: str) -> str:
    """
    Export per-iteration statistics as a text table with aligned columns.
    """
    cols = report.history()
    headers = list(cols)
    n = len(cols["iteration"])

    def _fmt(name: str, value) -> str:
        if np.issubdtype(cols[name].dtype, np.integer):
            return f"{int(value)}"
        return f"{float(value):.6e}"

    widths = []
    for h in headers:
        samples = [_fmt(h, v) for v in cols[h][-1:]]
        widths.append(max([len(h)] + [len(s) for s in samples]) + 2)

    os.makedirs(folder_name, exist_ok=True)
    out_path = os.path.join(folder_name, _with_extension(file_name, ".txt"))
    with open(out_path, "w", encoding="utf-8") as f:
        f.write("".join(h.ljust(w) for h, w in zip(headers, widths)).rstrip() + "\n")
        for i in range(n):
            f.write("".join(_fmt(h, cols[h][i]).ljust(w) for h, w in zip(headers, widths)).rstrip() + "\n")
        f.write("\n# " + report.summary().replace("\n", "\n# ") + "\n")
    logger.info("[export_weathering_history] wrote %d iterations to %s", n, out_path)
    return out_path


def plot_weathering_history(report: stat.SimulationReport, folder_name: str, file_name: str,
                            show: bool = False) -> str:
    """Plot moved mass, per-material totals and step statistics over the iterations."""
    cols = report.history()
    it = cols["iteration"]
    totals = [k for k in cols if k.startswith("total_")]

    plt.rcParams.update({
        "font.size": 8.5, "axes.labelsize": 8.5, "axes.titlesize": 9.0, "legend.fontsize": 8.0,
        "xtick.direction": "in", "ytick.direction": "in"
    })
    fig = plt.figure(figsize=(9.0, 6.0), constrained_layout=True)
    gs = GridSpec(3, 1, figure=fig)

    ax0 = fig.add_subplot(gs[0, 0])
    ax0.plot(it, cols["moved_mass"], "-o", ms=3, color="tab:blue")
    ax0.set_ylabel("moved mass")
    ax0.set_title("Weathering history")

    ax1 = fig.add_subplot(gs[1, 0], sharex=ax0)
    for k in totals:
        ax1.plot(it, cols[k], "-o", ms=3, label=k[len("total_"):])
    ax1.set_ylabel("net surface mass")
    if totals:
        ax1.legend(loc="best")

    ax2 = fig.add_subplot(gs[2, 0], sharex=ax0)
    ax2.plot(it, cols["mean_steps"], "-o", ms=3, color="tab:green", label="mean steps")
    ax2.bar(it, cols["max_step_terminations"], alpha=0.4, color="tab:red", label="step limit hits")
    ax2.set_xlabel("iteration")
    ax2.set_ylabel("steps")
    ax2.legend(loc="best")

    for ax in (ax0, ax1, ax2):
        ax.grid(True, alpha=0.3)

    os.makedirs(folder_name, exist_ok=True)
    out_path = os.path.join(folder_name, _with_extension(file_name, ".png"))
    fig.savefig(out_path, dpi=150)
    if show:
        plt.show()
    plt.close(fig)
    return out_path


def export_hit_map(
        snapshot: acc.AccumulatorSnapshot,
        mesh: mt.Mesh,
        folder_name: str,
        file_name: str,
        paths: Iterable[Iterable[np.ndarray]] | None = None,
) -> str:
    """
    Dump the touched surface cells (and optionally particle paths) as an OBJ point cloud.

    Every accumulator entry with a non-zero delta becomes a vertex at its
    cell centre, preceded by a comment with its per-material deltas. Paths
    are written as polylines (``l``).
    """
    os.makedirs(folder_name, exist_ok=True)
    out_path = os.path.join(folder_name, _with_extension(file_name, ".obj"))
    corners = mesh.triangle_positions()
    n = snapshot.subdivisions
    centres = acc.cell_centers(n)
    count = 0
    with open(out_path, "w", encoding="utf-8") as f:
        f.write(f"# hit map of {mesh.name}: materials {', '.join(snapshot.materials)}\n")
        f.write("o hits\n")
        for e in snapshot:
            if not any(e.quanta):
                continue
            p = centres[e.location.cell] @ corners[e.location.triangle]
            deltas = " ".join(f"{m}={acc.quanta_to_mass(q):.6g}" for m, q in zip(snapshot.materials, e.quanta))
            f.write(f"# t={e.location.triangle} c={e.location.cell} {deltas}\n")
            f.write(f"v {p[0]:.9g} {p[1]:.9g} {p[2]:.9g}\n")
            count += 1
        base = count
        for k, path in enumerate(paths or []):
            pts = [np.asarray(p, dtype=float) for p in path]
            if len(pts) < 2:
                continue
            f.write(f"o path_{k}\n")
            for p in pts:
                f.write(f"v {p[0]:.9g} {p[1]:.9g} {p[2]:.9g}\n")
            f.write("l " + " ".join(str(base + j + 1) for j in range(len(pts))) + "\n")
            base += len(pts)
    logger.info("[export_hit_map] wrote %d cells to %s", count, out_path)
    return out_path
