import os
import logging
import numpy as np
from typing import Dict, List, Tuple

import mesh_tools as mt
from config_tools import (
    EmissionRegion,
    ExportSettings,
    MaterialParameters,
    ReactionRule,
    SimulationConfig,
    TextureEffect,
    TextureSettings,
)
from error_tools import ConfigurationError

logger = logging.getLogger(__name__)


def import_obj(project_folder: str, obj_file: str) -> mt.Mesh:
    """
    Load a Wavefront OBJ file as a triangle Mesh.

    Supported statements: ``v``, ``vt``, ``vn``, ``f`` (polygons are fan
    triangulated; ``v``, ``v/vt``, ``v//vn`` and ``v/vt/vn`` references,
    negative indices allowed), ``usemtl``, ``mtllib`` and ``o``. Every
    distinct (position, uv, normal) reference becomes one mesh vertex, so UV
    seams are kept as split vertices.

    Parameters
    ----------
    project_folder : str
        Directory containing the OBJ file.
    obj_file : str
        OBJ filename.

    Returns
    -------
    mt.Mesh
        Mesh with `material_names` in order of first use ("default" for faces
        before any ``usemtl``). The referenced material library, if any, is
        stored as `mesh.mtllib`.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If a statement cannot be parsed or an index is out of range.
    """
    path = os.path.join(os.path.abspath(project_folder), obj_file)
    if not os.path.isfile(path):
        raise FileNotFoundError(f"OBJ file not found: {path}")

    positions: List[Tuple[float, float, float]] = []
    texcoords: List[Tuple[float, float]] = []
    normals: List[Tuple[float, float, float]] = []
    vertex_ids: Dict[Tuple[int, int, int], int] = {}
    out_v, out_vt, out_vn = [], [], []
    triangles, tri_mats = [], []
    material_names: List[str] = []
    current_mat = None
    name = os.path.splitext(os.path.basename(obj_file))[0]
    mtllib = None

    def _resolve(idx: str, count: int, lineno: int) -> int:
        i = int(idx)
        i = i - 1 if i > 0 else count + i
        if not 0 <= i < count:
            raise ValueError(f"{path}:{lineno}: index {idx} out of range")
        return i

    def _vertex(ref: str, lineno: int) -> int:
        parts = ref.split("/")
        vi = _resolve(parts[0], len(positions), lineno)
        ti = _resolve(parts[1], len(texcoords), lineno) if len(parts) > 1 and parts[1] else -1
        ni = _resolve(parts[2], len(normals), lineno) if len(parts) > 2 and parts[2] else -1
        key = (vi, ti, ni)
        if key not in vertex_ids:
            vertex_ids[key] = len(out_v)
            out_v.append(positions[vi])
            out_vt.append(texcoords[ti] if ti >= 0 else (np.nan, np.nan))
            out_vn.append(normals[ni] if ni >= 0 else (np.nan, np.nan, np.nan))
        return vertex_ids[key]

    with open(path, "r", encoding="utf-8") as f:
        for lineno, raw in enumerate(f, start=1):
            s = raw.split("#", 1)[0].strip()
            if not s:
                continue
            tag, *rest = s.split()
            try:
                if tag == "v":
                    positions.append(tuple(float(x) for x in rest[:3]))
                elif tag == "vt":
                    texcoords.append((float(rest[0]), float(rest[1]) if len(rest) > 1 else 0.0))
                elif tag == "vn":
                    normals.append(tuple(float(x) for x in rest[:3]))
                elif tag == "f":
                    if len(rest) < 3:
                        raise ValueError("face with fewer than three vertices")
                    if current_mat is None:
                        current_mat = "default"
                        if current_mat not in material_names:
                            material_names.append(current_mat)
                    ids = [_vertex(r, lineno) for r in rest]
                    for k in range(1, len(ids) - 1):
                        triangles.append((ids[0], ids[k], ids[k + 1]))
                        tri_mats.append(material_names.index(current_mat))
                elif tag == "usemtl":
                    current_mat = rest[0] if rest else "default"
                    if current_mat not in material_names:
                        material_names.append(current_mat)
                elif tag == "mtllib":
                    mtllib = " ".join(rest)
                elif tag == "o":
                    name = " ".join(rest) or name
            except (ValueError, IndexError) as exc:
                raise ValueError(f"Failed to parse '{path}' line {lineno}: {exc}") from exc

    if not triangles:
        raise ValueError(f"OBJ file has no faces: {path}")

    vn = np.asarray(out_vn, dtype=float)
    mesh = mt.Mesh(
        positions=np.asarray(out_v, dtype=float),
        triangles=np.asarray(triangles, dtype=np.int64),
        normals=None if np.isnan(vn).any() else vn,
        uvs=np.asarray(out_vt, dtype=float),
        triangle_materials=np.asarray(tri_mats, dtype=np.int64),
        material_names=material_names,
        name=name,
    )
    mesh.mtllib = mtllib
    logger.info("loaded %s: %d vertices, %d triangles, materials %s",
                obj_file, mesh.vertex_count, mesh.triangle_count, material_names)
    return mesh


def import_mtl(project_folder: str, mtl_file: str) -> Dict[str, Dict[str, str]]:
    """
    Read a Wavefront material library.

    Returns
    -------
    dict
        Material name -> {statement: raw value} (e.g. {"Kd": "1 1 1", "map_Kd": "wood.png"}).
    """
    path = os.path.join(os.path.abspath(project_folder), mtl_file)
    if not os.path.isfile(path):
        raise FileNotFoundError(f"MTL file not found: {path}")
    materials: Dict[str, Dict[str, str]] = {}
    cur = None
    with open(path, "r", encoding="utf-8") as f:
        for raw in f:
            s = raw.split("#", 1)[0].strip()
            if not s:
                continue
            tag, _, value = s.partition(" ")
            if tag == "newmtl":
                cur = materials.setdefault(value.strip(), {})
            elif cur is not None:
                cur[tag] = value.strip()
    return materials


def import_inputs(project_folder: str, inputs_file: str = "Inputs.txt") -> SimulationConfig:
    """
    Parse a sectioned Inputs.txt into a validated SimulationConfig.

    Sections are started by a header line without '=':
    ``Simulation inputs``, ``Material inputs: <name>``, ``Emission inputs:
    <name>``, ``Reaction inputs: <name>``, ``Effect inputs: <name>``,
    ``Texture inputs`` and ``Exporting inputs``. Inside a section every line is ``key = value``;
    '#' starts a comment.

    Raises
    ------
    FileNotFoundError
        If the inputs file does not exist.
    ConfigurationError
        If a section or value is malformed, or the result does not validate.
    """

    # ---------- helpers ----------
    def _clean(line: str) -> str | None:
        s = line.split("#", 1)[0].strip()
        return s or None

    def _as_bool(v: str | None, default=False) -> bool:
        if v is None:
            return default
        return v.strip().lower() in {"1", "true", "t", "yes", "y"}

    def _as_float(v: str | None, name: str, default=None) -> float:
        if v is None:
            if default is None:
                raise ConfigurationError(f"Missing value for '{name}'.")
            return default
        try:
            return float(v)
        except ValueError as e:
            raise ConfigurationError(f"Invalid float for '{name}': {v}") from e

    def _as_int(v: str | None, name: str, default=None) -> int:
        if v is None and default is not None:
            return default
        f = _as_float(v, name)
        if not np.isfinite(f) or f != int(f):
            raise ConfigurationError(f"Invalid integer for '{name}': {v}")
        return int(f)

    def _as_vec3(v: str | None, name: str, default=None) -> tuple[float, float, float]:
        if v is None:
            if default is None:
                raise ConfigurationError(f"Missing value for '{name}'.")
            return tuple(default)
        parts = v.replace(",", " ").split()
        if len(parts) != 3:
            raise ConfigurationError(f"'{name}' needs three components, got: {v}")
        return tuple(_as_float(p, name) for p in parts)

    def _as_list(v: str | None) -> list[str] | None:
        if v is None:
            return None
        items = [p.strip() for p in v.split(",") if p.strip()]
        return items or None

    def _as_payload(v: str | None, name: str) -> dict[str, float]:
        payload = {}
        for item in _as_list(v) or []:
            if ":" not in item:
                raise ConfigurationError(f"'{name}' entries must be 'material: amount', got: {item}")
            mat, amount = map(str.strip, item.split(":", 1))
            payload[mat] = _as_float(amount, f"{name}[{mat}]")
        return payload

    # ---------- read & sectionize ----------
    path = os.path.join(os.path.abspath(project_folder), inputs_file)
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Inputs file not found: {path}")

    sim, texture, export = {}, {}, {}
    materials: Dict[str, Dict[str, str]] = {}
    emissions: Dict[str, Dict[str, str]] = {}
    reactions: Dict[str, Dict[str, str]] = {}
    effects: Dict[str, Dict[str, str]] = {}
    named = {"material inputs": materials, "emission inputs": emissions, "reaction inputs": reactions,
             "effect inputs": effects}
    plain = {"simulation inputs": sim, "texture inputs": texture, "exporting inputs": export}
    cur = None
    with open(path, "r", encoding="utf-8") as f:
        for lineno, raw in enumerate(f, start=1):
            s = _clean(raw)
            if not s:
                continue
            if "=" not in s:
                head, _, label = s.partition(":")
                head = head.strip().lower()
                if head in plain:
                    cur = plain[head]
                elif head in named:
                    label = label.strip()
                    if not label:
                        raise ConfigurationError(f"{path}:{lineno}: section '{s}' needs a name")
                    cur = named[head].setdefault(label, {})
                else:
                    raise ConfigurationError(f"{path}:{lineno}: unknown section '{s}'")
                continue
            if cur is None:
                raise ConfigurationError(f"{path}:{lineno}: value outside of a section")
            k, v = map(str.strip, s.split("=", 1))
            cur[k.lower()] = v

    # ---------- materials ----------
    mats = []
    for mname, block in materials.items():
        mats.append(MaterialParameters(
            name=mname,
            deposition_probability=_as_float(block.get("deposition probability"), "deposition probability", 0.0),
            erosion_rate=_as_float(block.get("erosion rate"), "erosion rate", 0.0),
            decay_rate=_as_float(block.get("decay rate"), "decay rate", 0.0),
            pickup=_as_bool(block.get("pickup"), True),
            substrate=_as_float(block.get("substrate"), "substrate", 0.0),
        ))

    # ---------- emission ----------
    regions = []
    for rname, block in emissions.items():
        tris = _as_list(block.get("triangles"))
        max_d = block.get("max distance")
        regions.append(EmissionRegion(
            name=rname,
            kind=(block.get("kind") or "surface").strip().lower(),
            payload=_as_payload(block.get("payload"), "payload"),
            energy=_as_float(block.get("energy"), "energy", 1.0),
            weight=_as_float(block.get("weight"), "weight", 1.0),
            position=_as_vec3(block.get("position"), "position", (0.0, 0.0, 0.0)),
            radius=_as_float(block.get("radius"), "radius", 0.0),
            box_min=_as_vec3(block.get("box min"), "box min", (0.0, 0.0, 0.0)),
            box_max=_as_vec3(block.get("box max"), "box max", (0.0, 0.0, 0.0)),
            triangles=None if tris is None else tuple(_as_int(t, "triangles") for t in tris),
            max_distance=None if max_d is None else _as_float(max_d, "max distance"),
        ))

    # ---------- reactions ----------
    rules = []
    for rname, block in reactions.items():
        target = block.get("target")
        if target is not None and target.strip().lower() in {"", "none", "evaporate"}:
            target = None
        mesh_mats = _as_list(block.get("mesh materials"))
        source = block.get("source")
        if not source:
            raise ConfigurationError(f"Missing 'source' in reaction '{rname}'.")
        rules.append(ReactionRule(
            name=rname,
            source=source.strip(),
            target=None if target is None else target.strip(),
            rate=_as_float(block.get("rate"), "rate"),
            mesh_materials=None if mesh_mats is None else tuple(mesh_mats),
        ))

    # ---------- texture effects ----------
    # segments = <min> <max>: <low> -> <high>; ...   ("base" is the current map)
    def _as_segments(v: str | None, name: str) -> list[tuple]:
        segments = []
        for item in (v or "").split(";"):
            if not item.strip():
                continue
            bounds, sep, colours = item.partition(":")
            low, arrow, high = colours.partition("->")
            lims = bounds.split()
            if not sep or not arrow or len(lims) != 2:
                raise ConfigurationError(f"'{name}' entries must be 'min max: low -> high', got: {item.strip()}")
            ends = [None if s.strip().lower() == "base" else s.strip() for s in (low, high)]
            segments.append((_as_float(lims[0], name), _as_float(lims[1], name), *ends))
        return segments

    fx_list = []
    for fname, block in effects.items():
        channel = block.get("channel")
        if not channel:
            raise ConfigurationError(f"Missing 'channel' in effect '{fname}'.")
        mesh_mats = _as_list(block.get("mesh materials"))
        vmax = block.get("max")
        fx_list.append(TextureEffect(
            name=fname,
            channel=channel.strip(),
            kind=(block.get("kind") or "blend").strip().lower(),
            overlay=block.get("overlay") or None,
            vmin=_as_float(block.get("min"), "min", 0.0),
            vmax=None if vmax is None else _as_float(vmax, "max"),
            segments=_as_segments(block.get("segments"), "segments"),
            mesh_materials=None if mesh_mats is None else tuple(mesh_mats),
        ))

    # ---------- texture / export ----------
    size = _as_int(texture.get("size"), "size", 512)
    tex_settings = TextureSettings(
        width=_as_int(texture.get("width"), "width", size),
        height=_as_int(texture.get("height"), "height", size),
        combine=(texture.get("combine") or "mean").strip().lower(),
        fill=(texture.get("fill") or "dilate").strip().lower(),
        dilation=_as_int(texture.get("dilation"), "dilation", 4),
    )
    exp_settings = ExportSettings(
        output_folder=export.get("output folder", "results"),
        textures=_as_bool(export.get("export textures"), True),
        obj=_as_bool(export.get("export obj"), True),
        history=_as_bool(export.get("export history"), True),
        plot_history=_as_bool(export.get("plot history"), False),
        hit_map=_as_bool(export.get("export hit map"), False),
    )

    # ---------- simulation ----------
    defaults = SimulationConfig()
    tol = sim.get("query tolerance")
    config = SimulationConfig(
        iterations=_as_int(sim.get("iterations"), "iterations"),
        particles_per_iteration=_as_int(sim.get("particles per iteration"), "particles per iteration"),
        seed=_as_int(sim.get("seed"), "seed", 0),
        materials=mats,
        emission_regions=regions,
        step_length=_as_float(sim.get("step length"), "step length", defaults.step_length),
        max_steps=_as_int(sim.get("max steps"), "max steps", defaults.max_steps),
        energy_decay=_as_float(sim.get("energy decay"), "energy decay", defaults.energy_decay),
        energy_decay_per_distance=_as_float(sim.get("energy decay per distance"),
                                            "energy decay per distance", 0.0),
        flow_vector=_as_vec3(sim.get("flow vector"), "flow vector", defaults.flow_vector),
        inertia=_as_float(sim.get("inertia"), "inertia", defaults.inertia),
        jitter=_as_float(sim.get("jitter"), "jitter", defaults.jitter),
        cell_subdivisions=_as_int(sim.get("cell subdivisions"), "cell subdivisions", defaults.cell_subdivisions),
        workers=_as_int(sim.get("workers"), "workers", 1),
        accumulator_shards=_as_int(sim.get("accumulator shards"), "accumulator shards",
                                   defaults.accumulator_shards),
        reactions=rules,
        effects=fx_list,
        texture=tex_settings,
        export=exp_settings,
        record_paths=_as_bool(sim.get("record paths"), False),
        query_tolerance=None if tol is None else _as_float(tol, "query tolerance"),
        mesh_file=sim.get("mesh file"),
    )
    return config.validate()
