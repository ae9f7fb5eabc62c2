"""
Effects applied on top of the transport simulation.

Reaction rules act on the accumulator at iteration boundaries (e.g. water
turning into rust, or evaporating). Texture effects turn baked channels
into images: a grayscale density map, a blend of a base image towards an
overlay, and a ramp of concentration segments. Chained per mesh material,
starting from its MTL diffuse map, they give the weathered materials.
"""

import logging
import os
from dataclasses import dataclass

import numpy as np
from PIL import Image, ImageColor

import constants as cst
import mesh_tools as mt
from accumulator_tools import EffectAccumulator
from config_tools import ReactionRule, TextureEffect
from statistics_tools import normalize
from texture_tools import TextureBuffer

logger = logging.getLogger(__name__)


def apply_reaction_rules(
        accumulator: EffectAccumulator,
        rules: list[ReactionRule],
        mesh: mt.Mesh,
) -> dict[str, int]:
    """
    Apply reaction rules to every committed surface cell.

    Rules run in order and each reads the committed state, so the result
    does not depend on cell order. Transfers are written and committed
    before returning.

    Parameters
    ----------
    accumulator : EffectAccumulator
        Accumulator, with no pending writes.
    rules : list[ReactionRule]
        Rules to apply.
    mesh : mt.Mesh
        Mesh providing the material of each triangle.

    Returns
    -------
    dict[str, int]
        Quanta that evaporated per source material (rules without target).
    """
    evaporated: dict[str, int] = {}
    if not rules:
        return evaporated
    locations = accumulator.committed_locations()
    for rule in rules:
        if rule.rate <= 0.0:
            continue
        allowed = None if not rule.mesh_materials else set(rule.mesh_materials)
        moved = 0
        for loc in locations:
            if allowed is not None and mesh.material_of(loc.triangle) not in allowed:
                continue
            available = accumulator.available_quanta(loc, rule.source)
            amount = min(available, int(np.floor(available * rule.rate)))
            if amount <= 0:
                continue
            accumulator.add_quanta(loc, rule.source, -amount)
            if rule.target is None:
                evaporated[rule.source] = evaporated.get(rule.source, 0) + amount
            else:
                accumulator.add_quanta(loc, rule.target, amount)
            moved += amount
        accumulator.commit()
        logger.debug("[apply_reaction_rules] %s moved %d quanta", rule.name, moved)
    return evaporated


def _sample_image(image, width: int, height: int) -> np.ndarray:
    """Nearest-neighbour resample an image (or a single colour) onto a width x height RGBA grid."""
    if not isinstance(image, Image.Image):
        arr = np.asarray(image)
        if arr.ndim == 1:
            rgba = np.zeros(4, dtype=float)
            rgba[3] = 255.0
            n = min(arr.size, 4)
            rgba[:n] = arr[:n]
            return np.broadcast_to(rgba, (height, width, 4)).astype(float)
        if arr.ndim == 3 and arr.shape[2] == 1:
            arr = arr[..., 0]
        image = Image.fromarray(np.clip(np.round(arr), 0, 255).astype(np.uint8))
    image = image.convert("RGBA")
    if image.size != (width, height):
        image = image.resize((width, height), Image.NEAREST)
    return np.asarray(image, dtype=float)


def load_source(value, folder: str = "."):
    """
    Resolve a colour or image reference of a texture effect.

    Parameters
    ----------
    value : str, tuple or array-like
        "r g b[ a]" in 0-255, a colour name Pillow understands (``ImageColor``),
        or an image file relative to `folder`. Non-strings are returned as is.
    folder : str
        Base folder for image files.

    Returns
    -------
    tuple or PIL.Image.Image
    """
    if not isinstance(value, str):
        return value
    parts = value.replace(",", " ").split()
    try:
        rgba = tuple(int(round(float(p))) for p in parts)
    except ValueError:
        rgba = None
    if rgba is not None and len(rgba) in (3, 4):
        return rgba
    try:
        return ImageColor.getrgb(value.strip())
    except ValueError:
        pass
    path = os.path.join(os.path.abspath(folder), value.strip())
    if not os.path.isfile(path):
        raise FileNotFoundError(f"[load_source] {value!r} is neither a colour nor an image file in {folder}")
    with Image.open(path) as img:
        return img.convert("RGBA")


def base_image(material: dict[str, str], folder: str = "."):
    """Starting diffuse map of an MTL material: its ``map_Kd`` image, else its ``Kd`` colour, else white."""
    map_kd = material.get("map_Kd")
    if map_kd:
        # Options such as "-s 1 1 1" precede the file name.
        return load_source(map_kd.split()[-1], folder)
    kd = material.get("Kd")
    if kd:
        try:
            return tuple(int(round(255.0 * min(max(float(c), 0.0), 1.0))) for c in kd.split()[:3])
        except ValueError:
            logger.warning("[base_image] ignoring malformed Kd %r", kd)
    return (255, 255, 255)


def density_map(buffer: TextureBuffer, vmin: float | None = None, vmax: float | None = None,
                unknown_color=cst.UNKNOWN_COLOR) -> np.ndarray:
    """Grayscale RGBA image of a channel normalised to [0, 1]; unknown texels get a marker colour."""
    return buffer.to_image_array(vmin, vmax, unknown_color)


def blend(
        buffer: TextureBuffer,
        base,
        overlay,
        vmin: float | None = 0.0,
        vmax: float | None = None,
        unknown_color=cst.UNKNOWN_COLOR,
) -> np.ndarray:
    """
    Lerp from `base` towards `overlay` by the normalised concentration.

    Parameters
    ----------
    buffer : TextureBuffer
        Concentration channel.
    base, overlay : array-like
        Images (H, W[, C]) or single colours, resampled to the buffer size.
    vmin, vmax : float, optional
        Concentrations mapped to 0 (pure base) and 1 (pure overlay).

    Returns
    -------
    np.ndarray
        (H, W, 4) uint8 RGBA image.
    """
    h, w = buffer.shape
    a = normalize(buffer.values, vmin, vmax)
    alpha = np.nan_to_num(a, nan=0.0)[..., None]
    out = (1.0 - alpha) * _sample_image(base, w, h) + alpha * _sample_image(overlay, w, h)
    out = np.clip(np.round(out), 0, 255).astype(np.uint8)
    out[buffer.unknown] = np.asarray(unknown_color, dtype=np.uint8)
    return out


@dataclass(frozen=True, eq=False)
class RampSegment:
    """
    Concentrations in [min_value, max_value) interpolate linearly from
    `low` to `high` (images or colours; None means the base image).
    """
    min_value: float
    max_value: float
    low: object = None
    high: object = None

    def alpha(self, concentration: np.ndarray) -> np.ndarray:
        return (concentration - self.min_value) / (self.max_value - self.min_value)

    def contains(self, concentration: np.ndarray) -> np.ndarray:
        return (self.min_value <= concentration) & (concentration < self.max_value)


def ramp(
        buffer: TextureBuffer,
        segments: list[RampSegment],
        base=None,
        fallback_color=cst.UNKNOWN_COLOR,
) -> np.ndarray:
    """
    Map raw concentrations through piecewise segments.

    The first segment containing a texel's value is used. Texels outside
    every segment, and unknown texels, get `fallback_color`.

    Returns
    -------
    np.ndarray
        (H, W, 4) uint8 RGBA image.
    """
    for seg in segments:
        if not seg.max_value > seg.min_value:
            raise ValueError(f"[ramp] empty segment [{seg.min_value}, {seg.max_value})")
        if base is None and (seg.low is None or seg.high is None):
            raise ValueError("[ramp] segments without images need a base image")
    h, w = buffer.shape
    c = buffer.values
    out = np.empty((h, w, 4), dtype=float)
    out[:] = np.asarray(fallback_color, dtype=float)
    done = np.zeros((h, w), dtype=bool)
    finite = np.isfinite(c)
    for seg in segments:
        mask = finite & ~done & seg.contains(np.where(finite, c, -np.inf))
        if not mask.any():
            continue
        low = _sample_image(base if seg.low is None else seg.low, w, h)
        high = _sample_image(base if seg.high is None else seg.high, w, h)
        a = seg.alpha(c[mask])[:, None]
        out[mask] = (1.0 - a) * low[mask] + a * high[mask]
        done |= mask
    return np.clip(np.round(out), 0, 255).astype(np.uint8)


def apply_texture_effects(
        textures: dict[str, TextureBuffer],
        effects: list[TextureEffect],
        mesh_materials: list[str],
        base_materials: dict[str, dict[str, str]] | None = None,
        folder: str = ".",
        base_folder: str | None = None,
) -> dict[str, np.ndarray]:
    """
    Build the weathered diffuse map of every mesh material an effect applies to.

    Parameters
    ----------
    textures : dict[str, TextureBuffer]
        Baked channels by material kind.
    effects : list[TextureEffect]
        Effects, applied in order.
    mesh_materials : list[str]
        Material names of the mesh.
    base_materials : dict, optional
        MTL statements per mesh material (see `import_tools.import_mtl`);
        their diffuse maps are the starting images.
    folder : str
        Folder that effect image references are relative to.
    base_folder : str, optional
        Folder of the diffuse maps of `base_materials` (default: `folder`).

    Returns
    -------
    dict[str, np.ndarray]
        Mesh material -> (H, W, 4) uint8 RGBA image at the texture size.
    """
    base_materials = base_materials or {}
    base_folder = folder if base_folder is None else base_folder
    images: dict[str, np.ndarray] = {}
    for material in mesh_materials:
        chain = [e for e in effects if e.mesh_materials is None or material in e.mesh_materials]
        if not chain:
            continue
        h, w = textures[chain[0].channel].shape
        image = _sample_image(base_image(base_materials.get(material, {}), base_folder), w, h).astype(np.uint8)
        for effect in chain:
            buf = textures[effect.channel]
            if effect.kind == "density":
                image = density_map(buf, effect.vmin, effect.vmax)
            elif effect.kind == "blend":
                image = blend(buf, image, load_source(effect.overlay, folder), effect.vmin, effect.vmax)
            elif effect.kind == "ramp":
                segments = [
                    RampSegment(float(lo), float(hi),
                                None if low is None else load_source(low, folder),
                                None if high is None else load_source(high, folder))
                    for lo, hi, low, high in effect.segments
                ]
                image = ramp(buf, segments, base=image)
            else:
                raise ValueError(f"[apply_texture_effects] unknown effect kind {effect.kind!r}")
        images[material] = image
        logger.debug("[apply_texture_effects] %s: %s", material, ", ".join(e.name for e in chain))
    return images
