# Mass bookkeeping
MASS_QUANTA_PER_UNIT = 10 ** 9  # integer quanta per unit of mass

# Geometry
DEGENERATE_AREA = 1e-12         # triangles below this area are skipped by the surface index
BARY_EPSILON = 1e-9             # barycentric slack for "on edge" tests
DEFAULT_QUERY_TOLERANCE = 1e-3  # fraction of the mesh bounding-box diagonal
WELD_DECIMALS = 9               # rounding used to weld coincident vertex positions

# Transport defaults
DEFAULT_FLOW_VECTOR = (0.0, -1.0, 0.0)
DEFAULT_STEP_LENGTH = 0.05
DEFAULT_MAX_STEPS = 256
DEFAULT_ENERGY = 1.0
DEFAULT_ENERGY_DECAY = 0.05
DEFAULT_INERTIA = 0.0
DEFAULT_JITTER = 0.0
ENERGY_EPSILON = 1e-12          # energy at or below this is depleted

# Accumulator defaults
DEFAULT_CELL_SUBDIVISIONS = 4
DEFAULT_ACCUMULATOR_SHARDS = 64

# Texture defaults
DEFAULT_TEXTURE_SIZE = 512
DEFAULT_DILATION = 4
UNKNOWN_COLOR = (0, 0, 255, 255)  # marker for unknown texels in exported images
UV_INSIDE_EPSILON = 1e-9          # barycentric slack when rasterising UV triangles
DEGENERATE_UV_AREA = 1e-14        # UV triangles below this area cannot be mapped

# Modes
COMBINE_MODES = ("mean", "max", "weighted")
FILL_MODES = ("dilate", "nearest", "none")
EMISSION_KINDS = ("point", "box", "surface")
EFFECT_KINDS = ("density", "blend", "ramp")
