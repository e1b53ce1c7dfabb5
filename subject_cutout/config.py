"""
Centralized configuration constants for the subject cutout pipeline.

Ground rules:
- float32 masks, uint8 RGBA rasters
- Batch size 1
"""

# Longer-edge resolution budgets applied before inference.
QUALITY_BUDGET = 512
FAST_BUDGET = 832
CONSTRAINED_BUDGET = 640

# Refinement defaults (Quality preset).
FEATHER_RADIUS = 3
ARTIFACT_NEIGHBORHOOD = 5
HOLE_FILL_THRESHOLD = 0.7
EDGE_GRADIENT_THRESHOLD = 0.3
LOW_CUT = 0.1
HIGH_CUT = 0.9

# Isolated-pixel suppression: a neighbor counts as opaque above this alpha, and a
# pixel survives with at least this fraction of opaque neighbors (6 of 24 for 5x5).
ARTIFACT_OPAQUE_ALPHA = 0.4
ARTIFACT_MIN_NEIGHBOR_FRACTION = 0.25
ARTIFACT_KEEP_ALPHA = 0.7

# Edge sharpening only touches the soft band and uses a logistic curve elsewhere.
EDGE_BAND_LOW = 0.1
EDGE_BAND_HIGH = 0.9
EDGE_SNAP_CUTOFF = 0.5
SIGMOID_STEEPNESS = 10.0

# Hole filling: candidates are near-transparent, support is near-opaque.
HOLE_CANDIDATE_ALPHA = 0.2
HOLE_SUPPORT_ALPHA = 0.8

# Feathering blend: solid interior is kept, residual background noise is damped.
FEATHER_KEEP_ABOVE = 0.9
FEATHER_DAMP_BELOW = 0.1
FEATHER_DAMP_FACTOR = 0.3

# Candidate selection priority (case-insensitive substring match, in order).
SUBJECT_LABELS = ("person", "foreground", "subject", "human")

# Model backends. BiRefNet patches its input; 1024 is a safe square for both models.
PRIMARY_HF_REPO = "ZhengPeng7/BiRefNet"
ALTERNATE_HF_REPO = "briaai/RMBG-1.4"
MODEL_INPUT_SIZE = 1024

IMAGENET_MEAN = [0.485, 0.456, 0.406]
IMAGENET_STD = [0.229, 0.224, 0.225]

# Color-threshold fallback (no model): border samples per edge and RGB distance cutoff.
COLOR_FALLBACK_SAMPLES = 10
COLOR_FALLBACK_DISTANCE = 50.0

# Scratch buffer pool size (free entries kept for reuse).
POOL_MAX_FREE = 4
