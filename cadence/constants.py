# Times are in seconds, capacities in the pool's own units (GB of RAM by default).

# Planning
DESIRED_EXTRACT_FRACTION = 0.05
DRAIN_THRESHOLD = 0.99
REPLENISH_TARGET = 0.99
HALVING_FACTOR = 0.5

# Scheduling
DEFAULT_GAP = 0.2
MIN_GAP = 0.1
SHIFT_PADDING = 0.05

# Preparation
PREP_VALUE_FRACTION = 0.95
PREP_LEVEL_EPSILON = 0.05
PREP_MARGIN = 0.2
STABILIZE_SHARE = 0.5

# Control loop
DRIFT_VALUE_FRACTION = 0.90
DRIFT_LEVEL_TOLERANCE = 1.0
BACKOFF_SECONDS = 0.5
SAFETY_MARGIN = 0.1
MAX_EMPTY_POLLS = 20

# Per-thread capacity cost of each operation kind.
DEFAULT_UNIT_COST = 1.75

# Guard against floating-point edge cases when comparing capacity.
EPS = 1e-9
