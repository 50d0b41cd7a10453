"""Shared constants for the change-point model and its sampler."""

# Number of per-individual random effects: intercept, slope, breakpoint.
N_EFFECTS = 3

# Energy error above which a leapfrog step is flagged as divergent.
MAX_DELTA_ENERGY = 1000.0

# Unconstrained initial positions are drawn from Uniform(-INIT_RADIUS, INIT_RADIUS).
INIT_RADIUS = 2.0
MAX_INIT_ATTEMPTS = 100

# Dual averaging (Hoffman & Gelman 2014, Algorithm 5).
DA_GAMMA = 0.05
DA_T0 = 10.0
DA_KAPPA = 0.75

# Stan-style windowed warmup.
WARMUP_INIT_BUFFER = 75
WARMUP_TERM_BUFFER = 50
WARMUP_BASE_WINDOW = 25
WARMUP_MIN_ADAPT = 20
