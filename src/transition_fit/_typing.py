"""Shared type aliases for the transition_fit package."""

import numpy as np

# Scalar-or-array inputs accepted by the curve library.
ArrayOrScalar = float | np.ndarray
