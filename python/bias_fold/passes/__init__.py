"""Model-level passes for bias_fold."""

from .high_bias_fold_pass import (
    HighBiasFoldCandidate,
    HighBiasFoldPass,
    HighBiasFoldResult,
    find_high_bias_fold_candidates,
)

__all__ = [
    "HighBiasFoldCandidate",
    "HighBiasFoldPass",
    "HighBiasFoldResult",
    "find_high_bias_fold_candidates",
]
