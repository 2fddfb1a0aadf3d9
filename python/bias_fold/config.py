"""Configuration for high bias folding."""

from __future__ import annotations

import os
from dataclasses import dataclass

# Batch-norm output is modelled as N(beta, gamma^2); values below
# beta - 3|gamma| are treated as never reaching the ReLU.
DEFAULT_NUM_STD = 3.0

NUM_STD_ENV = "BIAS_FOLD_NUM_STD"


@dataclass(frozen=True)
class HighBiasFoldConfig:
    num_std: float = DEFAULT_NUM_STD

    def __post_init__(self):
        if not self.num_std > 0:
            raise ValueError(f"num_std must be positive, got {self.num_std}")

    @classmethod
    def from_env(cls) -> "HighBiasFoldConfig":
        """Build a config, honouring BIAS_FOLD_NUM_STD if it is set."""
        v = os.environ.get(NUM_STD_ENV)
        if v is None or v.strip() == "":
            return cls()
        try:
            num_std = float(v)
        except ValueError:
            raise ValueError(f"{NUM_STD_ENV} must be a float, got {v!r}") from None
        return cls(num_std=num_std)
