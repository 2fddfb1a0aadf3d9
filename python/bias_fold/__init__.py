"""High bias folding for cross-layer equalization of torch models.

After a batch-norm is folded into the layer before it, the part of that
layer's bias a following ReLU would never clip can be pushed into the next
layer's bias, shrinking the range the first layer's bias has to quantize.
"""

from __future__ import annotations

from bias_fold.bn_folding import fold_bn_into_module, fold_conv_bn_weights
from bias_fold.config import HighBiasFoldConfig
from bias_fold.errors import (
    HighBiasFoldError,
    InvalidChannelCountError,
    MissingBufferError,
    ShapeMismatchError,
    UnsupportedLayerError,
)
from bias_fold.high_bias_fold import (
    BNParamsHighBiasFold,
    HighBiasFold,
    LayerParams,
    compute_absorbed_bias,
)
from bias_fold.module_params import bn_params_from_module, layer_params_from_module
from bias_fold.passes import HighBiasFoldPass, find_high_bias_fold_candidates

__all__ = [
    "BNParamsHighBiasFold",
    "HighBiasFold",
    "HighBiasFoldConfig",
    "HighBiasFoldError",
    "HighBiasFoldPass",
    "InvalidChannelCountError",
    "LayerParams",
    "MissingBufferError",
    "ShapeMismatchError",
    "UnsupportedLayerError",
    "bn_params_from_module",
    "compute_absorbed_bias",
    "find_high_bias_fold_candidates",
    "fold_bn_into_module",
    "fold_conv_bn_weights",
    "layer_params_from_module",
]
