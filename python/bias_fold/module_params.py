"""Build high bias fold parameter structs from torch.nn modules.

The returned tensors alias the module's parameters, so folding through them
updates the module directly.
"""

from __future__ import annotations

import torch
import torch.nn as nn

from bias_fold.errors import UnsupportedLayerError
from bias_fold.high_bias_fold import BNParamsHighBiasFold, LayerParams


def ensure_bias(module: nn.Module) -> torch.Tensor:
    """Return module.bias, registering a zero bias parameter if it is None."""
    if module.bias is None:
        w = module.weight
        module.bias = nn.Parameter(
            torch.zeros(w.shape[0], device=w.device, dtype=w.dtype),
            requires_grad=w.requires_grad,
        )
    return module.bias


def layer_params_from_module(module: nn.Module, activation_is_relu: bool = False) -> LayerParams:
    if not isinstance(module, (nn.Conv2d, nn.Linear)):
        raise UnsupportedLayerError(
            f"high bias fold supports Conv2d and Linear, got {type(module).__name__}"
        )
    if module.weight is None:
        raise UnsupportedLayerError(f"{type(module).__name__} has no weight")

    bias = ensure_bias(module)
    return LayerParams(
        weight_shape=list(module.weight.shape),
        weight=module.weight,
        bias=bias,
        activation_is_relu=activation_is_relu,
    )


def bn_params_from_module(bn: nn.Module) -> BNParamsHighBiasFold:
    """Detached copies of a batch-norm's beta/gamma (1/0 when not affine)."""
    if not isinstance(bn, nn.modules.batchnorm._BatchNorm):
        raise UnsupportedLayerError(f"expected a batch-norm module, got {type(bn).__name__}")

    if bn.affine:
        gamma = bn.weight.detach().clone()
        beta = bn.bias.detach().clone()
    else:
        device = bn.running_mean.device if bn.running_mean is not None else None
        gamma = torch.ones(bn.num_features, device=device)
        beta = torch.zeros(bn.num_features, device=device)
    return BNParamsHighBiasFold(beta=beta, gamma=gamma)
