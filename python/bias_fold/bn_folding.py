"""Fold an inference BatchNorm into the Conv2d/Linear that feeds it.

  BN(z) = (z - mean) * gamma / sqrt(var + eps) + beta

is affine per output channel, so with s = gamma / sqrt(var + eps):

  W' = W * s    (along the output-channel dim)
  b' = (b - mean) * s + beta

The BN's own gamma/beta are handed back; they describe the folded layer's
output distribution and drive the high bias fold that follows.
"""

from __future__ import annotations

import logging

import torch
import torch.nn as nn

from bias_fold.errors import InvalidChannelCountError, UnsupportedLayerError
from bias_fold.high_bias_fold import BNParamsHighBiasFold
from bias_fold.module_params import bn_params_from_module, ensure_bias

logger = logging.getLogger(__name__)


def _f32(t: torch.Tensor | None, like: torch.Tensor, fill: float) -> torch.Tensor:
    if t is None:
        return torch.full_like(like, fill, dtype=torch.float32)
    return t.detach().to(dtype=torch.float32)


def fold_conv_bn_weights(
    conv_w: torch.Tensor,
    conv_b: torch.Tensor | None,
    bn_weight: torch.Tensor | None,
    bn_bias: torch.Tensor | None,
    running_mean: torch.Tensor,
    running_var: torch.Tensor,
    eps: float,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Return float32 (W', b') for a layer followed by an eval BN.

    `conv_w` is [out, in/groups, kH, kW] or [out, in]; every other tensor has
    `out` elements. Missing bias/gamma/beta count as 0/1/0.
    """
    mean = running_mean.detach().to(dtype=torch.float32)
    scale = _f32(bn_weight, mean, 1.0) * torch.rsqrt(running_var.detach().to(dtype=torch.float32) + eps)

    w = conv_w.detach().to(dtype=torch.float32)
    w_fold = w * scale.reshape(-1, *([1] * (w.dim() - 1)))
    b_fold = (_f32(conv_b, mean, 0.0) - mean) * scale + _f32(bn_bias, mean, 0.0)
    return w_fold, b_fold


def check_bn_foldable(module: nn.Module, bn: nn.Module) -> None:
    """Raise if `bn` cannot be folded into `module`. Touches nothing."""
    if not isinstance(module, (nn.Conv2d, nn.Linear)):
        raise UnsupportedLayerError(f"cannot fold batch-norm into {type(module).__name__}")
    if not isinstance(bn, nn.modules.batchnorm._BatchNorm):
        raise UnsupportedLayerError(f"expected a batch-norm module, got {type(bn).__name__}")
    if bn.training:
        raise UnsupportedLayerError("only eval-mode batch-norm can be folded")
    if bn.running_mean is None or bn.running_var is None:
        raise UnsupportedLayerError("batch-norm has no running statistics to fold")

    out_channels = module.weight.shape[0]
    if bn.num_features != out_channels:
        raise InvalidChannelCountError(
            f"batch-norm has {bn.num_features} features, "
            f"{type(module).__name__} has {out_channels} output channels"
        )


def fold_bn_into_module(module: nn.Module, bn: nn.Module) -> BNParamsHighBiasFold:
    """Fold `bn` into `module` in place and return the BN's beta/gamma.

    `module` gains a bias parameter if it had none. `bn` itself is left
    untouched; the caller decides whether to drop it from the model.
    """
    check_bn_foldable(module, bn)

    # Detached copies, still valid once the caller drops bn.
    bn_params = bn_params_from_module(bn)

    bias = ensure_bias(module)
    w_fold, b_fold = fold_conv_bn_weights(
        conv_w=module.weight,
        conv_b=bias,
        bn_weight=bn.weight,
        bn_bias=bn.bias,
        running_mean=bn.running_mean,
        running_var=bn.running_var,
        eps=bn.eps,
    )

    with torch.no_grad():
        module.weight.copy_(w_fold)
        bias.copy_(b_fold)

    logger.debug(
        "folded %s into %s (%d channels)", type(bn).__name__, type(module).__name__, module.weight.shape[0]
    )
    return bn_params
