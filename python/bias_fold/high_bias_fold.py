"""High bias folding between two adjacent weighted layers.

After batch-norm folding, a layer's bias carries the BN shift `beta`. When the
layer is followed by a ReLU, the part of that bias below which the activation
is (statistically) never clipped can be moved out of the layer and pushed
through the next layer's weights instead:

  absorbed[c] = max(0, beta[c] - k * |gamma[c]|)      (ReLU)
  absorbed[c] = beta[c] - k * |gamma[c]|              (no activation)

  prev_bias[c] -= absorbed[c]
  curr_bias[o] += sum_c sum_{h,w} curr_w[o, c, h, w] * absorbed[c]

Shapes:
  prev weight: [out, in, kH, kW] (or [out, in] for linear)
  curr weight: [curr_out, out, kH, kW] (or [curr_out, out])
  beta/gamma/prev bias: [out]
  curr bias: [curr_out]

The BN output is modelled as N(beta, gamma^2), so its standard deviation is
|gamma|. For negative gamma this threshold is therefore larger than the plain
`beta - k * gamma`; for gamma >= 0 the two agree.

The following layer must not zero-pad its input: padded borders do not see the
absorbed shift. Replicate, reflect and circular padding copy shifted values
and are fine.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Sequence

import torch

from bias_fold.config import DEFAULT_NUM_STD, HighBiasFoldConfig
from bias_fold.errors import (
    InvalidChannelCountError,
    MissingBufferError,
    ShapeMismatchError,
)

logger = logging.getLogger(__name__)


@dataclass
class LayerParams:
    """A weighted layer's parameters.

    `weight` is read only. `bias` is updated in place, so it must be the
    caller's tensor (or a view of it), not a copy.
    """

    weight_shape: Sequence[int]
    weight: Optional[torch.Tensor]
    bias: Optional[torch.Tensor]
    activation_is_relu: bool = False


@dataclass
class BNParamsHighBiasFold:
    """Batch-norm shift (beta) and scale (gamma) of the preceding layer."""

    beta: Optional[torch.Tensor]
    gamma: Optional[torch.Tensor]


def _kernel_shape(weight_shape: Sequence[int], what: str) -> tuple[int, int, int, int]:
    dims = tuple(int(d) for d in weight_shape)
    if len(dims) == 2:
        dims = dims + (1, 1)
    elif len(dims) != 4:
        raise ShapeMismatchError(
            f"{what} weight_shape must have 2 or 4 dims, got {list(weight_shape)}"
        )
    if dims[0] <= 0:
        raise InvalidChannelCountError(f"{what} has {dims[0]} output channels")
    if any(d <= 0 for d in dims[1:]):
        raise ShapeMismatchError(f"{what} weight_shape has a non-positive dim: {list(weight_shape)}")
    return dims


def _check_weight(params: LayerParams, what: str) -> tuple[int, int, int, int]:
    shape = _kernel_shape(params.weight_shape, what)
    if params.weight is None:
        raise MissingBufferError(f"{what} weight is None")
    if params.weight.numel() != math.prod(shape):
        raise ShapeMismatchError(
            f"{what} weight has {params.weight.numel()} elements, "
            f"weight_shape {list(params.weight_shape)} needs {math.prod(shape)}"
        )
    return shape


def _check_bias(bias: Optional[torch.Tensor], n: int, what: str, err: type) -> None:
    if bias is None:
        raise MissingBufferError(f"{what} bias is None")
    if not isinstance(bias, torch.Tensor):
        raise TypeError(f"{what} bias must be a torch.Tensor, got {type(bias)}")
    if bias.numel() != n:
        raise err(f"{what} bias has {bias.numel()} elements, expected {n}")


def _check_bn(bn: BNParamsHighBiasFold, n: int) -> None:
    for name in ("beta", "gamma"):
        t = getattr(bn, name)
        if t is None:
            raise MissingBufferError(f"batch-norm {name} is None")
        if t.numel() != n:
            raise InvalidChannelCountError(
                f"batch-norm {name} has {t.numel()} elements, expected {n}"
            )


def compute_absorbed_bias(
    bn_params: BNParamsHighBiasFold,
    activation_is_relu: bool,
    *,
    num_std: float = DEFAULT_NUM_STD,
) -> torch.Tensor:
    """Return the per-channel bias to move out of the preceding layer (float32)."""
    num_std = HighBiasFoldConfig(num_std=num_std).num_std
    if bn_params.beta is None or bn_params.gamma is None:
        raise MissingBufferError("batch-norm beta/gamma is None")
    if bn_params.beta.numel() != bn_params.gamma.numel():
        raise InvalidChannelCountError(
            f"beta has {bn_params.beta.numel()} elements, gamma has {bn_params.gamma.numel()}"
        )

    beta = bn_params.beta.detach().reshape(-1).to(dtype=torch.float32)
    gamma = bn_params.gamma.detach().reshape(-1).to(device=beta.device, dtype=torch.float32)

    absorbed = beta - num_std * gamma.abs()
    if activation_is_relu:
        absorbed = torch.clamp(absorbed, min=0.0)
    return absorbed


class HighBiasFold:
    @staticmethod
    def update_bias(
        prev_layer_params: LayerParams,
        curr_layer_params: LayerParams,
        prev_layer_bn_params: BNParamsHighBiasFold,
        *,
        num_std: float = DEFAULT_NUM_STD,
    ) -> None:
        """Move absorbable bias from the previous layer into the current one.

        Both `bias` tensors are updated in place. Every size is checked before
        anything is written. Not idempotent: a second call absorbs again.
        """
        num_std = HighBiasFoldConfig(num_std=num_std).num_std
        prev_shape = _check_weight(prev_layer_params, "previous layer")
        curr_shape = _check_weight(curr_layer_params, "current layer")
        channels = prev_shape[0]

        _check_bias(prev_layer_params.bias, channels, "previous layer", InvalidChannelCountError)
        _check_bn(prev_layer_bn_params, channels)
        if curr_shape[1] != channels:
            raise ShapeMismatchError(
                f"current layer expects {curr_shape[1]} input channels, "
                f"previous layer produces {channels}"
            )
        _check_bias(curr_layer_params.bias, curr_shape[0], "current layer", ShapeMismatchError)

        prev_bias = prev_layer_params.bias
        curr_bias = curr_layer_params.bias

        with torch.no_grad():
            absorbed = compute_absorbed_bias(
                prev_layer_bn_params,
                prev_layer_params.activation_is_relu,
                num_std=num_std,
            )

            w = curr_layer_params.weight.detach().reshape(curr_shape)
            w = w.to(device=absorbed.device, dtype=torch.float32)
            # [curr_out, out, kH, kW] -> [curr_out, out]
            correction = w.sum(dim=(2, 3)) @ absorbed

            prev_bias.sub_(absorbed.to(device=prev_bias.device, dtype=prev_bias.dtype).reshape(prev_bias.shape))
            curr_bias.add_(correction.to(device=curr_bias.device, dtype=curr_bias.dtype).reshape(curr_bias.shape))

        logger.debug(
            "high bias fold: %d -> %d channels, relu=%s, absorbed L1=%.6g",
            channels,
            curr_shape[0],
            prev_layer_params.activation_is_relu,
            float(absorbed.abs().sum()),
        )
