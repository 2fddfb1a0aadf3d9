"""High bias fold pass over an nn.Module.

Detects chains in the symbolically traced model:

  Conv2d -> BatchNorm -> [ReLU] -> Conv2d(groups=1, no zero padding)
  Linear -> BatchNorm -> [ReLU] -> Linear

where every intermediate value has a single user. A zero-padded following
conv is skipped: its border outputs see only part of the absorbed shift.

For each chain the pass:
  1) folds the BN into the preceding layer (weights + bias, in place)
  2) replaces the BN submodule with nn.Identity
  3) moves absorbable bias from the preceding layer into the following one

Every chain is validated before anything is written, then all BNs are folded
before any bias is moved. Each move preserves the function of the layer pair,
so a following layer that also starts a later chain keeps the output
distribution described by its own BN beta/gamma.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import torch
import torch.fx
import torch.nn as nn
import torch.nn.functional as F

from bias_fold.bn_folding import check_bn_foldable, fold_bn_into_module
from bias_fold.config import HighBiasFoldConfig
from bias_fold.errors import ShapeMismatchError, UnsupportedLayerError
from bias_fold.high_bias_fold import (
    BNParamsHighBiasFold,
    HighBiasFold,
    compute_absorbed_bias,
)
from bias_fold.module_params import layer_params_from_module

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HighBiasFoldCandidate:
    prev_name: str
    bn_name: str
    curr_name: str
    activation_is_relu: bool


@dataclass(frozen=True)
class HighBiasFoldResult:
    candidates: list[HighBiasFoldCandidate]
    # prev_name -> per-channel bias moved out of that layer
    absorbed: Dict[str, torch.Tensor] = field(default_factory=dict)

    @property
    def num_candidates(self) -> int:
        return len(self.candidates)


_RELU_FUNCTIONS = (F.relu, torch.relu)


def _sole_user(n: torch.fx.Node) -> Optional[torch.fx.Node]:
    if len(n.users) != 1:
        return None
    return next(iter(n.users))


def _is_relu(n: torch.fx.Node, modules: Dict[str, nn.Module]) -> bool:
    if n.op == "call_module":
        return isinstance(modules.get(n.target), nn.ReLU)
    if n.op == "call_function":
        return n.target in _RELU_FUNCTIONS
    if n.op == "call_method":
        return n.target in ("relu", "relu_")
    return False


def _is_prev_layer(m: Optional[nn.Module]) -> bool:
    return isinstance(m, (nn.Conv2d, nn.Linear))


def _zero_padded(conv: nn.Conv2d) -> bool:
    if conv.padding_mode != "zeros":
        return False
    if isinstance(conv.padding, str):
        # "same" pads unless every kernel dim is 1
        return conv.padding == "same" and any(k != 1 for k in conv.kernel_size)
    return any(p != 0 for p in conv.padding)


def _is_curr_layer(prev: nn.Module, m: Optional[nn.Module]) -> bool:
    if isinstance(prev, nn.Conv2d):
        return isinstance(m, nn.Conv2d) and m.groups == 1 and not _zero_padded(m)
    # Linear on a 4-D activation would act on the width axis, not channels
    return isinstance(m, nn.Linear)


def find_high_bias_fold_candidates(model: nn.Module) -> list[HighBiasFoldCandidate]:
    """Trace `model` with torch.fx and return fold candidates in graph order."""

    gm = torch.fx.symbolic_trace(model)
    modules = dict(gm.named_modules())
    nodes = list(gm.graph.nodes)

    # A module called from several places cannot be rewritten per call site.
    call_counts: Dict[str, int] = {}
    for n in nodes:
        if n.op == "call_module":
            call_counts[n.target] = call_counts.get(n.target, 0) + 1

    def module_of(n: torch.fx.Node) -> Optional[nn.Module]:
        if n.op != "call_module" or call_counts.get(n.target, 0) != 1:
            return None
        return modules.get(n.target)

    candidates: list[HighBiasFoldCandidate] = []

    for n in nodes:
        prev = module_of(n)
        if not _is_prev_layer(prev):
            continue

        bn = _sole_user(n)
        if bn is None or not isinstance(module_of(bn), nn.modules.batchnorm._BatchNorm):
            continue

        nxt = _sole_user(bn)
        if nxt is None:
            continue

        relu = _is_relu(nxt, modules)
        if relu:
            nxt = _sole_user(nxt)
            if nxt is None:
                continue

        if not _is_curr_layer(prev, module_of(nxt)):
            continue

        candidates.append(
            HighBiasFoldCandidate(
                prev_name=n.target,
                bn_name=bn.target,
                curr_name=nxt.target,
                activation_is_relu=relu,
            )
        )

    return candidates


def _check_candidate(model: nn.Module, cand: HighBiasFoldCandidate) -> None:
    prev = model.get_submodule(cand.prev_name)
    curr = model.get_submodule(cand.curr_name)
    check_bn_foldable(prev, model.get_submodule(cand.bn_name))
    if curr.weight.shape[1] != prev.weight.shape[0]:
        raise ShapeMismatchError(
            f"{cand.curr_name} expects {curr.weight.shape[1]} input channels, "
            f"{cand.prev_name} produces {prev.weight.shape[0]}"
        )


def _replace_submodule(model: nn.Module, name: str, new: nn.Module) -> None:
    parent_name, _, attr = name.rpartition(".")
    parent = model.get_submodule(parent_name) if parent_name else model
    setattr(parent, attr, new)


class HighBiasFoldPass:
    """Fold batch-norms and redistribute high biases in an eval-mode model."""

    def __init__(self, *, num_std: Optional[float] = None):
        self.num_std = num_std

    def _resolve_num_std(self) -> float:
        if self.num_std is not None:
            return HighBiasFoldConfig(num_std=self.num_std).num_std
        return HighBiasFoldConfig.from_env().num_std

    def run(self, model: nn.Module) -> HighBiasFoldResult:
        """Rewrite `model` in place and return what was folded."""
        if model.training:
            raise UnsupportedLayerError("high bias fold requires a model in eval mode")

        num_std = self._resolve_num_std()
        candidates = find_high_bias_fold_candidates(model)
        if not candidates:
            logger.info("high bias fold: no candidates found")
            return HighBiasFoldResult(candidates=[])

        # Nothing is written until every chain is known to fold.
        for cand in candidates:
            _check_candidate(model, cand)

        # 1) Fold every BN first, keeping its beta/gamma per preceding layer.
        bn_params: Dict[str, BNParamsHighBiasFold] = {}
        for cand in candidates:
            prev = model.get_submodule(cand.prev_name)
            bn = model.get_submodule(cand.bn_name)
            bn_params[cand.prev_name] = fold_bn_into_module(prev, bn)
            _replace_submodule(model, cand.bn_name, nn.Identity())
            logger.debug("folded %s into %s", cand.bn_name, cand.prev_name)

        # 2) Move biases in graph order.
        absorbed: Dict[str, torch.Tensor] = {}
        for cand in candidates:
            prev_params = layer_params_from_module(
                model.get_submodule(cand.prev_name), cand.activation_is_relu
            )
            curr_params = layer_params_from_module(model.get_submodule(cand.curr_name))
            bn = bn_params[cand.prev_name]

            HighBiasFold.update_bias(prev_params, curr_params, bn, num_std=num_std)
            absorbed[cand.prev_name] = compute_absorbed_bias(
                bn, cand.activation_is_relu, num_std=num_std
            )

            logger.debug(
                "%s -> %s: absorbed L1=%.6g (relu=%s)",
                cand.prev_name,
                cand.curr_name,
                float(absorbed[cand.prev_name].abs().sum()),
                cand.activation_is_relu,
            )

        logger.info("high bias fold: folded %d layer pair(s)", len(candidates))
        return HighBiasFoldResult(candidates=candidates, absorbed=absorbed)
