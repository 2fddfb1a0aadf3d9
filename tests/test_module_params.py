import pytest
import torch
import torch.nn as nn

from bias_fold import (
    BNParamsHighBiasFold,
    HighBiasFold,
    UnsupportedLayerError,
    bn_params_from_module,
    layer_params_from_module,
)


def test_conv_params_alias_module_storage():
    conv = nn.Conv2d(3, 4, 3)
    params = layer_params_from_module(conv, activation_is_relu=True)

    assert params.weight_shape == [4, 3, 3, 3]
    assert params.weight is conv.weight
    assert params.bias is conv.bias
    assert params.activation_is_relu


def test_missing_bias_is_created_as_zeros():
    linear = nn.Linear(3, 5, bias=False)
    params = layer_params_from_module(linear)

    assert isinstance(linear.bias, nn.Parameter)
    assert torch.equal(linear.bias, torch.zeros(5))
    assert params.bias is linear.bias
    assert params.weight_shape == [5, 3]


def test_update_bias_mutates_modules():
    prev = nn.Linear(2, 3)
    curr = nn.Linear(3, 1, bias=False)
    with torch.no_grad():
        prev.bias.fill_(5.0)
        curr.weight.fill_(1.0)

    bn = BNParamsHighBiasFold(beta=torch.full((3,), 5.0), gamma=torch.ones(3))
    HighBiasFold.update_bias(
        layer_params_from_module(prev, activation_is_relu=True),
        layer_params_from_module(curr),
        bn,
    )

    assert torch.allclose(prev.bias, torch.full((3,), 3.0))
    assert torch.allclose(curr.bias, torch.tensor([6.0]))


def test_unsupported_module():
    with pytest.raises(UnsupportedLayerError):
        layer_params_from_module(nn.Conv1d(3, 4, 3))


def test_bn_params_are_detached_copies():
    bn = nn.BatchNorm2d(4)
    with torch.no_grad():
        bn.weight.fill_(2.0)
        bn.bias.fill_(-1.0)

    params = bn_params_from_module(bn)
    with torch.no_grad():
        bn.bias.fill_(7.0)

    assert torch.equal(params.gamma, torch.full((4,), 2.0))
    assert torch.equal(params.beta, torch.full((4,), -1.0))
    assert not params.beta.requires_grad


def test_non_affine_bn_params():
    params = bn_params_from_module(nn.BatchNorm1d(3, affine=False))
    assert torch.equal(params.gamma, torch.ones(3))
    assert torch.equal(params.beta, torch.zeros(3))


def test_bn_params_rejects_non_bn():
    with pytest.raises(UnsupportedLayerError):
        bn_params_from_module(nn.LayerNorm(4))
