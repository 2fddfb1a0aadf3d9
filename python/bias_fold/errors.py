"""Exceptions raised by bias_fold.

All validation happens before any tensor is written, so a raised error means
the caller's buffers are untouched.
"""

from __future__ import annotations


class HighBiasFoldError(ValueError):
    """Base class for all bias_fold validation errors."""


class MissingBufferError(HighBiasFoldError):
    """A required weight/bias/beta/gamma tensor is None."""


class ShapeMismatchError(HighBiasFoldError):
    """Tensor sizes disagree with the declared shapes or with the adjacent layer."""


class InvalidChannelCountError(HighBiasFoldError):
    """Per-channel buffers disagree with the layer's output-channel count."""


class UnsupportedLayerError(HighBiasFoldError):
    """The module (or its mode) cannot take part in folding."""
