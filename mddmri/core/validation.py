"""Validation helpers and shared exceptions."""

from __future__ import annotations

from typing import Any, Optional

import numpy as np


class MDdMRIError(Exception):
    """Base class for all mddmri errors."""


class ConfigurationError(MDdMRIError):
    """Custom exception for configuration validation errors."""


class DataError(MDdMRIError):
    """Raised when input data or fit output is invalid or corrupted."""


class MissingArgumentError(MDdMRIError, ValueError):
    """Raised when a required input (fit function, volume, mask) is absent."""


class InvalidArgumentError(MDdMRIError, ValueError):
    """Raised when an input is present but unusable (empty, wrong rank)."""


class ShapeMismatchError(MDdMRIError, ValueError):
    """Raised when co-registered arrays disagree in their spatial extents."""


def require(**inputs: Any) -> None:
    """Raise MissingArgumentError naming every input that is None."""

    missing = [name for name, value in inputs.items() if value is None]
    if missing:
        raise MissingArgumentError(
            f"All inputs required; missing: {', '.join(missing)}"
        )


def validate_volume(I: Any, name: str = "I") -> np.ndarray:
    """Return I as an ndarray after checking it is a non-empty 4D volume."""

    arr = np.asarray(I)
    if arr.ndim != 4:
        raise InvalidArgumentError(
            f"{name} must be a 4D array (x, y, z, channels); got {arr.ndim}D with shape {arr.shape}"
        )
    if arr.size == 0:
        raise InvalidArgumentError(f"{name} cannot be empty (shape {arr.shape})")
    return arr


def validate_mask(M: Any, spatial_shape: tuple, name: str = "M") -> np.ndarray:
    """Return M as an ndarray after checking it matches the volume's spatial extents."""

    arr = np.asarray(M)
    if arr.ndim != 3 or tuple(arr.shape) != tuple(spatial_shape):
        raise ShapeMismatchError(
            f"{name} must be 3D with spatial extents {tuple(spatial_shape)}; got shape {arr.shape}"
        )
    return arr


def validate_supplement(S: Any, spatial_shape: tuple, name: str = "S") -> Optional[np.ndarray]:
    """Validate the optional supplementary volume.

    Returns None when S is absent. An empty S is rejected, and S must be 4D with
    the same first three dimensions as the signal volume.
    """

    if S is None:
        return None

    arr = np.asarray(S)
    if arr.size == 0:
        raise InvalidArgumentError(f"{name} cannot be empty if provided")
    if arr.ndim != 4:
        raise InvalidArgumentError(
            f"{name} must be a 4D array (x, y, z, channels); got {arr.ndim}D with shape {arr.shape}"
        )
    if tuple(arr.shape[:3]) != tuple(spatial_shape):
        raise ShapeMismatchError(
            f"{name} and I must be of equal spatial size: {tuple(arr.shape[:3])} != {tuple(spatial_shape)}"
        )
    return arr
