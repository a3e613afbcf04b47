"""Volume input/output-side helpers: the masked voxel loop, masking and smoothing.

Main entry points
-----------------
volume_loop : apply a per-voxel fit function over a masked 4D volume
VolumeLoopExecutor : the same, with options and worker pool bound up front
mio_mask_thresh / mio_mask_auto : build a 3D mask from a 4D volume
mio_smooth_4d : spatial Gaussian smoothing of a 4D volume
"""

from __future__ import annotations

from .mask import mio_mask_auto, mio_mask_thresh, non_trivial_signal_mask
from .smooth import mio_smooth_4d
from .loop import VolumeLoopExecutor, volume_loop

__all__ = [
    "VolumeLoopExecutor",
    "volume_loop",
    "mio_mask_auto",
    "mio_mask_thresh",
    "non_trivial_signal_mask",
    "mio_smooth_4d",
]
