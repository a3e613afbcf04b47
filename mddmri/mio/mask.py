from __future__ import annotations

from typing import Any, Optional

import numpy as np
from dipy.segment.mask import median_otsu

from mddmri.core.configuration import mio_opt
from mddmri.core.validation import validate_volume


def non_trivial_signal_mask(I: Any) -> np.ndarray:
    """3D mask selecting voxels with any nonzero signal."""
    I = validate_volume(I, 'I')
    return ~(I == 0).all(axis=3)


def mio_mask_thresh(I: Any, opt: Any = None) -> np.ndarray:
    """Threshold mask on the channel-mean signal.

    A voxel is kept when its mean signal exceeds ``opt.mask_thresh`` times the
    largest mean signal in the volume and its signal is not identically zero.
    """
    opt = mio_opt(opt)
    I = validate_volume(I, 'I')

    I_mean = np.nanmean(I.astype(np.float64), axis=3)
    I_max = np.nanmax(I_mean)
    mask = I_mean > opt.mask_thresh * I_max
    return np.logical_and(mask, non_trivial_signal_mask(I))


def mio_mask_auto(I: Any, median_radius: int = 4, numpass: int = 4,
                  dilate: Optional[int] = None) -> np.ndarray:
    """Median-Otsu brain mask over all channels, restricted to non-trivial signal."""
    I = validate_volume(I, 'I')
    _, mask = median_otsu(
        I,
        median_radius=median_radius,
        numpass=numpass,
        vol_idx=np.arange(I.shape[3]),
        dilate=dilate,
    )
    return np.logical_and(mask, non_trivial_signal_mask(I))
