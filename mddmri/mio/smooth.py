from __future__ import annotations

from typing import Any, Optional

import numpy as np
from scipy.ndimage import gaussian_filter

from mddmri.core.configuration import mio_opt
from mddmri.core.validation import validate_mask, validate_volume


def mio_smooth_4d(I: Any, filter_sigma: Optional[float] = None, M: Any = None, opt: Any = None) -> np.ndarray:
    """Gaussian-smooth each 3D volume of a 4D array.

    `filter_sigma` is the spatial standard deviation in voxels and defaults to
    ``opt.filter_sigma``; the channel axis is never smoothed. A sigma of zero
    or less returns an unsmoothed float copy. With a mask, voxels outside it
    are zeroed in the output.
    """
    I = validate_volume(I, 'I').astype(np.float64)
    if filter_sigma is None:
        filter_sigma = mio_opt(opt).filter_sigma

    if filter_sigma > 0:
        out = gaussian_filter(I, sigma=(filter_sigma, filter_sigma, filter_sigma, 0), mode='nearest')
    else:
        out = I.copy()

    if M is not None:
        M = validate_mask(M, I.shape[:3], 'M')
        out[~(M > 0)] = 0
    return out
