"""MDdMRIpy public package.

Voxel-wise analysis tools for multidimensional diffusion MRI. The central
piece is the masked voxel loop in `mddmri.mio.loop`.
"""

from __future__ import annotations

from ._version import __version__

__all__ = ["__version__"]
