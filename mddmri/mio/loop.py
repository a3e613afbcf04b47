"""Masked voxel loop.

Applies a per-voxel fitting function to every masked, non-zero voxel of a 4D
volume (x, y, z, signal) and assembles the returned parameter vectors into a
4D parameter volume (x, y, z, n_param). The public entrypoints are
`volume_loop(...)` and `VolumeLoopExecutor`.

Two dispatch strategies are available and produce identical output:

- batched (``do_new_parfor=True``): masked voxels are gathered into a dense
  working set, split into one contiguous block per worker and scattered back
  by linear index afterwards. Supplementary data is not passed on this path.
- row-wise (``do_new_parfor=False``): the volume is walked z / y / x and the
  voxels of each active row are fitted in-process or spread over the pool.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Any, Callable, List, Optional, Sequence, Tuple

import numpy as np

from mddmri.core.configuration import mio_opt
from mddmri.core.logfmt import DETAIL, log_banner
from mddmri.core.parallel import current_pool, resolve_worker_count
from mddmri.core.progress import LoopProgress
from mddmri.core.validation import (
    DataError,
    InvalidArgumentError,
    require,
    validate_mask,
    validate_supplement,
    validate_volume,
)


def center_index(shape: Sequence[int]) -> Tuple[int, int, int]:
    """Index of the voxel nearest the volume centre.

    Uses round(dim / 2) with halves rounded up, taken as a 1-based position.
    """
    return tuple(max(int(math.floor(d / 2.0 + 0.5)) - 1, 0) for d in shape[:3])


class _VoxelFit:
    """Picklable wrapper around the user fit function."""

    def __init__(self, fun: Callable, n_param: Optional[int] = None) -> None:
        self.fun = fun
        self.n_param = n_param

    def __call__(self, args: Tuple[np.ndarray, Optional[np.ndarray]]) -> np.ndarray:
        signal, sup = args
        signal = np.asarray(signal, dtype=np.float64)
        if sup is None:
            out = self.fun(signal)
        else:
            out = self.fun(signal, sup)

        out = np.asarray(out, dtype=np.float64).ravel()
        if self.n_param is not None and out.size != self.n_param:
            raise DataError(
                f"Fit function returned {out.size} parameters; expected {self.n_param} "
                f"(as determined from the centre voxel)"
            )
        return out

    def fit_block(self, block: np.ndarray) -> np.ndarray:
        # block is (voxels, channels); output is (voxels, n_param)
        out = np.zeros((block.shape[0], self.n_param), dtype=np.float64)
        for k in range(block.shape[0]):
            out[k] = self((block[k], None))
        return out


class VolumeLoopExecutor:
    """Runs a fit function over every masked voxel of a 4D volume.

    Parameters
    ----------
    opt:
        Options bag (see `mddmri.core.configuration.mio_opt`). Recognised
        fields: ``no_parfor``, ``verbose``, ``do_new_parfor``, ``n_workers``.
    pool:
        Worker pool to dispatch to. Defaults to the active pool registered
        with `mddmri.core.parallel.start_pool`, if any.
    """

    def __init__(self, opt: Any = None, pool: Any = None) -> None:
        self.opt = mio_opt(opt)
        self.pool = pool

    def _worker_count(self, pool: Any) -> int:
        n_workers = resolve_worker_count(pool, self.opt.no_parfor)
        if self.opt.n_workers is not None:
            n_workers = min(n_workers, self.opt.n_workers)
        return n_workers

    def run(self, fun: Callable = None, I: Any = None, M: Any = None, S: Any = None) -> np.ndarray:
        require(fun=fun, I=I, M=M)
        I = validate_volume(I, 'I')
        M = validate_mask(M, I.shape[:3], 'M')
        S = validate_supplement(S, I.shape[:3], 'S')

        pool = self.pool if self.pool is not None else current_pool()
        n_workers = self._worker_count(pool)

        # Size the output by fitting once to the centre voxel
        c = center_index(I.shape)
        probe = _VoxelFit(fun)((I[c], None if S is None else S[c]))
        n_param = int(probe.size)
        if n_param == 0:
            raise InvalidArgumentError(
                f"Fit function returned an empty parameter vector for the centre voxel {c}"
            )
        fit = _VoxelFit(fun, n_param)

        if self.opt.verbose:
            log_banner('Voxel Loop')
        if self.opt.diagnostics_enabled:
            logging.debug(
                f"Diagnostics: volume={I.shape}, masked={int(np.count_nonzero(M > 0))}, "
                f"centre={c}, n_param={n_param}, workers={n_workers}, "
                f"strategy={'batched' if self.opt.do_new_parfor else 'rows'}"
            )

        start = time.time()
        if self.opt.do_new_parfor:
            p = self._run_batched(fit, I, M, S, n_workers, pool)
        else:
            p = self._run_rows(fit, I, M, S, n_workers, pool)

        logging.getLogger().log(
            DETAIL,
            f"Voxel loop complete in {time.time() - start:.4f} seconds "
            f"(workers={n_workers}, n_param={n_param})",
        )
        return p

    __call__ = run

    def _run_batched(self, fit: _VoxelFit, I: np.ndarray, M: np.ndarray, S: Optional[np.ndarray],
                     n_workers: int, pool: Any) -> np.ndarray:
        if S is not None:
            logging.warning(
                "Supplementary data is not passed to the fit function in batched mode "
                "(do_new_parfor); fitting with the signal only"
            )

        siz = I.shape
        n_vox = siz[0] * siz[1] * siz[2]

        # Collapse (x, y, z) into one voxel axis, x varying fastest
        I1 = I.reshape((n_vox, siz[3]), order='F')
        M1 = M.reshape(n_vox, order='F')

        si = np.flatnonzero((M1 > 0) & ~np.all(I1 == 0, axis=1))
        I2 = I1[si]

        d = int(math.ceil(si.size / n_workers))
        blocks = [I2[w * d:min((w + 1) * d, si.size)] for w in range(n_workers)]

        with LoopProgress(len(blocks), 'Voxel blocks', verbose=self.opt.verbose) as progress:
            progress.start(f"Starting the batched loop. Voxels = {si.size}, Workers = {n_workers}, Block size = {d}")
            if n_workers == 1:
                out_blocks: List[np.ndarray] = []
                for block in blocks:
                    out_blocks.append(fit.fit_block(block))
                    progress.advance()
            else:
                out_blocks = pool.map(fit.fit_block, blocks)
                progress.advance(len(blocks))

        I3 = np.concatenate(out_blocks, axis=0)

        # Revert mask subsampling, then the voxel-axis collapse
        I4 = np.zeros((n_vox, fit.n_param), dtype=np.float64)
        I4[si] = I3
        return I4.reshape(siz[:3] + (fit.n_param,), order='F')

    def _run_rows(self, fit: _VoxelFit, I: np.ndarray, M: np.ndarray, S: Optional[np.ndarray],
                  n_workers: int, pool: Any) -> np.ndarray:
        nx, ny, nz = I.shape[:3]
        p = np.zeros((nx, ny, nz, fit.n_param), dtype=np.float64)

        def sup(i: int, j: int, k: int) -> Optional[np.ndarray]:
            return None if S is None else S[i, j, k, :]

        with LoopProgress(ny * nz, 'Voxel rows', verbose=self.opt.verbose) as progress:
            progress.start(f"Starting the loop. Workers = {n_workers}")
            for k in range(nz):
                for j in range(ny):
                    row_active = bool(np.any(M[:, j, k] > 0))
                    if row_active:
                        xs = [i for i in range(nx)
                              if M[i, j, k] > 0 and not np.all(I[i, j, k, :] == 0)]
                        if n_workers == 1:
                            for i in xs:
                                p[i, j, k, :] = fit((I[i, j, k, :], sup(i, j, k)))
                        elif xs:
                            results = pool.map(fit, [(I[i, j, k, :], sup(i, j, k)) for i in xs])
                            for i, out in zip(xs, results):
                                p[i, j, k, :] = out
                    progress.row_done(j, row_active)
                progress.slice_done(k)

        return p


def volume_loop(fun: Callable = None, I: Any = None, M: Any = None, opt: Any = None, S: Any = None,
                *, pool: Any = None) -> np.ndarray:
    """Apply `fun` to every voxel where `M` is positive and the signal is not all zero.

    Parameters
    ----------
    fun:
        Fit function taking the voxel signal vector (and the supplementary
        vector when `S` is given) and returning a parameter vector whose length
        is the same for every voxel.
    I:
        4D signal volume (x, y, z, channels).
    M:
        3D mask with the spatial extents of `I`.
    opt:
        Options bag; see `VolumeLoopExecutor`.
    S:
        Optional 4D supplementary data, co-registered with `I`.
    pool:
        Optional worker pool; defaults to the active pool.

    Returns
    -------
    np.ndarray
        Parameter volume (x, y, z, n_param); skipped voxels are zero.
    """
    return VolumeLoopExecutor(opt, pool=pool).run(fun, I, M, S)
