from __future__ import annotations

import logging

import numpy as np
import pytest

from mddmri.core.parallel import WorkerPool, shutdown_pool, start_pool
from mddmri.core.validation import (
    DataError,
    InvalidArgumentError,
    MissingArgumentError,
    ShapeMismatchError,
)
from mddmri.mio import loop as loop_module
from mddmri.mio.loop import VolumeLoopExecutor, center_index, volume_loop


def sum_max(v):
    return [v.sum(), v.max()]


def summary_stats(v):
    return [v.mean(), v.std(), v[0], v[-1]]


def tracer(v):
    return [v[0]]


class RecordingPool:
    """In-process stand-in for a worker pool that counts dispatches."""

    def __init__(self, n_workers: int) -> None:
        self.n_workers = n_workers
        self.calls = 0
        self.items = 0

    def map(self, fn, items):
        items = list(items)
        self.calls += 1
        self.items += len(items)
        return [fn(item) for item in items]


class BrokenPool:
    @property
    def n_workers(self):
        raise RuntimeError("no pool")

    def map(self, fn, items):
        raise AssertionError("map must not be called on an unavailable pool")


@pytest.fixture(autouse=True)
def _no_active_pool():
    shutdown_pool()
    yield
    shutdown_pool()


@pytest.fixture
def random_volume():
    rng = np.random.default_rng(1234)
    I = rng.uniform(0.1, 1.0, size=(5, 6, 4, 7))
    M = rng.uniform(size=(5, 6, 4)) > 0.4
    # a masked voxel with no signal
    M[2, 3, 1] = True
    I[2, 3, 1, :] = 0.0
    # a fully unmasked row
    M[:, 0, 0] = False
    return I, M


def test_center_index_rounds_half_up() -> None:
    assert center_index((2, 2, 2, 3)) == (0, 0, 0)
    assert center_index((3, 3, 3, 1)) == (1, 1, 1)
    assert center_index((1, 5, 4, 2)) == (0, 2, 1)


@pytest.mark.parametrize("do_new_parfor", [False, True])
def test_end_to_end_example(do_new_parfor: bool) -> None:
    I = np.ones((2, 2, 2, 3))
    I[0, 0, 0, :] = 0.0
    M = np.ones((2, 2, 2))

    p = volume_loop(sum_max, I, M, {"do_new_parfor": do_new_parfor})

    assert p.shape == (2, 2, 2, 2)
    expected = np.tile([3.0, 1.0], (2, 2, 2, 1))
    expected[0, 0, 0, :] = 0.0
    np.testing.assert_array_equal(p, expected)


@pytest.mark.parametrize("do_new_parfor", [False, True])
@pytest.mark.parametrize("n_workers", [1, 3])
def test_mask_and_zero_signal_voxels_stay_zero(random_volume, do_new_parfor: bool, n_workers: int) -> None:
    I, M = random_volume
    pool = RecordingPool(n_workers)

    p = volume_loop(summary_stats, I, M, {"do_new_parfor": do_new_parfor}, pool=pool)

    assert p.shape == I.shape[:3] + (4,)
    assert np.all(p[~M] == 0)
    np.testing.assert_array_equal(p[2, 3, 1], np.zeros(4))

    processed = M & ~np.all(I == 0, axis=3)
    for idx in zip(*np.nonzero(processed)):
        np.testing.assert_allclose(p[idx], summary_stats(I[idx]))


def test_strategies_are_equivalent(random_volume) -> None:
    I, M = random_volume
    p_rows = volume_loop(summary_stats, I, M, {"do_new_parfor": False})
    p_batched = volume_loop(summary_stats, I, M, {"do_new_parfor": True})
    np.testing.assert_array_equal(p_rows, p_batched)


@pytest.mark.parametrize("do_new_parfor", [False, True])
def test_worker_count_does_not_change_result(random_volume, do_new_parfor: bool) -> None:
    I, M = random_volume
    reference = volume_loop(summary_stats, I, M, {"do_new_parfor": do_new_parfor, "no_parfor": True})

    for n in range(1, 5):
        with WorkerPool(n_workers=n, backend='threading') as pool:
            p = volume_loop(summary_stats, I, M, {"do_new_parfor": do_new_parfor}, pool=pool)
        np.testing.assert_allclose(p, reference, rtol=0, atol=1e-12)


def test_process_pool_matches_sequential(random_volume) -> None:
    I, M = random_volume
    reference = volume_loop(sum_max, I, M, {"do_new_parfor": True})

    with WorkerPool(n_workers=2, backend='loky') as pool:
        p_batched = volume_loop(sum_max, I, M, {"do_new_parfor": True}, pool=pool)
        p_rows = volume_loop(sum_max, I, M, {"do_new_parfor": False}, pool=pool)

    np.testing.assert_array_equal(p_batched, reference)
    np.testing.assert_array_equal(p_rows, reference)


@pytest.mark.parametrize("n_workers", [1, 2, 4])
def test_batched_scatter_preserves_linear_index(n_workers: int) -> None:
    shape = (3, 3, 3)
    lin = np.arange(27, dtype=float).reshape(shape, order='F')
    I = np.ones(shape + (2,))
    I[..., 0] = lin

    M = np.zeros(shape, dtype=bool)
    for idx in (0, 5, 9):
        M[np.unravel_index(idx, shape, order='F')] = True

    pool = RecordingPool(n_workers)
    p = volume_loop(tracer, I, M, {"do_new_parfor": True}, pool=pool)

    np.testing.assert_array_equal(p[..., 0], np.where(M, lin, 0.0))
    if n_workers > 1:
        assert pool.calls == 1
        assert pool.items == n_workers


def test_batched_with_empty_mask_returns_zeros() -> None:
    I = np.ones((2, 3, 2, 2))
    M = np.zeros((2, 3, 2))
    p = volume_loop(sum_max, I, M, {"do_new_parfor": True}, pool=RecordingPool(3))
    assert p.shape == (2, 3, 2, 2)
    assert not p.any()


@pytest.mark.parametrize("do_new_parfor", [False, True])
def test_parameter_count_probed_from_masked_center(do_new_parfor: bool) -> None:
    I = np.ones((3, 3, 3, 2))
    M = np.ones((3, 3, 3), dtype=bool)
    M[1, 1, 1] = False
    I[1, 1, 1, :] = 0.0

    p = volume_loop(lambda v: np.arange(5) + v[0], I, M, {"do_new_parfor": do_new_parfor})

    assert p.shape == (3, 3, 3, 5)
    np.testing.assert_array_equal(p[1, 1, 1], np.zeros(5))
    np.testing.assert_array_equal(p[0, 0, 0], np.arange(5) + 1.0)


def test_supplement_passed_in_row_mode() -> None:
    rng = np.random.default_rng(7)
    I = rng.uniform(0.5, 1.0, size=(4, 3, 2, 3))
    S = rng.uniform(size=(4, 3, 2, 2))
    M = np.ones((4, 3, 2))
    M[0, :, :] = 0

    def fun(v, s):
        return [v.sum(), s.sum()]

    pool = RecordingPool(2)
    p = volume_loop(fun, I, M, {"do_new_parfor": False}, S=S, pool=pool)

    np.testing.assert_allclose(p[..., 0], np.where(M > 0, I.sum(axis=3), 0.0))
    np.testing.assert_allclose(p[..., 1], np.where(M > 0, S.sum(axis=3), 0.0))
    assert pool.calls == 3 * 2


def test_supplement_ignored_in_batched_mode(caplog) -> None:
    I = np.full((2, 2, 1, 3), 2.0)
    S = np.full((2, 2, 1, 1), 10.0)
    M = np.ones((2, 2, 1))
    received = []

    def fun(v, s=None):
        received.append(s is not None)
        return [v.sum()]

    with caplog.at_level(logging.WARNING):
        p = volume_loop(fun, I, M, {"do_new_parfor": True}, S=S)

    np.testing.assert_array_equal(p[..., 0], np.full((2, 2, 1), 6.0))
    # the centre probe sees the supplement, the batched fits do not
    assert received[0] is True
    assert not any(received[1:])
    assert "Supplementary data is not passed" in caplog.text


def test_supplement_shape_mismatch_rejected_before_fitting() -> None:
    calls = []

    def fun(v, s=None):
        calls.append(1)
        return [0.0]

    I = np.ones((2, 2, 2, 3))
    M = np.ones((2, 2, 2))
    with pytest.raises(ShapeMismatchError):
        volume_loop(fun, I, M, S=np.ones((3, 2, 2, 1)))
    assert calls == []


def test_empty_supplement_rejected() -> None:
    I = np.ones((2, 2, 2, 3))
    M = np.ones((2, 2, 2))
    with pytest.raises(InvalidArgumentError):
        volume_loop(sum_max, I, M, S=np.zeros((0,)))


def test_missing_arguments_rejected() -> None:
    I = np.ones((2, 2, 2, 3))
    M = np.ones((2, 2, 2))
    with pytest.raises(MissingArgumentError):
        volume_loop(None, I, M)
    with pytest.raises(MissingArgumentError):
        volume_loop(sum_max, None, M)
    with pytest.raises(MissingArgumentError):
        volume_loop(sum_max, I)
    with pytest.raises(ValueError):
        VolumeLoopExecutor().run(sum_max)


def test_volume_and_mask_shapes_validated() -> None:
    with pytest.raises(InvalidArgumentError):
        volume_loop(sum_max, np.ones((2, 2, 3)), np.ones((2, 2)))
    with pytest.raises(InvalidArgumentError):
        volume_loop(sum_max, np.ones((2, 0, 2, 3)), np.ones((2, 0, 2)))
    with pytest.raises(ShapeMismatchError):
        volume_loop(sum_max, np.ones((2, 2, 2, 3)), np.ones((2, 2, 3)))


def test_empty_probe_output_rejected() -> None:
    with pytest.raises(InvalidArgumentError):
        volume_loop(lambda v: [], np.ones((2, 2, 2, 1)), np.ones((2, 2, 2)))


def test_changing_output_length_raises() -> None:
    I = np.arange(1.0, 4.0).reshape((3, 1, 1, 1))
    M = np.ones((3, 1, 1))
    with pytest.raises(DataError):
        volume_loop(lambda v: np.arange(int(v[0]) + 1), I, M)


@pytest.mark.parametrize("do_new_parfor", [False, True])
def test_fit_errors_propagate(do_new_parfor: bool) -> None:
    I = np.ones((3, 3, 3, 2))
    I[2, 2, 2, 0] = 5.0
    M = np.ones((3, 3, 3))

    def fun(v):
        if v[0] == 5.0:
            raise RuntimeError("fit diverged")
        return [v[0]]

    with pytest.raises(RuntimeError, match="fit diverged"):
        volume_loop(fun, I, M, {"do_new_parfor": do_new_parfor})


@pytest.mark.parametrize("do_new_parfor", [False, True])
def test_no_parfor_never_dispatches(random_volume, do_new_parfor: bool) -> None:
    I, M = random_volume
    pool = RecordingPool(4)
    volume_loop(sum_max, I, M, {"no_parfor": True, "do_new_parfor": do_new_parfor}, pool=pool)
    assert pool.calls == 0


def test_unavailable_pool_falls_back_to_sequential(random_volume) -> None:
    I, M = random_volume
    reference = volume_loop(sum_max, I, M)
    p = volume_loop(sum_max, I, M, pool=BrokenPool())
    np.testing.assert_array_equal(p, reference)


def test_n_workers_option_caps_pool_size() -> None:
    I = np.ones((4, 1, 1, 2))
    M = np.ones((4, 1, 1))
    pool = RecordingPool(4)
    volume_loop(sum_max, I, M, {"do_new_parfor": True, "n_workers": 2}, pool=pool)
    assert pool.items == 2


def test_active_pool_used_when_none_passed(monkeypatch, random_volume) -> None:
    I, M = random_volume
    pool = RecordingPool(3)
    monkeypatch.setattr(loop_module, "current_pool", lambda: pool)
    volume_loop(sum_max, I, M, {"do_new_parfor": True})
    assert pool.calls == 1


def test_started_pool_is_picked_up(random_volume) -> None:
    I, M = random_volume
    reference = volume_loop(sum_max, I, M)
    start_pool(n_workers=2, backend='threading')
    executor = VolumeLoopExecutor({"do_new_parfor": True})
    np.testing.assert_array_equal(executor(sum_max, I, M), reference)


def test_verbose_progress_lines(caplog) -> None:
    I = np.ones((2, 8, 3, 1))
    M = np.zeros((2, 8, 3))
    M[:, :4, :] = 1

    with caplog.at_level(logging.INFO):
        volume_loop(sum_max, I, M, {"verbose": True})

    messages = [r.getMessage() for r in caplog.records]
    assert "Starting the loop. Workers = 1" in messages
    slice_lines = [m for m in messages if m.startswith("k=")]
    assert slice_lines == ["k=  1 o.;", "k=  2 o.;", "k=  3 o.;"]


def test_quiet_by_default(caplog) -> None:
    I = np.ones((2, 8, 1, 1))
    M = np.ones((2, 8, 1))
    with caplog.at_level(logging.INFO):
        volume_loop(sum_max, I, M)
    assert not [r for r in caplog.records if r.getMessage().startswith("k=")]


def test_verbose_logs_banner(caplog) -> None:
    I = np.ones((2, 2, 1, 1))
    M = np.ones((2, 2, 1))
    with caplog.at_level(logging.INFO):
        volume_loop(sum_max, I, M, {"verbose": True, "do_new_parfor": True})

    messages = [r.getMessage() for r in caplog.records]
    assert any("Voxel Loop" in m and m.startswith("#") for m in messages)
    assert any(m.startswith("Starting the batched loop. Voxels = 4") for m in messages)


def test_debug_mode_logs_diagnostics(caplog) -> None:
    I = np.ones((3, 3, 3, 2))
    M = np.zeros((3, 3, 3))
    M[0, :, :] = 1

    with caplog.at_level(logging.DEBUG):
        volume_loop(sum_max, I, M, {"output_mode": "debug"})
    diagnostics = [r.getMessage() for r in caplog.records if r.getMessage().startswith("Diagnostics:")]
    assert len(diagnostics) == 1
    assert "masked=9" in diagnostics[0]
    assert "n_param=2" in diagnostics[0]
    assert "strategy=rows" in diagnostics[0]

    caplog.clear()
    with caplog.at_level(logging.DEBUG):
        volume_loop(sum_max, I, M, {"verbose": True})
    assert not [r for r in caplog.records if r.getMessage().startswith("Diagnostics:")]
