import numpy as np
import pytest

from slam_ekf.ekf import ExtendedKalmanFilterIndirect
from slam_ekf.errors import DimensionError
from slam_ekf.indirect import as_indirect, ia_range, ix
from slam_ekf.innovation import Innovation
from slam_ekf.stacked import StackedCorrectionBuffer


IA1, H1, R1, Y1 = [0, 2], np.array([[1.0, 0.5], [0.0, 2.0]]), np.diag([0.1, 0.2]), np.array([0.3, -0.2])
IA2, H2, R2, Y2 = [4, 0, 5], np.array([[0.5, -1.0, 1.0]]), np.array([[0.05]]), np.array([0.7])


def _make_kf(n=6, seed=2) -> ExtendedKalmanFilterIndirect:
    rng = np.random.default_rng(seed)
    A = rng.normal(size=(n, n))
    kf = ExtendedKalmanFilterIndirect(n)
    P = A @ A.T + np.eye(n)
    kf.P = 0.5 * (P + P.T)
    kf.x = rng.normal(size=n)
    return kf


def _linear_innovation(kf, H, ia, y, R):
    ia = as_indirect(ia)
    Z = H @ kf.P[ix(ia)] @ H.T + R
    return Innovation(H @ kf.x[ia.indices] - y, 0.5 * (Z + Z.T), H, ia)


def test_stacked_flush_equals_sequential_corrections():
    kf_seq = _make_kf()
    kf_seq.correct(ia_range(0, 6), _linear_innovation(kf_seq, H1, IA1, Y1, R1))
    kf_seq.correct(ia_range(0, 6), _linear_innovation(kf_seq, H2, IA2, Y2, R2))

    kf_stk = _make_kf()
    kf_stk.stack_correction(_linear_innovation(kf_stk, H1, IA1, Y1, R1))
    kf_stk.stack_correction(_linear_innovation(kf_stk, H2, IA2, Y2, R2))
    assert kf_stk.correct_all_stacked(ia_range(0, 6))

    np.testing.assert_allclose(kf_stk.x, kf_seq.x, atol=1e-9)
    np.testing.assert_allclose(kf_stk.P, kf_seq.P, atol=1e-9)
    assert kf_stk.get_stats()["stacked_flushes"] == 1


def test_stacking_does_not_touch_state_until_flush():
    kf = _make_kf()
    x0, P0 = kf.x.copy(), kf.P.copy()
    assert kf.stack_correction(_linear_innovation(kf, H1, IA1, Y1, R1)) == 0
    assert kf.stack_correction(_linear_innovation(kf, H2, IA2, Y2, R2)) == 1
    np.testing.assert_array_equal(kf.x, x0)
    np.testing.assert_array_equal(kf.P, P0)
    assert len(kf.stack) == 2


def test_joint_innovation_uses_deduplicated_union():
    buf = StackedCorrectionBuffer()
    buf.push(Innovation([1.0], [[1.0]], [[1.0, 2.0]], [1, 0]))
    buf.push(Innovation([2.0], [[3.0]], [[4.0, 5.0]], [0, 2]))

    joint = buf.build()

    assert joint.ia_rsl.indices.tolist() == [1, 0, 2]
    np.testing.assert_array_equal(joint.INN_rsl, np.array([[1.0, 2.0, 0.0], [0.0, 4.0, 5.0]]))
    np.testing.assert_array_equal(joint.Z, np.diag([1.0, 3.0]))
    np.testing.assert_array_equal(joint.z, [1.0, 2.0])
    assert buf.measurement_size == 2


def test_cross_covariances_fill_off_diagonal_blocks():
    buf = StackedCorrectionBuffer()
    buf.push(Innovation([0.0, 0.0], np.eye(2), np.eye(2), [0, 1]))
    buf.push(Innovation([0.0], [[2.0]], [[1.0]], [2]))
    C = np.array([[0.1], [0.2]])

    joint = buf.build({(0, 1): C})

    np.testing.assert_array_equal(joint.Z[0:2, 2:3], C)
    np.testing.assert_array_equal(joint.Z[2:3, 0:2], C.T)
    with pytest.raises(DimensionError):
        buf.build({(0, 0): np.eye(2)})
    with pytest.raises(DimensionError):
        buf.build({(0, 1): np.eye(2)})


def test_flush_with_cross_terms_equals_single_joint_correction():
    kf_stk = _make_kf()
    kf_one = _make_kf()
    inn1 = _linear_innovation(kf_stk, H1, IA1, Y1, R1)
    inn2 = _linear_innovation(kf_stk, H2, IA2, Y2, R2)
    C = np.array([[0.01], [0.02]])

    kf_stk.stack_correction(inn1)
    kf_stk.stack_correction(inn2)
    assert kf_stk.correct_all_stacked(ia_range(0, 6), cross_covariances={(0, 1): C})

    ia = [0, 2, 4, 5]
    H = np.zeros((3, 4))
    H[0:2, [0, 1]] = H1
    H[2:3, [2, 0, 3]] = H2
    R = np.block([[R1, C], [C.T, R2]])
    Z = H @ kf_one.P[ix(ia)] @ H.T + R
    Z = 0.5 * (Z + Z.T)
    assert kf_one.correct(ia_range(0, 6), Innovation(np.concatenate((inn1.z, inn2.z)), Z, H, ia))

    np.testing.assert_allclose(kf_stk.x, kf_one.x, atol=1e-10)
    np.testing.assert_allclose(kf_stk.P, kf_one.P, atol=1e-10)


def test_repeated_observation_of_one_state_matches_sequential():
    def _scalar_kf():
        kf = ExtendedKalmanFilterIndirect(2)
        kf.P = np.eye(2)
        return kf

    def _observe(kf):
        # y = 1 on state 0, unit noise
        return Innovation(kf.x[[0]] - 1.0, [[kf.P[0, 0] + 1.0]], [[1.0]], [0])

    kf_seq = _scalar_kf()
    kf_seq.correct(ia_range(0, 2), _observe(kf_seq))
    kf_seq.correct(ia_range(0, 2), _observe(kf_seq))

    kf_stk = _scalar_kf()
    kf_stk.stack_correction(_observe(kf_stk))
    kf_stk.stack_correction(_observe(kf_stk))
    assert kf_stk.correct_all_stacked(ia_range(0, 2))

    assert kf_seq.x[0] == pytest.approx(2.0 / 3.0)
    assert kf_seq.P[0, 0] == pytest.approx(1.0 / 3.0)
    assert kf_stk.x[0] == pytest.approx(2.0 / 3.0)
    assert kf_stk.P[0, 0] == pytest.approx(1.0 / 3.0)
    np.testing.assert_allclose(kf_stk.P, kf_seq.P, atol=1e-12)


def test_joint_covariance_couples_entries_through_prior():
    P = np.array([[2.0, 0.5, 0.0], [0.5, 1.0, 0.3], [0.0, 0.3, 4.0]])
    buf = StackedCorrectionBuffer()
    buf.push(Innovation([0.0], [[P[0, 0] + 1.0]], [[1.0]], [0]))
    buf.push(Innovation([0.0], [[P[1, 1] + 1.0]], [[2.0]], [1]))
    buf.push(Innovation([0.0], [[P[2, 2] + 1.0]], [[1.0]], [2]))

    Z = buf.build(P=P).Z

    assert Z[0, 1] == Z[1, 0] == pytest.approx(1.0 * 0.5 * 2.0)
    assert Z[1, 2] == Z[2, 1] == pytest.approx(2.0 * 0.3 * 1.0)
    assert Z[0, 2] == 0.0
    np.testing.assert_array_equal(np.diag(Z), [3.0, 2.0, 5.0])
    with pytest.raises(DimensionError):
        buf.build(P=np.eye(2))


def test_flushing_empty_stack_is_a_no_op(capsys):
    kf = _make_kf()
    x0, P0 = kf.x.copy(), kf.P.copy()
    assert kf.correct_all_stacked(ia_range(0, 6)) is False
    np.testing.assert_array_equal(kf.x, x0)
    np.testing.assert_array_equal(kf.P, P0)
    assert "empty stack" in capsys.readouterr().out


def test_stack_is_cleared_after_success_and_failure():
    kf = _make_kf()
    kf.stack_correction(_linear_innovation(kf, H1, IA1, Y1, R1))
    kf.correct_all_stacked(ia_range(0, 6))
    assert len(kf.stack) == 0

    P0 = kf.P.copy()
    kf.stack_correction(Innovation([1.0], np.zeros((1, 1)), [[1.0]], [3]))
    assert kf.correct_all_stacked(ia_range(0, 6)) is False
    assert len(kf.stack) == 0
    np.testing.assert_array_equal(kf.P, P0)
    assert kf.get_stats()["rejected_singular"] == 1


def test_push_requires_jacobian():
    buf = StackedCorrectionBuffer()
    with pytest.raises(DimensionError):
        buf.push(Innovation([1.0], [[1.0]]))
    with pytest.raises(DimensionError):
        buf.push(Innovation([1.0], [[1.0]]), np.ones((1, 3)), [0, 1])
    with pytest.raises(DimensionError):
        buf.build()
    assert not buf
