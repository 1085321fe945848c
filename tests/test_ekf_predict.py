import numpy as np
import pytest

from slam_ekf.ekf import ExtendedKalmanFilterIndirect
from slam_ekf.errors import DimensionError
from slam_ekf.indirect import ia_range


def _make_kf(n=5, seed=0) -> ExtendedKalmanFilterIndirect:
    rng = np.random.default_rng(seed)
    A = rng.normal(size=(n, n))
    kf = ExtendedKalmanFilterIndirect(n)
    P = A @ A.T + n * np.eye(n)
    kf.P = 0.5 * (P + P.T)
    kf.x = rng.normal(size=n)
    return kf


def _dense_prediction(P, v, F_v, Q_v):
    n = P.shape[0]
    F = np.eye(n)
    F[np.ix_(v, v)] = F_v
    Q = np.zeros((n, n))
    Q[np.ix_(v, v)] = Q_v
    return F @ P @ F.T + Q


def test_predict_identity_with_zero_noise_leaves_p_unchanged():
    kf = _make_kf()
    P0 = kf.P.copy()
    kf.predict(ia_range(0, 5), np.eye(3), [0, 1, 2], Q=np.zeros((3, 3)))
    np.testing.assert_allclose(kf.P, P0, rtol=0, atol=1e-12)

    kf.predict(ia_range(0, 5), np.eye(3), [0, 1, 2], F_u=np.ones((3, 2)), U=np.zeros((2, 2)))
    np.testing.assert_allclose(kf.P, P0, rtol=0, atol=1e-12)


def test_predict_matches_dense_formula_for_interleaved_states():
    kf = _make_kf()
    P0 = kf.P.copy()
    v = [3, 1]
    F_v = np.array([[1.0, 0.2], [-0.3, 0.9]])
    Q = np.array([[0.04, 0.01], [0.01, 0.09]])

    kf.predict(ia_range(0, 5), F_v, v, Q=Q)

    np.testing.assert_allclose(kf.P, _dense_prediction(P0, v, F_v, Q), atol=1e-12)
    assert kf.symmetry_error() < 1e-12


def test_predict_control_and_state_space_noise_agree():
    F_v = np.array([[1.0, 0.0, -0.1], [0.0, 1.0, 0.2], [0.0, 0.0, 1.0]])
    F_u = np.array([[0.1, 0.0], [0.05, 0.0], [0.0, 0.1]])
    U = np.diag([0.25, 0.01])

    kf_a = _make_kf()
    kf_b = _make_kf()
    kf_a.predict(ia_range(0, 5), F_v, [0, 1, 2], F_u=F_u, U=U)
    kf_b.predict(ia_range(0, 5), F_v, [0, 1, 2], Q=F_u @ U @ F_u.T)

    np.testing.assert_allclose(kf_a.P, kf_b.P, atol=1e-14)


def test_predict_only_touches_states_in_iax():
    kf = _make_kf()
    P0 = kf.P.copy()
    kf.predict([0, 1, 3], np.array([[2.0]]), [1], Q=np.array([[0.5]]))

    # state 2 and 4 are not in iax
    np.testing.assert_array_equal(kf.P[2, :], P0[2, :])
    np.testing.assert_array_equal(kf.P[:, 4], P0[:, 4])
    assert kf.P[1, 1] == pytest.approx(4.0 * P0[1, 1] + 0.5)
    assert kf.P[1, 0] == pytest.approx(2.0 * P0[1, 0])
    assert kf.P[0, 1] == kf.P[1, 0]


def test_predict_writes_propagated_mean():
    kf = _make_kf()
    x0 = kf.x.copy()
    kf.predict(ia_range(0, 5), np.eye(2), [2, 4], Q=np.eye(2) * 0.1, x_v=[7.0, 8.0])
    assert kf.x[2] == 7.0 and kf.x[4] == 8.0
    np.testing.assert_array_equal(kf.x[[0, 1, 3]], x0[[0, 1, 3]])


def test_predict_size_unchanged_and_stats():
    kf = _make_kf()
    kf.predict(ia_range(0, 5), np.eye(3), [0, 1, 2], Q=np.eye(3) * 0.01)
    assert kf.size == 5
    assert kf.get_stats()["predictions"] == 1


def test_worked_example_predict():
    kf = ExtendedKalmanFilterIndirect(3)
    kf.P = 0.1 * np.eye(3)
    kf.predict(ia_range(0, 3), np.eye(3), ia_range(0, 3), Q=0.01 * np.eye(3))
    np.testing.assert_allclose(kf.P, 0.11 * np.eye(3), atol=1e-15)


def test_predict_rejects_bad_inputs_before_mutation():
    kf = _make_kf()
    P0 = kf.P.copy()
    with pytest.raises(DimensionError):
        kf.predict([0, 1], np.eye(2), [1, 2], Q=np.eye(2))  # iav not in iax
    with pytest.raises(DimensionError):
        kf.predict(ia_range(0, 5), np.eye(3), [0, 1], Q=np.eye(2))  # F_v shape
    with pytest.raises(DimensionError):
        kf.predict(ia_range(0, 5), np.eye(2), [0, 1], Q=np.array([[1.0, 0.3], [0.0, 1.0]]))
    with pytest.raises(DimensionError):
        kf.predict(ia_range(0, 5), np.eye(2), [0, 1], F_u=np.eye(2), U=np.eye(2), Q=np.eye(2))
    with pytest.raises(DimensionError):
        kf.predict(ia_range(0, 5), np.eye(2), [0, 1], F_u=np.eye(2))
    with pytest.raises(DimensionError):
        kf.predict(ia_range(0, 7), np.eye(2), [0, 1], Q=np.eye(2))  # out of range
    np.testing.assert_array_equal(kf.P, P0)
