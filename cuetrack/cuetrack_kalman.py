"""
CueTrack State Estimator
========================
Constant-velocity Kalman filter for a rolling ball.

State:
  3D: [x, y, z, vx, vy, vz]
  2D: [x, y, vx, vy]          (image-plane tracks)

Measurements are positions only. Measurement noise is scaled by the
inverse of the detector confidence, so weak detections pull the estimate
less. Process noise follows the continuous white-noise acceleration model,
which makes the predicted covariance grow monotonically with dt.
"""

import logging
from typing import Optional, Tuple

import numpy as np

from .cuetrack_config import KalmanConfig

logger = logging.getLogger(__name__)


# ===== MOTION MODEL =====

def make_cv_matrices(dt: float, q: float, dim: int = 3) -> Tuple[np.ndarray, np.ndarray]:
    """Constant Velocity model: state = [pos(dim), vel(dim)].

    Args:
        dt: Prediction interval [s]; negative values are treated as 0
        q: Acceleration spectral density
        dim: Spatial dimension (2 or 3)

    Returns:
        F (2dim×2dim), Q (2dim×2dim)
    """
    dt = max(float(dt), 0.0)
    n = 2 * dim
    F = np.eye(n)
    F[:dim, dim:] = np.eye(dim) * dt

    # Continuous white noise acceleration, integrated over dt
    I = np.eye(dim)
    Q = np.zeros((n, n))
    Q[:dim, :dim] = I * (q * dt**3 / 3)
    Q[:dim, dim:] = I * (q * dt**2 / 2)
    Q[dim:, :dim] = I * (q * dt**2 / 2)
    Q[dim:, dim:] = I * (q * dt)

    return F, Q


# ===== KALMAN FILTER =====

class ConstantVelocityKalman:
    """Kalman filter owned by a single track.

    The first ``update`` on a fresh filter initialises the position directly
    with zero velocity and a wide velocity prior; later updates run the full
    predict/correct cycle with a Joseph-form covariance update.

    Usage::

        kf = ConstantVelocityKalman(dim=3)
        kf.update(np.array([0.0, 0.0, 0.0]), confidence=0.9)
        kf.predict(0.033)
        nis = kf.update(np.array([0.05, 0.0, 0.0]), confidence=0.9)
    """

    def __init__(self, dim: int = 3, config: Optional[KalmanConfig] = None):
        if dim not in (2, 3):
            raise ValueError(f"dim must be 2 or 3, got {dim}")
        self.dim = dim
        self.nx = 2 * dim
        self.config = config or KalmanConfig()
        self.x = np.zeros(self.nx)
        self.P = np.eye(self.nx) * self.config.initial_velocity_variance
        self.H = np.hstack([np.eye(dim), np.zeros((dim, dim))])
        self.initialized = False
        self.last_nis: Optional[float] = None

    # ---- measurement model ----

    def measurement_variance(self, confidence: float) -> float:
        floor = self.config.min_measurement_confidence
        conf = confidence if np.isfinite(confidence) else floor
        return self.config.measurement_noise / max(floor, min(float(conf), 1.0))

    def _as_measurement(self, z) -> np.ndarray:
        z = np.asarray(z, dtype=float).reshape(-1)
        if len(z) == self.dim:
            return z
        out = np.zeros(self.dim)
        n = min(len(z), self.dim)
        out[:n] = z[:n]
        return out

    # ---- filter cycle ----

    def predict(self, dt: float) -> np.ndarray:
        """Advance the state by dt seconds. Returns the predicted position.

        dt <= 0 or non-finite is a no-op: the filter never predicts backward.
        """
        if not self.initialized or not np.isfinite(dt) or dt <= 0:
            return self.position
        F, Q = make_cv_matrices(dt, self.config.process_noise, self.dim)
        self.x = F @ self.x
        self.P = F @ self.P @ F.T + Q
        self.P = 0.5 * (self.P + self.P.T)
        return self.position

    def update(self, z, confidence: float = 1.0) -> float:
        """Correct with a position measurement. Returns NIS (0 on initialisation)."""
        z = self._as_measurement(z)
        r = self.measurement_variance(confidence)
        R = np.eye(self.dim) * r

        if not self.initialized:
            self.x = np.zeros(self.nx)
            self.x[:self.dim] = z
            self.P = np.diag(
                [r] * self.dim + [self.config.initial_velocity_variance] * self.dim
            )
            self.initialized = True
            self.last_nis = 0.0
            return 0.0

        # Innovation
        y = z - self.H @ self.x
        S = self.H @ self.P @ self.H.T + R

        try:
            S_inv = np.linalg.inv(S)
            nis = float(y @ S_inv @ y)
        except np.linalg.LinAlgError:
            logger.warning("Singular innovation covariance, skipping update")
            return float("inf")

        # Kalman gain
        K = self.P @ self.H.T @ S_inv

        self.x = self.x + K @ y
        I_KH = np.eye(self.nx) - K @ self.H
        self.P = I_KH @ self.P @ I_KH.T + K @ R @ K.T  # Joseph form
        self.P = 0.5 * (self.P + self.P.T)
        self.last_nis = nis
        return nis

    def peek(self, dt: float) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Extrapolate without mutating. Returns (position, velocity, P)."""
        if not self.initialized or not np.isfinite(dt) or dt <= 0:
            return self.position, self.velocity, self.P.copy()
        F, Q = make_cv_matrices(dt, self.config.process_noise, self.dim)
        x = F @ self.x
        P = F @ self.P @ F.T + Q
        return x[:self.dim].copy(), x[self.dim:].copy(), P

    def mahalanobis_distance(self, z, confidence: float = 1.0) -> float:
        """Mahalanobis distance of a position measurement from the current estimate."""
        z = self._as_measurement(z)
        y = z - self.H @ self.x
        S = self.H @ self.P @ self.H.T + np.eye(self.dim) * self.measurement_variance(confidence)
        return float(np.sqrt(y @ np.linalg.solve(S, y)))

    # ---- reads ----

    @property
    def position(self) -> np.ndarray:
        return self.x[:self.dim].copy()

    @property
    def velocity(self) -> np.ndarray:
        return self.x[self.dim:].copy()

    @property
    def position_uncertainty(self) -> np.ndarray:
        """Per-axis position standard deviation [m]."""
        return np.sqrt(np.clip(np.diag(self.P)[:self.dim], 0.0, None))

    @property
    def velocity_uncertainty(self) -> np.ndarray:
        return np.sqrt(np.clip(np.diag(self.P)[self.dim:], 0.0, None))

    def __repr__(self):
        return (f"ConstantVelocityKalman(dim={self.dim}, "
                f"pos={np.round(self.position, 3).tolist()}, "
                f"vel={np.round(self.velocity, 3).tolist()})")
