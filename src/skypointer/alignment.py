"""
Alignment Subsystem for the SkyPointer

Keeps the sync point store and fits the transform between ideal horizontal
directions (computed from the requested RA/Dec) and the directions the
device was actually pointing at.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, List, Sequence, Tuple

import numpy as np
from scipy.optimize import least_squares

from .skypointer_protocol import DuplicateSyncPointError

DEFAULT_DUPLICATE_TOLERANCE = 1e-6


def vector_from_altaz(az_deg, alt_deg):
    """Converts Alt/Az to a 3D unit vector."""
    az_rad = math.radians(az_deg)
    alt_rad = math.radians(alt_deg)
    return [
        math.cos(alt_rad) * math.cos(az_rad),
        math.cos(alt_rad) * math.sin(az_rad),
        math.sin(alt_rad),
    ]


def vector_to_altaz(vec):
    """Converts a 3D unit vector to Azimuth and Altitude (degrees)."""
    norm = math.sqrt(sum(x * x for x in vec))
    if norm < 1e-9:
        return 0, 0
    vx, vy, vz = [x / norm for x in vec]

    alt_rad = math.asin(max(-1.0, min(1.0, vz)))
    az_rad = math.atan2(vy, vx)

    alt_deg = math.degrees(alt_rad)
    az_deg = math.degrees(az_rad)
    return az_deg % 360.0, alt_deg


@dataclass
class SyncPoint:
    """
    One alignment observation.

    Attributes:
        observed_at (datetime): UTC time of the observation.
        ra (float): Requested right ascension (hours).
        dec (float): Requested declination (degrees).
        direction (tuple): Unit vector of the observed device attitude.
        private_data (bytes): Opaque data attached by the alignment model.
    """

    observed_at: datetime
    ra: float
    dec: float
    direction: Tuple[float, float, float]
    private_data: bytes = field(default=b"", repr=False)


class SyncPointStore:
    """Append-only collection of sync points without duplicate attitudes."""

    def __init__(self, tolerance: float = DEFAULT_DUPLICATE_TOLERANCE):
        self.tolerance = tolerance
        self._points: List[SyncPoint] = []

    def __len__(self) -> int:
        return len(self._points)

    def __iter__(self) -> Iterator[SyncPoint]:
        return iter(self._points)

    @property
    def points(self) -> List[SyncPoint]:
        return list(self._points)

    def is_duplicate(self, direction: Sequence[float]) -> bool:
        """True if a stored point has the same direction within the tolerance."""
        return any(
            all(abs(a - b) <= self.tolerance for a, b in zip(p.direction, direction))
            for p in self._points
        )

    def add(self, point: SyncPoint) -> None:
        """
        Appends a sync point.

        Raises:
            DuplicateSyncPointError: If the observed direction is already stored.
        """
        if self.is_duplicate(point.direction):
            raise DuplicateSyncPointError(
                f"Sync point for RA {point.ra:.4f} DEC {point.dec:.4f} "
                "duplicates an observed attitude"
            )
        self._points.append(point)


class AlignmentModel:
    """
    N-point alignment transformation using a 6-parameter geometric model.
    Compensates for Rotation, Cone Error, Non-Perpendicularity and Index Offsets.
    """

    def __init__(self):
        self.points = []  # List of dicts: {'sky': vec, 'mount': vec, 'weight': float}
        self.matrix = np.identity(3)
        self.params = np.zeros(6)  # [roll, pitch, yaw, ID, CH, NP]
        self.rms_error_arcsec = 0.0

    def recompute(self, pairs) -> None:
        """
        Refits the model from scratch.

        Args:
            pairs: Iterable of (sky_vec, mount_vec) unit vector pairs.
        """
        self.points = [
            {"sky": np.array(sky), "mount": np.array(mount), "weight": 1.0}
            for sky, mount in pairs
        ]
        self._compute_model()

    def _get_rotation_matrix(self, r, p, y):
        """Creates a 3D rotation matrix from Euler angles."""
        c1, s1 = math.cos(r), math.sin(r)
        c2, s2 = math.cos(p), math.sin(p)
        c3, s3 = math.cos(y), math.sin(y)

        R_x = np.array([[1, 0, 0], [0, c1, -s1], [0, s1, c1]])
        R_y = np.array([[c2, 0, s2], [0, 1, 0], [-s2, 0, c2]])
        R_z = np.array([[c3, -s3, 0], [s3, c3, 0], [0, 0, 1]])

        return R_z @ R_y @ R_x

    def _transform_internal(self, sky_vec, params):
        """Applies the 6-parameter model transformation."""
        R = self._get_rotation_matrix(params[0], params[1], params[2])
        v = R @ sky_vec

        az, alt = vector_to_altaz(v)
        alt_rad = math.radians(alt)

        # All params are in RADIANS
        cos_alt = max(0.01, math.cos(alt_rad))
        tan_alt = math.tan(alt_rad)

        az_corr_rad = params[4] / cos_alt + params[5] * tan_alt
        alt_corr_rad = params[3]

        return vector_from_altaz(
            az + math.degrees(az_corr_rad), alt + math.degrees(alt_corr_rad)
        )

    def _compute_model(self):
        """Fits the geometric model to the collected points."""
        if len(self.points) == 0:
            self.matrix = np.identity(3)
            self.params = np.zeros(6)
            self.rms_error_arcsec = 0.0
            return

        self._compute_svd_only()

        # 1-2 points: rotation only
        if len(self.points) < 3:
            return

        # 3-5 points: rotation + altitude index; 6+: full model
        solve_params = 6 if len(self.points) >= 6 else 4

        def residuals(p):
            full_p = np.zeros(6)
            full_p[: len(p)] = p
            res = []
            for pt in self.points:
                m_pred = self._transform_internal(pt["sky"], full_p)
                dot = np.clip(np.dot(m_pred, pt["mount"]), -1.0, 1.0)
                res.append(math.acos(dot) * pt["weight"])
            return np.array(res)

        # Initial guess from SVD matrix
        sy = math.sqrt(self.matrix[0, 0] ** 2 + self.matrix[1, 0] ** 2)
        if sy >= 1e-6:
            r = math.atan2(self.matrix[2, 1], self.matrix[2, 2])
            p = math.atan2(-self.matrix[2, 0], sy)
            y = math.atan2(self.matrix[1, 0], self.matrix[0, 0])
        else:
            r = math.atan2(-self.matrix[1, 2], self.matrix[1, 1])
            p = math.atan2(-self.matrix[2, 0], sy)
            y = 0

        initial_p = np.array([r, p, y, 0.0, 0.0, 0.0])[:solve_params]

        res = least_squares(
            residuals, initial_p, method="trf", ftol=1e-12, xtol=1e-12, diff_step=1e-4
        )

        self.params = np.zeros(6)
        self.params[: len(res.x)] = res.x
        self.matrix = self._get_rotation_matrix(
            self.params[0], self.params[1], self.params[2]
        )
        self._calculate_rms()

    def _compute_svd_only(self):
        """Computes optimal rotation matrix using SVD."""
        if len(self.points) == 1:
            s = self.points[0]["sky"]
            m = self.points[0]["mount"]
            v = np.cross(s, m)
            sine = np.linalg.norm(v)
            cosine = np.dot(s, m)
            if sine < 1e-9:
                self.matrix = np.identity(3) if cosine > 0 else -np.identity(3)
            else:
                v = v / sine
                K = np.array([[0, -v[2], v[1]], [v[2], 0, -v[0]], [-v[1], v[0], 0]])
                self.matrix = np.identity(3) + sine * K + (1 - cosine) * (K @ K)
        else:
            S = np.array([p["sky"] for p in self.points]).T
            M = np.array([p["mount"] for p in self.points]).T
            W = np.array([p["weight"] for p in self.points])
            W = W / np.sum(W)
            H = (M * W) @ S.T
            U, _, Vt = np.linalg.svd(H)
            R = U @ Vt
            if np.linalg.det(R) < 0:
                V = Vt.T.copy()
                V[:, 2] *= -1
                R = U @ V.T
            self.matrix = R

        self.params = np.zeros(6)
        self._calculate_rms()

    def _calculate_rms(self):
        """Calculates RMS error of the fit in arcseconds."""
        if not self.points:
            self.rms_error_arcsec = 0.0
            return

        total_sq_error = 0.0
        for p in self.points:
            if len(self.points) < 3:
                pred_mount = self.matrix @ p["sky"]
            else:
                pred_mount = self._transform_internal(p["sky"], self.params)

            dot = max(-1.0, min(1.0, float(np.dot(pred_mount, p["mount"]))))
            total_sq_error += math.acos(dot) ** 2

        rms_rad = math.sqrt(total_sq_error / len(self.points))
        self.rms_error_arcsec = math.degrees(rms_rad) * 3600.0

    def transform_to_mount(self, sky_vec):
        """Maps an ideal direction to the direction the device must point at."""
        if len(self.points) < 3:
            return (self.matrix @ np.array(sky_vec)).tolist()
        return self._transform_internal(np.array(sky_vec), self.params)

