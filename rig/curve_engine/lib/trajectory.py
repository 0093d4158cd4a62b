"""Minimum-curvature wellbore positions from survey stations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import numpy as np

BETA_EPS = 1e-9


@dataclass(frozen=True)
class Trajectory:
    md: np.ndarray
    tvd: np.ndarray
    north: np.ndarray
    east: np.ndarray
    dls: np.ndarray

    def __len__(self) -> int:
        return int(self.md.size)

    def vertical_section(self, azimuth_deg: float) -> np.ndarray:
        """Horizontal displacement projected onto ``azimuth_deg``."""
        a = np.radians(azimuth_deg)
        return self.north * np.cos(a) + self.east * np.sin(a)


def minimum_curvature(
    stations: Iterable[Sequence[float]],
    tie_in: Optional[Sequence[float]] = (0.0, 0.0, 0.0),
) -> Optional[Trajectory]:
    """
    Integrate (md, inclination, azimuth) stations into TVD/north/east.

    Stations are sorted by md. ``tie_in`` is the (md, inc, az) of the surface
    reference, used when the first station is deeper than it. Returns None when
    there is nothing to integrate.
    """
    arr = np.asarray([tuple(s) for s in stations], dtype=float)
    if arr.size == 0:
        return None
    arr = arr.reshape(-1, 3)
    arr = arr[np.all(np.isfinite(arr), axis=1)]
    if arr.shape[0] == 0:
        return None
    arr = arr[np.argsort(arr[:, 0], kind="stable")]
    if tie_in is not None and arr[0, 0] > tie_in[0]:
        arr = np.vstack([np.asarray(tie_in, dtype=float), arr])

    md = arr[:, 0]
    inc = np.radians(arr[:, 1])
    az = np.radians(arr[:, 2])

    dmd = np.diff(md)
    i1, i2 = inc[:-1], inc[1:]
    a1, a2 = az[:-1], az[1:]

    cos_beta = np.cos(i1) * np.cos(i2) + np.sin(i1) * np.sin(i2) * np.cos(a2 - a1)
    beta = np.arccos(np.clip(cos_beta, -1.0, 1.0))
    # straight segments have a ratio factor of exactly 1
    rf = np.ones_like(beta)
    bent = beta > BETA_EPS
    rf[bent] = 2.0 / beta[bent] * np.tan(beta[bent] / 2.0)

    half = dmd / 2.0 * rf
    d_north = half * (np.sin(i1) * np.cos(a1) + np.sin(i2) * np.cos(a2))
    d_east = half * (np.sin(i1) * np.sin(a1) + np.sin(i2) * np.sin(a2))
    d_tvd = half * (np.cos(i1) + np.cos(i2))

    zero = np.zeros(1)
    tvd = np.concatenate([zero, np.cumsum(d_tvd)])
    north = np.concatenate([zero, np.cumsum(d_north)])
    east = np.concatenate([zero, np.cumsum(d_east)])

    dls = np.zeros_like(md)
    moved = dmd > 0
    seg_dls = np.zeros_like(dmd)
    seg_dls[moved] = np.degrees(beta[moved]) / dmd[moved] * 100.0
    dls[1:] = seg_dls

    return Trajectory(md=md, tvd=tvd, north=north, east=east, dls=dls)
