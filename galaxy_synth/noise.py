from __future__ import annotations

import math

import numpy as np
from numba import njit

GRAD3 = np.array(
    (
        (1, 1, 0),
        (-1, 1, 0),
        (1, -1, 0),
        (-1, -1, 0),
        (1, 0, 1),
        (-1, 0, 1),
        (1, 0, -1),
        (-1, 0, -1),
        (0, 1, 1),
        (0, -1, 1),
        (0, 1, -1),
        (0, -1, -1),
    ),
    dtype=np.float64,
)

_PERMUTATION = (
    151, 160, 137, 91, 90, 15, 131, 13, 201, 95, 96, 53, 194, 233, 7, 225, 140,
    36, 103, 30, 69, 142, 8, 99, 37, 240, 21, 10, 23, 190, 6, 148, 247, 120, 234,
    75, 0, 26, 197, 62, 94, 252, 219, 203, 117, 35, 11, 32, 57, 177, 33, 88, 237,
    149, 56, 87, 174, 20, 125, 136, 171, 168, 68, 175, 74, 165, 71, 134, 139, 48,
    27, 166, 77, 146, 158, 231, 83, 111, 229, 122, 60, 211, 133, 230, 220, 105,
    92, 41, 55, 46, 245, 40, 244, 102, 143, 54, 65, 25, 63, 161, 1, 216, 80, 73,
    209, 76, 132, 187, 208, 89, 18, 169, 200, 196, 135, 130, 116, 188, 159, 86,
    164, 100, 109, 198, 173, 186, 3, 64, 52, 217, 226, 250, 124, 123, 5, 202, 38,
    147, 118, 126, 255, 82, 85, 212, 207, 206, 59, 227, 47, 16, 58, 17, 182, 189,
    28, 42, 223, 183, 170, 213, 119, 248, 152, 2, 44, 154, 163, 70, 221, 153, 101,
    155, 167, 43, 172, 9, 129, 22, 39, 253, 19, 98, 108, 110, 79, 113, 224, 232,
    178, 185, 112, 104, 218, 246, 97, 228, 251, 34, 242, 193, 238, 210, 144, 12,
    191, 179, 162, 241, 81, 51, 145, 235, 249, 14, 239, 107, 49, 192, 214, 31,
    181, 199, 106, 157, 184, 84, 204, 176, 115, 121, 50, 45, 127, 4, 150, 254,
    138, 236, 205, 93, 222, 114, 67, 29, 24, 72, 243, 141, 128, 195, 78, 66, 215,
    61, 156, 180,
)
PERM = np.array(_PERMUTATION * 2, dtype=np.int64)

SKEW_3D = 1.0 / 3.0
UNSKEW_3D = 1.0 / 6.0


@njit(cache=True)
def _nb_hash(i: int, j: int, k: int) -> int:
    return PERM[i + PERM[j + PERM[k]]] % 12


@njit(cache=True)
def _nb_corner(gi: int, x: float, y: float, z: float) -> float:
    falloff = 0.6 - x * x - y * y - z * z
    if falloff < 0.0:
        return 0.0
    falloff *= falloff
    return falloff * falloff * (GRAD3[gi, 0] * x + GRAD3[gi, 1] * y + GRAD3[gi, 2] * z)


@njit(cache=True)
def _nb_simplex_3d(x: float, y: float, z: float) -> float:
    s = (x + y + z) * SKEW_3D
    i = int(math.floor(x + s))
    j = int(math.floor(y + s))
    k = int(math.floor(z + s))
    t = (i + j + k) * UNSKEW_3D
    x0 = x - (i - t)
    y0 = y - (j - t)
    z0 = z - (k - t)

    # Rank the offsets to pick the two intermediate simplex corners.
    rank_x = 0
    rank_y = 0
    rank_z = 0
    if x0 > y0:
        rank_x += 1
    else:
        rank_y += 1
    if x0 > z0:
        rank_x += 1
    else:
        rank_z += 1
    if y0 > z0:
        rank_y += 1
    else:
        rank_z += 1

    i1 = 1 if rank_x >= 2 else 0
    j1 = 1 if rank_y >= 2 else 0
    k1 = 1 if rank_z >= 2 else 0
    i2 = 1 if rank_x >= 1 else 0
    j2 = 1 if rank_y >= 1 else 0
    k2 = 1 if rank_z >= 1 else 0

    ii = i & 255
    jj = j & 255
    kk = k & 255

    total = _nb_corner(_nb_hash(ii, jj, kk), x0, y0, z0)
    total += _nb_corner(
        _nb_hash(ii + i1, jj + j1, kk + k1),
        x0 - i1 + UNSKEW_3D,
        y0 - j1 + UNSKEW_3D,
        z0 - k1 + UNSKEW_3D,
    )
    total += _nb_corner(
        _nb_hash(ii + i2, jj + j2, kk + k2),
        x0 - i2 + 2.0 * UNSKEW_3D,
        y0 - j2 + 2.0 * UNSKEW_3D,
        z0 - k2 + 2.0 * UNSKEW_3D,
    )
    total += _nb_corner(
        _nb_hash(ii + 1, jj + 1, kk + 1),
        x0 - 1.0 + 3.0 * UNSKEW_3D,
        y0 - 1.0 + 3.0 * UNSKEW_3D,
        z0 - 1.0 + 3.0 * UNSKEW_3D,
    )
    return 32.0 * total


@njit(cache=True)
def _nb_fbm_3d(
    x: float,
    y: float,
    z: float,
    octaves: int,
    persistence: float,
    lacunarity: float,
) -> float:
    total = 0.0
    frequency = 1.0
    amplitude = 1.0
    max_amp = 0.0
    for _ in range(octaves):
        total += _nb_simplex_3d(x * frequency, y * frequency, z * frequency) * amplitude
        max_amp += amplitude
        amplitude *= persistence
        frequency *= lacunarity
    if max_amp <= 0.0:
        return 0.0
    return total / max_amp


class SimplexNoise:
    """Python-facing entry points for the compiled noise kernels."""

    @classmethod
    def warmup(cls) -> None:
        """Compile the noise kernels once, ahead of the first real call."""
        _nb_simplex_3d(0.1, 0.2, 0.3)
        _nb_fbm_3d(0.1, 0.2, 0.3, 2, 0.5, 2.0)

    @staticmethod
    def raw_noise_3d(x: float, y: float, z: float) -> float:
        return float(_nb_simplex_3d(x, y, z))

    @staticmethod
    def fbm_3d(
        x: float,
        y: float,
        z: float,
        octaves: int = 5,
        persistence: float = 0.5,
        lacunarity: float = 2.0,
    ) -> float:
        return float(_nb_fbm_3d(x, y, z, int(octaves), persistence, lacunarity))
