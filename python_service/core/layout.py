"""
编队布局生成
圣诞树、散开球壳、树底环形等目标位置，均一次性生成后作为静态数据保存
"""

import numpy as np


def sphere_shell_points(
    rng: np.random.Generator,
    n: int,
    r_min: float,
    r_max: float
) -> np.ndarray:
    """在半径 [r_min, r_max) 的球壳内均匀方向随机取 n 个点"""
    r = r_min + rng.random(n) * (r_max - r_min)
    theta = rng.random(n) * np.pi * 2
    phi = np.arccos(2 * rng.random(n) - 1)
    return np.stack([
        r * np.sin(phi) * np.cos(theta),
        r * np.sin(phi) * np.sin(theta),
        r * np.cos(phi)
    ], axis=1)


def tree_points(
    rng: np.random.Generator,
    n: int,
    height: float,
    radius: float,
    garland_fraction: float = 0.0
) -> np.ndarray:
    """
    圆锥形圣诞树上的点

    garland_fraction 比例的点排成螺旋彩带，其余填充在圆锥内部
    （越靠上越稀疏）
    """
    t = rng.random(n)
    garland = rng.random(n) < garland_fraction

    # 螺旋彩带：贴着圆锥表面绕 7 圈
    angle_spiral = t * np.pi * 14
    r_spiral = radius * (1.0 - t)

    # 内部填充
    t_fill = t ** 0.8
    angle_fill = rng.random(n) * np.pi * 2
    r_fill = np.maximum(0.5, radius * (1.0 - t_fill)) * np.sqrt(rng.random(n))

    t = np.where(garland, t, t_fill)
    angle = np.where(garland, angle_spiral, angle_fill)
    r = np.where(garland, r_spiral, r_fill)

    y = t * height - height / 2
    return np.stack([np.cos(angle) * r, y, np.sin(angle) * r], axis=1)


def base_ring_points(
    rng: np.random.Generator,
    n: int,
    r_min: float,
    r_max: float,
    y: float
) -> np.ndarray:
    """树底一圈的点（礼物、玩偶）"""
    angle = rng.random(n) * np.pi * 2
    r = r_min + rng.random(n) * (r_max - r_min)
    return np.stack([np.cos(angle) * r, np.full(n, y), np.sin(angle) * r], axis=1)


def rotation_matrix(rotation) -> np.ndarray:
    """
    欧拉角（XYZ 顺序）-> 4x4 齐次变换矩阵

    Args:
        rotation: (rx, ry, rz)，弧度
    """
    rx, ry, rz = (float(a) for a in rotation)
    cx, sx = np.cos(rx), np.sin(rx)
    cy, sy = np.cos(ry), np.sin(ry)
    cz, sz = np.cos(rz), np.sin(rz)

    mx = np.array([[1, 0, 0], [0, cx, -sx], [0, sx, cx]])
    my = np.array([[cy, 0, sy], [0, 1, 0], [-sy, 0, cy]])
    mz = np.array([[cz, -sz, 0], [sz, cz, 0], [0, 0, 1]])

    m = np.eye(4)
    m[:3, :3] = mx @ my @ mz
    return m


def transform_point(matrix: np.ndarray, point) -> np.ndarray:
    """用 4x4 矩阵变换一个 3D 点"""
    p = np.append(np.asarray(point, dtype=float), 1.0)
    out = matrix @ p
    return out[:3] / out[3]
