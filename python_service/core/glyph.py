"""
文字点阵模块
把文字渲染到离屏画布上，再把亮像素转换为 3D 目标点
"""

import logging
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from config.settings import GlyphConfig
from .layout import sphere_shell_points

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GlyphAssignment:
    """
    文字编队的整体分配结果（按粒子顺序对齐）

    只能整体替换，不会逐个修改
    """
    points: np.ndarray       # Nx3 文字模式下的目标位置
    members: np.ndarray      # N   是否为文字成员

    def __post_init__(self):
        self.points.setflags(write=False)
        self.members.setflags(write=False)

    def __len__(self) -> int:
        return len(self.members)

    @property
    def member_count(self) -> int:
        return int(np.count_nonzero(self.members))

    @classmethod
    def dispersed(cls, points: np.ndarray) -> "GlyphAssignment":
        """没有文字成员，所有粒子使用给定的点"""
        points = np.array(points, dtype=float).reshape(-1, 3)
        return cls(points=points, members=np.zeros(len(points), dtype=bool))

    def extended(self, points: np.ndarray) -> "GlyphAssignment":
        """追加非成员粒子（例如新加入的照片）"""
        points = np.asarray(points, dtype=float).reshape(-1, 3)
        return GlyphAssignment(
            points=np.vstack([self.points, points]),
            members=np.concatenate([self.members, np.zeros(len(points), dtype=bool)])
        )

    def subset(self, keep: np.ndarray) -> "GlyphAssignment":
        """按掩码保留部分粒子"""
        return GlyphAssignment(
            points=self.points[keep].copy(),
            members=self.members[keep].copy()
        )


class GlyphSampler:
    """
    文字采样器
    使用 OpenCV Hershey 字体渲染（仅支持 ASCII 字符）
    """

    def __init__(
        self,
        config: Optional[GlyphConfig] = None,
        rng: Optional[np.random.Generator] = None
    ):
        self.config = config or GlyphConfig()
        self.rng = rng if rng is not None else np.random.default_rng()
        self.font = cv2.FONT_HERSHEY_TRIPLEX

    def rasterize(self, text: str) -> np.ndarray:
        """
        把文字居中渲染到灰度画布上

        Returns:
            H x W uint8 画布，文字尽量占满画布宽度
        """
        cfg = self.config
        canvas = np.zeros((cfg.canvas_height, cfg.canvas_width), dtype=np.uint8)

        text = (text or "").strip()
        if not text:
            return canvas

        if not text.isascii():
            logger.warning("Hershey 字体不支持非 ASCII 字符: %r", text)

        (w, h), baseline = cv2.getTextSize(text, self.font, 1.0, cfg.font_thickness)
        if w <= 0 or h <= 0:
            return canvas

        scale = min(cfg.canvas_width * 0.9 / w, cfg.canvas_height * 0.6 / h)
        (w, h), baseline = cv2.getTextSize(text, self.font, scale, cfg.font_thickness)

        origin = ((cfg.canvas_width - w) // 2, (cfg.canvas_height + h) // 2)
        cv2.putText(canvas, text, origin, self.font, scale, 255, cfg.font_thickness, cv2.LINE_AA)
        return canvas

    def sample(self, text: str) -> np.ndarray:
        """
        文字 -> 3D 点

        亮度越高的像素 z 越靠前，形成轻微的浮雕效果

        Returns:
            Nx3 点，空文字返回 0x3
        """
        cfg = self.config
        canvas = self.rasterize(text)

        ys, xs = np.nonzero(canvas > cfg.intensity_threshold)
        if len(xs) == 0:
            return np.zeros((0, 3))

        intensity = canvas[ys, xs].astype(float) / 255.0
        pos_x = (xs - cfg.canvas_width / 2) * cfg.pixel_scale
        pos_y = -(ys - cfg.canvas_height / 2) * cfg.pixel_scale + cfg.y_offset
        pos_z = (self.rng.random(len(xs)) - 0.5) * cfg.depth_jitter + intensity * cfg.depth_scale

        points = np.stack([pos_x, pos_y, pos_z], axis=1)
        logger.debug("文字 %r 采样得到 %d 个点", text, len(points))
        return points

    def assign(self, particle_count: int, points: np.ndarray) -> GlyphAssignment:
        """
        把采样点分配给粒子

        粒子随机打乱后，前 min(点数, 粒子数) 个一一对应采样点；
        其余粒子分配到大球壳上的随机点。
        点数多于粒子时随机挑选其中一部分，使整个字形都被覆盖。
        """
        points = np.asarray(points, dtype=float).reshape(-1, 3)
        r_min, r_max = self.config.shell_radius

        targets = sphere_shell_points(self.rng, particle_count, r_min, r_max)
        members = np.zeros(particle_count, dtype=bool)

        k = min(len(points), particle_count)
        if k > 0:
            if len(points) > particle_count:
                points = points[self.rng.permutation(len(points))[:k]]
            chosen = self.rng.permutation(particle_count)[:k]
            targets[chosen] = points[:k]
            members[chosen] = True

        return GlyphAssignment(points=targets, members=members)
