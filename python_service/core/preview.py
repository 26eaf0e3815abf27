"""
预览渲染模块
用 OpenCV 把粒子编队透视投影到画布上，供调试模式使用

只读取 FormationEngine 的帧数据和 ModeContext，不修改任何状态。
"""

from typing import Dict, Optional, Tuple

import cv2
import numpy as np

from config.settings import FormationConfig
from .formation import FormationEngine, FrameSnapshot
from .layout import rotation_matrix, sphere_shell_points
from .state_machine import ModeContext

# 材质 -> BGR 颜色
PALETTE_BGR: Dict[str, Tuple[int, int, int]] = {
    "gold": (0, 215, 255),
    "green": (40, 120, 40),
    "red": (40, 40, 200),
    "candy": (220, 220, 255),
    "ice": (255, 221, 170),
    "snow": (255, 255, 255),
    "dust": (238, 255, 255),
    "blue": (255, 221, 170),
    "white": (255, 255, 255),
    "bear_brown": (19, 69, 139),
    "bear_white": (240, 240, 240),
    "frame_gold": (0, 215, 255),
    "frame_ice": (255, 221, 170),
    "star_gold": (136, 221, 255),
    "star_ice": (255, 221, 170),
}

BACKGROUND_BGR = (5, 2, 2)


def hex_to_bgr(color: int) -> Tuple[int, int, int]:
    """0xRRGGBB -> (B, G, R)"""
    return (color & 0xff, (color >> 8) & 0xff, (color >> 16) & 0xff)


class PreviewRenderer:
    """
    预览渲染器
    相机位于 (0, 0, camera_z)，看向原点
    """

    def __init__(
        self,
        config: Optional[FormationConfig] = None,
        width: int = 960,
        height: int = 720,
        fov_deg: float = 45.0,
        seed: int = 7
    ):
        self.config = config or FormationConfig()
        self.width = width
        self.height = height
        self.focal = height / (2 * np.tan(np.radians(fov_deg) / 2))

        rng = np.random.default_rng(seed)
        self._stars = sphere_shell_points(rng, 600, 60.0, 310.0)
        self._snow = (rng.random((400, 3)) - 0.5) * np.array([100.0, 100.0, 60.0])
        self._snow_speed = 1.0 + rng.random(400)
        self._background_angle = 0.0

    def project(self, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        透视投影

        Returns:
            (Nx2 像素坐标, N 深度)，深度 <= 0 的点在相机后方
        """
        depth = self.config.camera_z - points[:, 2]
        safe = np.where(depth > 1e-3, depth, 1e-3)
        x = points[:, 0] / safe * self.focal + self.width / 2
        y = -points[:, 1] / safe * self.focal + self.height / 2
        return np.stack([x, y], axis=1), depth

    def _draw_background(self, canvas: np.ndarray, layer: str, dt: float):
        if layer == "starfield":
            self._background_angle -= 0.05 * dt
            points = self._stars @ rotation_matrix((0.0, self._background_angle, 0.0))[:3, :3].T
            color = (238, 255, 255)
        else:
            self._background_angle -= 0.02 * dt
            self._snow[:, 1] -= 8.0 * self._snow_speed * dt
            self._snow[self._snow[:, 1] < -50, 1] = 50.0
            points = self._snow
            color = (255, 255, 255)

        pixels, depth = self.project(points)
        for (x, y), d in zip(pixels.astype(int), depth):
            if d > 0 and 0 <= x < self.width and 0 <= y < self.height:
                canvas[y, x] = color

    def render(
        self,
        engine: FormationEngine,
        snapshot: FrameSnapshot,
        ctx: ModeContext,
        dt: float = 0.0,
        fps: float = 0.0,
        thumbnail: Optional[np.ndarray] = None
    ) -> np.ndarray:
        """
        绘制一帧

        Args:
            engine: 编队引擎（读取粒子材质）
            snapshot: 本帧粒子数据
            ctx: 模式上下文（读取整体旋转、模式、主题）
            dt: 帧间隔（秒），用于背景动画
            fps: 显示的帧率
            thumbnail: 摄像头画面缩略图，绘制在右下角
        """
        canvas = np.full((self.height, self.width, 3), BACKGROUND_BGR, dtype=np.uint8)
        self._draw_background(canvas, engine.background_layer, dt)

        world = rotation_matrix(ctx.rotation)[:3, :3]
        points = snapshot.positions @ world.T
        pixels, depth = self.project(points)

        colors = [PALETTE_BGR.get(p.palette, (200, 200, 200)) for p in engine.particles]
        for i in np.flatnonzero(snapshot.emissive_mask):
            intensity = snapshot.emissive_intensities[i]
            if intensity > 1.0:
                glow = hex_to_bgr(int(snapshot.emissive_colors[i]))
                colors[i] = tuple(min(255, c + int(g * 0.5 * intensity)) for c, g in zip(colors[i], glow))

        # 由远及近绘制
        order = np.argsort(-depth)
        for i in order:
            d = depth[i]
            if d <= 0 or snapshot.scales[i] < 0.02:
                continue
            radius = max(1, int(self.focal * snapshot.scales[i] * 0.4 / d))
            x, y = pixels[i]
            cv2.circle(canvas, (int(x), int(y)), radius, colors[i], -1, cv2.LINE_AA)

        self._draw_topper(canvas, snapshot, world)
        self._draw_hud(canvas, ctx, engine, fps)

        if thumbnail is not None:
            self._draw_thumbnail(canvas, thumbnail)

        return canvas

    def _draw_topper(self, canvas: np.ndarray, snapshot: FrameSnapshot, world: np.ndarray):
        star = snapshot.topper
        pixel, depth = self.project((world @ star.position)[None, :])
        if depth[0] <= 0:
            return

        x, y = pixel[0].astype(int)
        r = max(2, int(self.focal * 1.5 * star.scale / depth[0]))
        color = PALETTE_BGR.get(star.palette, (0, 215, 255))

        diamond = np.array([[x, y - r], [x + r, y], [x, y + r], [x - r, y]], dtype=np.int32)
        cv2.circle(canvas, (x, y), r * 2, hex_to_bgr(star.halo_color), 1, cv2.LINE_AA)
        cv2.fillPoly(canvas, [diamond], color, cv2.LINE_AA)

    @staticmethod
    def _draw_hud(canvas: np.ndarray, ctx: ModeContext, engine: FormationEngine, fps: float):
        font = cv2.FONT_HERSHEY_SIMPLEX
        lines = [
            f"Mode:  {ctx.mode.name}",
            f"Theme: {ctx.theme_index} ({engine.background_layer})",
            f"Scale: {ctx.scatter_scale:.2f}  Spin: ({ctx.spin_velocity[0]:.2f}, {ctx.spin_velocity[1]:.2f})",
            f"Hand:  {'YES' if ctx.hand_detected else 'NO'}",
            f"FPS:   {fps:.1f}",
        ]
        for i, line in enumerate(lines):
            y = 25 + i * 25
            # 阴影便于阅读
            cv2.putText(canvas, line, (11, y + 1), font, 0.55, (0, 0, 0), 2, cv2.LINE_AA)
            cv2.putText(canvas, line, (10, y), font, 0.55, (220, 220, 220), 1, cv2.LINE_AA)

    def _draw_thumbnail(self, canvas: np.ndarray, thumbnail: np.ndarray):
        h = self.height // 4
        w = int(thumbnail.shape[1] * h / thumbnail.shape[0])
        small = cv2.resize(thumbnail, (w, h), interpolation=cv2.INTER_AREA)
        canvas[-h - 10:-10, -w - 10:-10] = small
