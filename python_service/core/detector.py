"""
手部检测模块
使用 MediaPipe Tasks HandLandmarker 进行手部关键点检测
"""

import logging
import time
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)


class LandmarkIndex(IntEnum):
    """MediaPipe 手部 21 个关键点索引"""
    WRIST = 0

    # 大拇指
    THUMB_CMC = 1
    THUMB_MCP = 2
    THUMB_IP = 3
    THUMB_TIP = 4

    # 食指
    INDEX_MCP = 5
    INDEX_PIP = 6
    INDEX_DIP = 7
    INDEX_TIP = 8

    # 中指
    MIDDLE_MCP = 9
    MIDDLE_PIP = 10
    MIDDLE_DIP = 11
    MIDDLE_TIP = 12

    # 无名指
    RING_MCP = 13
    RING_PIP = 14
    RING_DIP = 15
    RING_TIP = 16

    # 小指
    PINKY_MCP = 17
    PINKY_PIP = 18
    PINKY_DIP = 19
    PINKY_TIP = 20


NUM_LANDMARKS = 21

# 四指指尖（不含拇指），顺序：食指、中指、无名指、小指
FINGER_TIPS = (
    LandmarkIndex.INDEX_TIP,
    LandmarkIndex.MIDDLE_TIP,
    LandmarkIndex.RING_TIP,
    LandmarkIndex.PINKY_TIP,
)

# 骨骼连接定义（用于绘制）
HAND_CONNECTIONS = [
    (0, 1), (1, 2), (2, 3), (3, 4),        # 大拇指
    (0, 5), (5, 6), (6, 7), (7, 8),        # 食指
    (0, 9), (9, 10), (10, 11), (11, 12),   # 中指
    (0, 13), (13, 14), (14, 15), (15, 16), # 无名指
    (0, 17), (17, 18), (18, 19), (19, 20), # 小指
    (5, 9), (9, 13), (13, 17)              # 手掌横向连接
]


@dataclass(frozen=True)
class HandPose:
    """单手 21 个关键点（归一化 2D 坐标），只在当前帧内有效"""
    points: np.ndarray                     # 21x2

    @classmethod
    def from_points(cls, points: Sequence) -> Optional["HandPose"]:
        """
        从关键点序列创建

        点数不足 21 或含非有限值时返回 None（按未检测到手处理）
        """
        if points is None:
            return None

        arr = np.asarray(points, dtype=float)
        if arr.ndim != 2 or arr.shape[0] < NUM_LANDMARKS or arr.shape[1] < 2:
            return None

        arr = arr[:NUM_LANDMARKS, :2].copy()
        if not np.all(np.isfinite(arr)):
            return None

        arr.setflags(write=False)
        return cls(points=arr)

    def __getitem__(self, index: int) -> np.ndarray:
        return self.points[index]

    def distance(self, i: int, j: int) -> float:
        """两个关键点之间的欧氏距离"""
        return float(np.linalg.norm(self.points[i] - self.points[j]))


class HandDetector:
    """
    手部检测器
    封装 MediaPipe HandLandmarker（VIDEO 模式），只返回第一只手
    """

    def __init__(
        self,
        model_path: str = "assets/hand_landmarker.task",
        min_detection_confidence: float = 0.7,
        min_presence_confidence: float = 0.6,
        min_tracking_confidence: float = 0.5,
        landmarker=None
    ):
        """
        初始化检测器

        Args:
            model_path: hand_landmarker.task 模型文件路径
            min_detection_confidence: 检测置信度阈值
            min_presence_confidence: 存在置信度阈值
            min_tracking_confidence: 追踪置信度阈值
            landmarker: 已创建的 landmarker（提供 detect_for_video），为 None 时按模型文件创建
        """
        if landmarker is None:
            landmarker = self._create_landmarker(
                model_path,
                min_detection_confidence,
                min_presence_confidence,
                min_tracking_confidence
            )
        self._landmarker = landmarker

        self._last_timestamp: Optional[float] = None
        self._last_ms = -1
        self.was_skipped = False
        self.inference_time_ms = 0.0

    @staticmethod
    def _create_landmarker(
        model_path: str,
        min_detection_confidence: float,
        min_presence_confidence: float,
        min_tracking_confidence: float
    ):
        if not Path(model_path).exists():
            raise FileNotFoundError(f"找不到 MediaPipe 模型文件: {model_path}")

        import mediapipe as mp

        options = mp.tasks.vision.HandLandmarkerOptions(
            base_options=mp.tasks.BaseOptions(model_asset_path=model_path),
            running_mode=mp.tasks.vision.RunningMode.VIDEO,
            num_hands=1,
            min_hand_detection_confidence=min_detection_confidence,
            min_hand_presence_confidence=min_presence_confidence,
            min_tracking_confidence=min_tracking_confidence
        )
        logger.info("加载手部模型: %s", model_path)
        return mp.tasks.vision.HandLandmarker.create_from_options(options)

    def detect(self, image: np.ndarray, timestamp: float) -> Optional[HandPose]:
        """
        检测手部关键点

        同一时间戳（或更旧的时间戳）不会重复检测，此时 was_skipped 为 True

        Args:
            image: BGR 格式图像
            timestamp: 视频帧时间戳（毫秒）

        Returns:
            HandPose，未检测到手时返回 None
        """
        if self._last_timestamp is not None and timestamp <= self._last_timestamp:
            self.was_skipped = True
            return None

        self.was_skipped = False
        self._last_timestamp = timestamp

        start_time = time.time()

        # VIDEO 模式要求严格递增的整数毫秒
        timestamp_ms = max(self._last_ms + 1, int(timestamp))
        self._last_ms = timestamp_ms

        result = self._landmarker.detect_for_video(self._to_mp_image(image), timestamp_ms)

        self.inference_time_ms = (time.time() - start_time) * 1000

        if not result.hand_landmarks:
            return None

        return HandPose.from_points(
            [(lm.x, lm.y) for lm in result.hand_landmarks[0]]
        )

    @staticmethod
    def _to_mp_image(image: np.ndarray):
        import mediapipe as mp

        image_rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
        return mp.Image(image_format=mp.ImageFormat.SRGB, data=image_rgb)

    def close(self):
        """释放资源"""
        close = getattr(self._landmarker, "close", None)
        if close is not None:
            close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def draw_landmarks(
    image: np.ndarray,
    pose: Optional[HandPose],
    color: Tuple[int, int, int] = (0, 255, 255),  # 青色
    thickness: int = 2,
    circle_radius: int = 4
) -> np.ndarray:
    """在图像上绘制手部骨骼，返回新图像"""
    output = image.copy()
    if pose is None:
        return output

    h, w = output.shape[:2]
    pixels = [(int(x * w), int(y * h)) for x, y in pose.points]

    for start_idx, end_idx in HAND_CONNECTIONS:
        cv2.line(output, pixels[start_idx], pixels[end_idx], color, thickness)

    for i, point in enumerate(pixels):
        # 指尖用不同颜色
        if i in (4, 8, 12, 16, 20):
            cv2.circle(output, point, circle_radius + 2, (0, 255, 0), -1)
        else:
            cv2.circle(output, point, circle_radius, color, -1)

    return output
