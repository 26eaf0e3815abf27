"""
摄像头采集模块
在主循环中同步读取视频帧，并附带单调递增的时间戳
"""

import logging
import time
from dataclasses import dataclass
from typing import Generator, Optional

import cv2
import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class Frame:
    """视频帧数据结构"""
    image: np.ndarray           # BGR 图像数据
    frame_id: int               # 帧序号
    timestamp: float            # 时间戳（毫秒）
    width: int                  # 图像宽度
    height: int                 # 图像高度


class CameraCapture:
    """
    摄像头采集类
    每次 read() 读取一帧，不使用后台线程
    """

    def __init__(
        self,
        device_id: int = 0,
        width: int = 640,
        height: int = 480,
        fps: int = 30,
        mirror: bool = True
    ):
        """
        初始化摄像头

        Args:
            device_id: 摄像头设备ID
            width: 分辨率宽度
            height: 分辨率高度
            fps: 目标帧率
            mirror: 是否水平翻转（镜像模式）
        """
        self.device_id = device_id
        self.width = width
        self.height = height
        self.fps = fps
        self.mirror = mirror

        self._cap: Optional[cv2.VideoCapture] = None
        self._frame_count = 0
        self._start_time = 0.0

    def start(self) -> bool:
        """
        打开摄像头

        Returns:
            是否成功打开
        """
        if self._cap is not None:
            return True

        cap = cv2.VideoCapture(self.device_id)
        if not cap.isOpened():
            logger.error("无法打开摄像头 %d", self.device_id)
            return False

        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        cap.set(cv2.CAP_PROP_FPS, self.fps)

        logger.info(
            "摄像头已启动: %dx%d @ %.1ffps",
            int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
            cap.get(cv2.CAP_PROP_FPS)
        )

        self._cap = cap
        self._frame_count = 0
        self._start_time = time.monotonic()
        return True

    def stop(self):
        """释放摄像头"""
        if self._cap is not None:
            self._cap.release()
            self._cap = None
            logger.info("摄像头已停止")

    def read(self) -> Optional[Frame]:
        """
        读取一帧图像

        Returns:
            Frame 对象，读取失败时返回 None
        """
        if self._cap is None:
            return None

        ret, image = self._cap.read()
        if not ret:
            logger.warning("读取帧失败")
            return None

        if self.mirror:
            image = cv2.flip(image, 1)

        self._frame_count += 1

        # 优先使用视频源自带的时间戳，同一帧重复读取时时间戳不变
        timestamp = self._cap.get(cv2.CAP_PROP_POS_MSEC)
        if not timestamp or timestamp <= 0:
            timestamp = (time.monotonic() - self._start_time) * 1000

        return Frame(
            image=image,
            frame_id=self._frame_count,
            timestamp=timestamp,
            width=image.shape[1],
            height=image.shape[0]
        )

    def read_generator(self) -> Generator[Frame, None, None]:
        """
        帧生成器，用于迭代读取

        Yields:
            Frame 对象
        """
        while self._cap is not None:
            frame = self.read()
            if frame:
                yield frame

    @property
    def is_running(self) -> bool:
        """是否正在运行"""
        return self._cap is not None

    @property
    def actual_fps(self) -> float:
        """计算实际帧率"""
        if self._frame_count == 0:
            return 0.0
        elapsed = time.monotonic() - self._start_time
        return self._frame_count / elapsed if elapsed > 0 else 0.0

    def __enter__(self):
        """支持 with 语句"""
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """支持 with 语句"""
        self.stop()
        return False
