"""
WebSocket 服务模块
把每帧的粒子编队数据推送给前端，并接收前端的控制消息
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional, Set

import websockets
from websockets.asyncio.server import ServerConnection, serve

from config.settings import Config, default_config
from core.capture import CameraCapture
from core.detector import HandDetector
from core.scene import TreeScene
from core.state_machine import ModeEvent

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


@dataclass
class WebSocketMessage:
    """WebSocket 消息结构"""
    type: str
    timestamp: float
    data: Dict[str, Any]

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)

    @classmethod
    def from_json(cls, json_str: str) -> "WebSocketMessage":
        data = json.loads(json_str)
        if not isinstance(data, dict) or "type" not in data:
            raise ValueError("消息缺少 type 字段")

        payload = data.get("data") or {}
        if not isinstance(payload, dict):
            raise ValueError("data 字段必须是对象")

        return cls(
            type=str(data["type"]),
            timestamp=float(data.get("timestamp", 0.0)),
            data=payload
        )


def _now_ms() -> float:
    return time.time() * 1000


class GestureTreeServer:
    """
    手势圣诞树 WebSocket 服务器
    在同一个事件循环里完成采集、识别、编队推进和广播
    """

    def __init__(self, config: Optional[Config] = None, scene: Optional[TreeScene] = None):
        self.config = config or default_config
        self.scene = scene or TreeScene(self.config)
        self.scene.register_callback(self._on_mode_event)

        self.camera: Optional[CameraCapture] = None
        self.detector: Optional[HandDetector] = None

        # WebSocket 连接
        self._clients: Set[ServerConnection] = set()

        # 运行状态
        self._running = False
        self._processing_task: Optional[asyncio.Task] = None
        self._last_step = 0.0
        self._last_broadcast = 0.0

        # 统计信息
        self._frame_count = 0
        self._start_time = 0.0

    async def start(self):
        """启动服务"""
        logger.info("正在初始化组件...")

        self.camera = CameraCapture(
            device_id=self.config.camera.device_id,
            width=self.config.camera.width,
            height=self.config.camera.height,
            fps=self.config.camera.fps,
            mirror=self.config.camera.mirror
        )

        if not self.camera.start():
            raise RuntimeError("无法启动摄像头")

        det = self.config.detector
        self.detector = HandDetector(
            model_path=det.model_path,
            min_detection_confidence=det.min_detection_confidence,
            min_presence_confidence=det.min_presence_confidence,
            min_tracking_confidence=det.min_tracking_confidence
        )

        self._running = True
        self._start_time = time.monotonic()
        self._last_step = self._start_time

        logger.info("组件初始化完成")

    async def stop(self):
        """停止服务"""
        logger.info("正在停止服务...")

        self._running = False

        if self._processing_task:
            self._processing_task.cancel()
            try:
                await self._processing_task
            except asyncio.CancelledError:
                pass

        for client in self._clients.copy():
            await client.close()

        if self.camera:
            self.camera.stop()

        if self.detector:
            self.detector.close()

        logger.info("服务已停止")

    def _on_mode_event(self, event: ModeEvent):
        """模式事件回调（在帧处理流程内同步调用）"""
        message = WebSocketMessage(
            type="mode_event",
            timestamp=event.timestamp,
            data=event.to_dict()
        )
        try:
            asyncio.get_running_loop().create_task(self._broadcast(message.to_json()))
        except RuntimeError:
            # 没有运行中的事件循环（例如启动前设置主题）
            logger.debug("事件未广播: %s", event.event_type)

    async def _broadcast(self, message: str):
        """广播消息到所有客户端"""
        if not self._clients:
            return

        # 并发发送
        await asyncio.gather(
            *[client.send(message) for client in self._clients.copy()],
            return_exceptions=True
        )

    def _frame_message(self, frame_id: int, timestamp: float, snapshot) -> WebSocketMessage:
        ctx = self.scene.context
        signal = self.scene.last_signal
        return WebSocketMessage(
            type="frame_data",
            timestamp=timestamp,
            data={
                "frame_id": frame_id,
                "mode": ctx.mode.value,
                "theme": ctx.theme_index,
                "hand_detected": ctx.hand_detected,
                "gesture": signal.gesture.value,
                "rotation": ctx.rotation.round(4).tolist(),
                "scatter_scale": round(ctx.scatter_scale, 4),
                "inference_time_ms": self.detector.inference_time_ms if self.detector else 0.0,
                "scene": snapshot.to_dict()
            }
        )

    async def _process_frames(self):
        """帧处理主循环"""
        logger.info("开始帧处理...")
        min_interval = 1.0 / max(self.config.server.broadcast_fps, 1)

        while self._running:
            frame = self.camera.read()
            if frame is None:
                await asyncio.sleep(0.01)
                continue

            self._frame_count += 1

            pose = self.detector.detect(frame.image, frame.timestamp)

            now = time.monotonic()
            dt = now - self._last_step
            self._last_step = now

            snapshot = self.scene.step(pose, frame.timestamp, dt)

            if self._clients and now - self._last_broadcast >= min_interval:
                self._last_broadcast = now
                message = self._frame_message(frame.frame_id, frame.timestamp, snapshot)
                await self._broadcast(message.to_json())

            # 让出事件循环，处理连接和控制消息
            await asyncio.sleep(0)

    async def handle_client(self, websocket: ServerConnection):
        """处理客户端连接"""
        client_id = id(websocket)
        logger.info("客户端已连接: %d", client_id)

        self._clients.add(websocket)

        # 发送欢迎消息，附带粒子的静态信息
        welcome = WebSocketMessage(
            type="connected",
            timestamp=_now_ms(),
            data={
                "message": "Welcome to Gesture Tree",
                "version": VERSION,
                "scene": self.scene.describe()
            }
        )
        await websocket.send(welcome.to_json())

        try:
            async for message in websocket:
                await self._handle_message(websocket, message)
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            self._clients.discard(websocket)
            logger.info("客户端已断开: %d", client_id)

    async def _handle_message(self, websocket: ServerConnection, message: str):
        """处理客户端消息，格式错误的消息只记录警告"""
        try:
            msg = WebSocketMessage.from_json(message)
        except (ValueError, TypeError) as e:
            logger.warning("无效的消息 %r: %s", message[:200], e)
            return

        try:
            reply = self.apply_control(msg.type, msg.data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("处理消息 %s 失败: %s", msg.type, e)
            return

        if reply is None:
            return

        if reply.type == "pong":
            await websocket.send(reply.to_json())
        else:
            await self._broadcast(reply.to_json())

    def apply_control(self, msg_type: str, data: Dict[str, Any]) -> Optional[WebSocketMessage]:
        """
        执行控制消息

        Args:
            msg_type: 消息类型
            data: 消息数据

        Returns:
            需要回复或广播的消息，没有时返回 None
        """
        scene = self.scene
        now = _now_ms()

        if msg_type == "ping":
            return WebSocketMessage(type="pong", timestamp=now, data={})

        if msg_type == "close_letter":
            scene.state_machine.close_letter(now)
            return None

        if msg_type == "set_theme":
            scene.state_machine.set_theme(int(data["theme"]), now)
            return None

        if msg_type == "set_glyph_text":
            text = str(data["text"])
            members = scene.set_glyph_text(text)
            return WebSocketMessage(
                type="glyph_updated",
                timestamp=now,
                data={"text": text, "members": members}
            )

        if msg_type == "add_photo":
            meta = {k: v for k, v in data.items() if k != "aspect"}
            photo = scene.add_photo(float(data.get("aspect", 1.0)), **meta)
            logger.debug("照片 #%d 元数据: %s", photo.pid, meta)
            return WebSocketMessage(type="particles_changed", timestamp=now, data=scene.describe())

        if msg_type == "clear_photos":
            scene.clear_photos()
            return WebSocketMessage(type="particles_changed", timestamp=now, data=scene.describe())

        logger.warning("未知的消息类型: %s", msg_type)
        return None

    async def run(self, host: str = "127.0.0.1", port: int = 8765):
        """运行服务器"""
        await self.start()

        self._processing_task = asyncio.create_task(self._process_frames())

        logger.info("WebSocket 服务器启动: ws://%s:%d", host, port)

        async with serve(self.handle_client, host, port):
            while self._running:
                await asyncio.sleep(5)

                if self._frame_count > 0:
                    elapsed = time.monotonic() - self._start_time
                    fps = self._frame_count / elapsed if elapsed > 0 else 0
                    logger.debug(
                        "帧数: %d, FPS: %.1f, 客户端: %d",
                        self._frame_count, fps, len(self._clients)
                    )

                # 帧处理任务异常退出时停止服务
                if self._processing_task.done():
                    self._processing_task.result()
