"""
场景协调模块
把分类器、模式状态机、编队引擎和文字采样器按每帧固定顺序串起来

服务器模式和调试预览模式共用同一套流程：
    手势分类 -> 状态机更新 -> 整体旋转推进 -> 编队推进
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from config.settings import Config, default_config
from .detector import HandPose
from .formation import FormationEngine, FrameSnapshot, Particle
from .gesture import GestureClassifier, GestureSignal
from .glyph import GlyphSampler
from .layout import rotation_matrix
from .state_machine import TOPPER, Mode, ModeContext, ModeEvent, ModeStateMachine

logger = logging.getLogger(__name__)


class TreeScene:
    """
    手势圣诞树场景
    持有一帧更新所需的全部组件，对外只暴露 step() 和少量控制接口
    """

    def __init__(self, config: Optional[Config] = None, rng: Optional[np.random.Generator] = None):
        self.config = config or default_config
        self.rng = rng if rng is not None else np.random.default_rng(self.config.formation.seed)

        self.classifier = GestureClassifier(self.config.gesture)
        self.state_machine = ModeStateMachine(self.config.state_machine)
        self.engine = FormationEngine(self.config.formation, self.rng)
        self.sampler = GlyphSampler(self.config.glyph, self.rng)

        self._callbacks: List[Callable[[ModeEvent], None]] = []
        self.state_machine.register_callback(self._on_mode_event)

        self.time = 0.0
        self.last_signal = GestureSignal.none()
        self.glyph_text = ""

        self.engine.build()
        self.set_glyph_text(self.config.glyph.text)
        self.state_machine.set_theme(self.config.theme, 0.0)

    @property
    def context(self) -> ModeContext:
        return self.state_machine.context

    def register_callback(self, callback: Callable[[ModeEvent], None]):
        """注册模式事件回调（事件数据已补充场景信息）"""
        self._callbacks.append(callback)

    def _on_mode_event(self, event: ModeEvent):
        if event.event_type == "theme_changed":
            event.data["background"] = self.engine.apply_theme(event.data["theme"])
        elif event.event_type == "letter_open":
            event.data["letter"] = self.config.letter

        for callback in self._callbacks:
            try:
                callback(event)
            except Exception:
                logger.warning("场景事件回调异常: %s", event.event_type, exc_info=True)

    def step(self, pose: Optional[HandPose], timestamp: float, dt: float) -> FrameSnapshot:
        """
        推进一帧

        Args:
            pose: 本帧的手部关键点，未检测到手时为 None
            timestamp: 帧时间戳（毫秒），用于手势冷却
            dt: 帧间隔（秒）

        Returns:
            本帧的场景数据
        """
        signal = self.classifier.classify(pose)
        self.last_signal = signal

        self.state_machine.update(signal, timestamp, self.engine.photo_ids())
        self.state_machine.advance(dt)
        self.time += dt

        ctx = self.context
        world_inverse = None
        if ctx.mode is Mode.FOCUS:
            world_inverse = np.linalg.inv(rotation_matrix(ctx.rotation))

        return self.engine.update(dt, self.time, ctx, world_inverse)

    def set_glyph_text(self, text: str) -> int:
        """
        重新生成文字编队

        Returns:
            文字粒子数量
        """
        points = self.sampler.sample(text)
        self.engine.apply_glyph(self.sampler.assign(len(self.engine), points))
        self.glyph_text = text
        return self.engine.glyph.member_count

    def toggle_theme(self, timestamp: float):
        self.state_machine.set_theme((self.context.theme_index + 1) % 2, timestamp)

    def add_photo(self, aspect: float = 1.0, **meta) -> Particle:
        return self.engine.add_photo(aspect, **meta)

    def clear_photos(self) -> int:
        """删除所有照片；正在聚焦照片时回到星星"""
        removed = self.engine.remove_photos()
        ctx = self.context
        if removed and ctx.mode is Mode.FOCUS and ctx.focus_target not in (None, TOPPER):
            ctx.focus_target = TOPPER
        ctx.photo_cursor = -1
        return removed

    def describe(self) -> Dict[str, Any]:
        """场景的静态信息（连接时发送给客户端）"""
        ctx = self.context
        return {
            "mode": ctx.mode.value,
            "theme": ctx.theme_index,
            "background": self.engine.background_layer,
            "glyph_text": self.glyph_text,
            "camera_z": self.config.formation.camera_z,
            "particles": self.engine.palettes()
        }
