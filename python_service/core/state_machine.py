"""
模式状态机模块
把逐帧的手势信号转换为持久的交互模式，并维护旋转、散开缩放等连续参数
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Union

import numpy as np

from config.settings import StateMachineConfig
from .gesture import GestureSignal, GestureType

logger = logging.getLogger(__name__)


class Mode(Enum):
    """交互模式"""
    TREE = "tree"           # 圣诞树（默认）
    SCATTER = "scatter"     # 散开成球
    FOCUS = "focus"         # 聚焦单个对象
    LETTER = "letter"       # 信件
    NAME = "name"           # 文字


# 聚焦目标为树顶星星时使用的标记
TOPPER = "topper"

FocusTarget = Union[int, str]


@dataclass
class ModeEvent:
    """模式事件"""
    event_type: str          # "mode_changed" | "theme_changed" | "letter_open" | "focus_changed"
    mode: Mode
    timestamp: float         # 时间戳（毫秒）
    data: Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "event_type": self.event_type,
            "mode": self.mode.value,
            "timestamp": self.timestamp,
            "data": self.data
        }


@dataclass
class ModeContext:
    """跨帧保存的交互状态，只在每帧的更新流程中修改"""
    mode: Mode = Mode.TREE
    focus_target: Optional[FocusTarget] = None
    photo_cursor: int = -1                   # -1 表示未选中任何照片
    was_pointing: bool = False

    scatter_scale: float = 1.0
    baseline_openness: Optional[float] = None
    palm_reference: Optional[np.ndarray] = None   # 只在 SCATTER 中有效

    spin_velocity: np.ndarray = field(default_factory=lambda: np.zeros(2))
    rotation: np.ndarray = field(default_factory=lambda: np.zeros(3))
    hand_offset: np.ndarray = field(default_factory=lambda: np.zeros(2))
    hand_detected: bool = False

    gesture_debounce_timestamp: Optional[float] = None
    letter_debounce_timestamp: Optional[float] = None

    theme_index: int = 0


def scatter_scale_target(baseline: float, openness: float, lo: float = 0.1, hi: float = 5.0) -> float:
    """手张得越小散得越开：clamp((baseline / openness)^2, lo, hi)"""
    if openness <= 1e-9:
        return hi
    return float(np.clip((baseline / openness) ** 2, lo, hi))


def _approach(current: float, target: float, rate: float) -> float:
    return current + (target - current) * min(rate, 1.0)


class ModeStateMachine:
    """
    模式状态机
    每帧消费一个 GestureSignal，更新 ModeContext
    """

    def __init__(
        self,
        config: Optional[StateMachineConfig] = None,
        context: Optional[ModeContext] = None
    ):
        self.config = config or StateMachineConfig()
        self.context = context or ModeContext()

        # 事件回调
        self._callbacks: List[Callable[[ModeEvent], None]] = []

    @property
    def mode(self) -> Mode:
        return self.context.mode

    def register_callback(self, callback: Callable[[ModeEvent], None]):
        """注册事件回调"""
        self._callbacks.append(callback)

    def _emit_event(self, event: ModeEvent):
        """发送事件"""
        for callback in self._callbacks:
            try:
                callback(event)
            except Exception:
                logger.warning("事件回调异常: %s", event.event_type, exc_info=True)

    def _set_mode(self, mode: Mode, timestamp: float):
        ctx = self.context
        if ctx.mode is mode:
            return

        previous = ctx.mode
        ctx.mode = mode
        if mode is not Mode.FOCUS:
            ctx.focus_target = None

        logger.info("模式切换: %s -> %s", previous.value, mode.value)
        self._emit_event(ModeEvent(
            event_type="mode_changed",
            mode=mode,
            timestamp=timestamp,
            data={"previous": previous.value}
        ))

    @staticmethod
    def _cooldown_elapsed(last: Optional[float], now: float, window: float) -> bool:
        return last is None or now - last > window

    def update(
        self,
        signal: GestureSignal,
        timestamp: Optional[float] = None,
        photo_ids: Sequence[int] = ()
    ) -> Mode:
        """
        处理一帧手势信号

        Args:
            signal: 手势信号
            timestamp: 时间戳（毫秒），默认使用当前单调时间
            photo_ids: 照片粒子 ID（按创建顺序），用于指向时轮换聚焦目标

        Returns:
            处理后的模式
        """
        if timestamp is None:
            timestamp = time.monotonic() * 1000

        ctx = self.context
        cfg = self.config

        # 信件模式只能由外部关闭
        if ctx.mode is Mode.LETTER:
            return ctx.mode

        if not signal.detected:
            ctx.hand_detected = False
            return ctx.mode

        ctx.hand_detected = True
        gesture = signal.gesture

        if gesture is GestureType.PINCH_SELECT:
            if self._cooldown_elapsed(ctx.letter_debounce_timestamp, timestamp, cfg.letter_cooldown):
                ctx.letter_debounce_timestamp = timestamp
                self.open_letter(timestamp)
            return ctx.mode

        if gesture is GestureType.THREE_FINGER_SPREAD:
            if ctx.mode is not Mode.NAME:
                self._set_mode(Mode.NAME, timestamp)
                ctx.spin_velocity[:] = 0.0
            return ctx.mode

        if gesture is GestureType.FIST:
            if ctx.mode in (Mode.NAME, Mode.SCATTER):
                self._set_mode(Mode.TREE, timestamp)
            return ctx.mode

        # 主题切换放在文字模式的锁定之前，显示文字时也可以换主题
        if signal.theme_toggle:
            if self._cooldown_elapsed(ctx.gesture_debounce_timestamp, timestamp, cfg.theme_cooldown):
                ctx.gesture_debounce_timestamp = timestamp
                self.set_theme((ctx.theme_index + 1) % 2, timestamp)

        # 文字模式：只有张开手掌才能打断
        if ctx.mode is Mode.NAME and not signal.palm_open:
            return ctx.mode

        if signal.pointing:
            self._update_focus(timestamp, photo_ids)
        else:
            ctx.was_pointing = False
            if signal.palm_open:
                self._update_scatter(signal, timestamp)
            elif ctx.mode is not Mode.NAME:
                self._set_mode(Mode.TREE, timestamp)
                ctx.palm_reference = None
                ctx.scatter_scale = 1.0
                ctx.spin_velocity *= cfg.spin_decay_idle

        if ctx.mode not in (Mode.FOCUS, Mode.NAME):
            target = (np.asarray(signal.palm) - 0.5) * cfg.hand_follow_gain
            ctx.hand_offset += (target - ctx.hand_offset) * cfg.hand_follow_smoothing

        return ctx.mode

    def _update_focus(self, timestamp: float, photo_ids: Sequence[int]):
        ctx = self.context

        self._set_mode(Mode.FOCUS, timestamp)

        # 只在刚开始指向的那一帧切换目标
        if not ctx.was_pointing:
            ctx.photo_cursor += 1
            if ctx.photo_cursor < len(photo_ids):
                ctx.focus_target = photo_ids[ctx.photo_cursor]
            else:
                ctx.focus_target = TOPPER
                ctx.photo_cursor = -1

            logger.debug("聚焦目标: %s", ctx.focus_target)
            self._emit_event(ModeEvent(
                event_type="focus_changed",
                mode=ctx.mode,
                timestamp=timestamp,
                data={"target": ctx.focus_target}
            ))

        ctx.was_pointing = True
        ctx.palm_reference = None
        ctx.spin_velocity *= self.config.spin_decay_idle

    def _update_scatter(self, signal: GestureSignal, timestamp: float):
        ctx = self.context
        cfg = self.config

        # 刚进入 SCATTER 时重新锚定手掌位置
        if ctx.mode is not Mode.SCATTER or ctx.palm_reference is None:
            ctx.palm_reference = np.asarray(signal.palm, dtype=float).copy()
            ctx.baseline_openness = signal.openness
            ctx.scatter_scale = 1.0

        self._set_mode(Mode.SCATTER, timestamp)

        if ctx.baseline_openness:
            target = scatter_scale_target(
                ctx.baseline_openness, signal.openness, cfg.scale_min, cfg.scale_max
            )
            ctx.scatter_scale = _approach(ctx.scatter_scale, target, cfg.scale_smoothing)

        dx, dy = np.asarray(signal.palm) - ctx.palm_reference
        target_spin = np.clip(
            np.array([-dy, dx]) * cfg.sensitivity, -cfg.spin_limit, cfg.spin_limit
        )
        ctx.spin_velocity += (target_spin - ctx.spin_velocity) * cfg.spin_smoothing

    def advance(self, dt: float):
        """
        推进整体旋转（每帧调用一次）

        Args:
            dt: 帧间隔（秒）
        """
        ctx = self.context
        cfg = self.config
        rot = ctx.rotation

        if not ctx.hand_detected:
            ctx.spin_velocity *= cfg.spin_decay_lost

        if ctx.mode is Mode.LETTER:
            rot[0] = _approach(rot[0], cfg.letter_tilt, dt * 1.5)
            rot[1] -= cfg.letter_spin_speed * dt
        elif ctx.mode is Mode.NAME:
            rot[0] = _approach(rot[0], 0.0, dt * 2.0)
            rot[1] = _approach(rot[1], 0.0, dt * 2.0)
        elif ctx.mode is Mode.TREE:
            rot[1] -= cfg.tree_spin_speed * dt
            rot[0] = _approach(rot[0], cfg.tree_tilt, dt * 2.0)
            sway = ctx.hand_offset[0] if ctx.hand_detected else 0.0
            rot[2] = _approach(rot[2], sway * 0.1, dt * 2.0)
        elif ctx.mode is Mode.SCATTER:
            rot[0] += ctx.spin_velocity[0] * dt
            rot[1] += ctx.spin_velocity[1] * dt

    def open_letter(self, timestamp: Optional[float] = None):
        """进入信件模式"""
        if timestamp is None:
            timestamp = time.monotonic() * 1000
        if self.context.mode is Mode.LETTER:
            return

        self._set_mode(Mode.LETTER, timestamp)
        self._emit_event(ModeEvent(event_type="letter_open", mode=Mode.LETTER, timestamp=timestamp))

    def close_letter(self, timestamp: Optional[float] = None):
        """关闭信件（由外部界面触发），回到 TREE"""
        if timestamp is None:
            timestamp = time.monotonic() * 1000

        self._set_mode(Mode.TREE, timestamp)
        self.context.spin_velocity[:] = 0.0

    def set_theme(self, theme_index: int, timestamp: Optional[float] = None):
        """设置主题（0 或 1），不改变模式"""
        if timestamp is None:
            timestamp = time.monotonic() * 1000

        ctx = self.context
        ctx.theme_index = int(theme_index) % 2
        logger.info("切换主题: %d", ctx.theme_index)
        self._emit_event(ModeEvent(
            event_type="theme_changed",
            mode=ctx.mode,
            timestamp=timestamp,
            data={"theme": ctx.theme_index}
        ))

    def reset(self):
        """重置为初始状态（保留主题）"""
        theme = self.context.theme_index
        self.context = ModeContext(theme_index=theme)
