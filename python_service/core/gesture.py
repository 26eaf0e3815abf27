"""
手势识别模块
基于手部关键点的距离比例进行手势分类

分类规则按固定优先级依次判断，第一个满足的规则胜出；
分类器本身无状态，时间上的平滑由模式状态机负责。
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple

import numpy as np

from config.settings import GestureThresholds
from .detector import FINGER_TIPS, HandPose, LandmarkIndex


class GestureType(Enum):
    """手势类型枚举"""
    NONE = "none"                                # 未检测到手
    PINCH_SELECT = "pinch_select"                # 拇指食指捏合 + 中指伸出
    THREE_FINGER_SPREAD = "three_finger_spread"  # 食指/中指/无名指展开
    FIST = "fist"                                # 握拳
    V_SIGN_SPREAD = "v_sign_spread"              # 剪刀手/V手势
    POINTING = "pointing"                        # 食指指向
    PALM_OPEN = "palm_open"                      # 张开手掌
    NEUTRAL = "neutral"                          # 检测到手但无手势


@dataclass(frozen=True)
class HandFeatures:
    """由关键点计算出的手部几何特征"""
    index: float             # 各指尖到手腕的距离
    middle: float
    ring: float
    pinky: float
    palm_size: float         # 手腕到中指根部
    openness: float          # 四指距离的平均值
    pinch: float             # 拇指-食指指尖距离
    tip_spread: float        # 食指-中指指尖距离
    base_spread: float       # 食指-中指指根距离
    palm: Tuple[float, float]

    @classmethod
    def from_pose(cls, pose: HandPose) -> "HandFeatures":
        index, middle, ring, pinky = (
            pose.distance(tip, LandmarkIndex.WRIST) for tip in FINGER_TIPS
        )
        palm = pose[LandmarkIndex.MIDDLE_MCP]
        return cls(
            index=index,
            middle=middle,
            ring=ring,
            pinky=pinky,
            palm_size=pose.distance(LandmarkIndex.WRIST, LandmarkIndex.MIDDLE_MCP),
            openness=(index + middle + ring + pinky) / 4,
            pinch=pose.distance(LandmarkIndex.THUMB_TIP, LandmarkIndex.INDEX_TIP),
            tip_spread=pose.distance(LandmarkIndex.INDEX_TIP, LandmarkIndex.MIDDLE_TIP),
            base_spread=pose.distance(LandmarkIndex.INDEX_MCP, LandmarkIndex.MIDDLE_MCP),
            palm=(float(palm[0]), float(palm[1]))
        )


# --- 各手势判定 ---

def is_pinch_select(f: HandFeatures, t: GestureThresholds) -> bool:
    return (
        f.pinch < t.pinch_distance
        and f.middle > t.pinch_middle_min
        and f.middle > f.index * t.pinch_middle_ratio
    )


def is_three_finger_spread(f: HandFeatures, t: GestureThresholds) -> bool:
    limit = f.palm_size * t.three_finger_ratio
    return (
        f.index > limit and f.middle > limit and f.ring > limit
        and f.pinky < f.palm_size * t.three_finger_pinky_ratio
    )


def is_fist(f: HandFeatures, t: GestureThresholds) -> bool:
    limit = f.palm_size * t.fist_ratio
    return max(f.index, f.middle, f.ring, f.pinky) < limit


def is_v_sign_spread(f: HandFeatures, t: GestureThresholds) -> bool:
    high = f.index > f.palm_size * t.v_sign_ratio and f.middle > f.palm_size * t.v_sign_ratio
    others_low = (
        f.ring < f.index * t.v_sign_others_ratio
        and f.pinky < f.middle * t.v_sign_others_ratio
    )
    spread = f.tip_spread > f.base_spread * t.v_sign_spread_ratio
    return high and others_low and spread


def is_pointing(f: HandFeatures, t: GestureThresholds) -> bool:
    limit = f.index * t.point_others_ratio
    return f.index > t.point_min_distance and f.middle < limit and f.ring < limit


def is_palm_open(f: HandFeatures, t: GestureThresholds) -> bool:
    return f.openness > t.palm_open_threshold


@dataclass(frozen=True)
class GestureRule:
    """一条分类规则：判定函数 -> 手势"""
    gesture: GestureType
    predicate: Callable[[HandFeatures, GestureThresholds], bool]


# 优先级从高到低
GESTURE_RULES: Tuple[GestureRule, ...] = (
    GestureRule(GestureType.PINCH_SELECT, is_pinch_select),
    GestureRule(GestureType.THREE_FINGER_SPREAD, is_three_finger_spread),
    GestureRule(GestureType.FIST, is_fist),
    GestureRule(GestureType.V_SIGN_SPREAD, is_v_sign_spread),
    GestureRule(GestureType.POINTING, is_pointing),
    GestureRule(GestureType.PALM_OPEN, is_palm_open),
)


@dataclass(frozen=True)
class GestureSignal:
    """
    单帧手势信号

    gesture 为按优先级胜出的手势；theme_toggle / pointing / palm_open
    是对应判定在本帧是否成立，不受优先级影响，供状态机在
    V 手势之后继续处理指向和张开手掌。
    """
    gesture: GestureType
    openness: float = 0.0
    palm: Tuple[float, float] = (0.5, 0.5)
    pointing_confidence: float = 0.0
    theme_toggle: bool = False
    pointing: bool = False
    palm_open: bool = False

    @classmethod
    def none(cls) -> "GestureSignal":
        """未检测到手"""
        return cls(GestureType.NONE)

    @property
    def detected(self) -> bool:
        return self.gesture is not GestureType.NONE


class GestureClassifier:
    """
    手势分类器
    使用基于规则的方法识别手势
    """

    def __init__(
        self,
        thresholds: Optional[GestureThresholds] = None,
        rules: Tuple[GestureRule, ...] = GESTURE_RULES
    ):
        self.thresholds = thresholds or GestureThresholds()
        self.rules = rules

    def classify(self, pose: Optional[HandPose]) -> GestureSignal:
        """
        对手部关键点进行手势分类

        Args:
            pose: 手部关键点，None 表示未检测到手

        Returns:
            GestureSignal
        """
        if pose is None:
            return GestureSignal.none()

        f = HandFeatures.from_pose(pose)
        t = self.thresholds

        gesture = GestureType.NEUTRAL
        for rule in self.rules:
            if rule.predicate(f, t):
                gesture = rule.gesture
                break

        return GestureSignal(
            gesture=gesture,
            openness=f.openness,
            palm=f.palm,
            pointing_confidence=self._pointing_confidence(f),
            theme_toggle=is_v_sign_spread(f, t),
            pointing=is_pointing(f, t),
            palm_open=is_palm_open(f, t)
        )

    @staticmethod
    def _pointing_confidence(f: HandFeatures) -> float:
        """食指相对中指/无名指伸出的程度，0~1"""
        if f.index < 1e-6:
            return 0.0
        return float(np.clip(1.0 - max(f.middle, f.ring) / f.index, 0.0, 1.0))
