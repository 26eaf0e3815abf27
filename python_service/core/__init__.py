"""
Gesture Tree 核心模块
包含手部检测、手势识别、模式状态机和粒子编队等核心功能
"""

from .capture import CameraCapture
from .detector import HandDetector, HandPose
from .formation import FormationEngine
from .gesture import GestureClassifier, GestureSignal, GestureType
from .glyph import GlyphSampler
from .scene import TreeScene
from .state_machine import Mode, ModeContext, ModeStateMachine

__all__ = [
    "CameraCapture",
    "HandDetector",
    "HandPose",
    "FormationEngine",
    "GestureClassifier",
    "GestureSignal",
    "GestureType",
    "GlyphSampler",
    "TreeScene",
    "Mode",
    "ModeContext",
    "ModeStateMachine"
]
