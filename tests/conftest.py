"""测试公共夹具：合成的 21 点手部姿态和小规模配置"""

import numpy as np
import pytest

from config.settings import Config, FormationConfig
from core.detector import HandPose

WRIST = (0.5, 0.8)
MCP_Y = 0.7
# 食指、中指、无名指、小指指根的 x 坐标；手腕到中指指根 = 0.1
MCP_X = (0.46, 0.5, 0.54, 0.56)
THUMB_TIP = (0.36, 0.74)


def make_pose(
    index: float = 0.04,
    middle: float = 0.04,
    ring: float = 0.04,
    pinky: float = 0.04,
    spread: float = 0.0,
    thumb=None,
    offset=(0.0, 0.0)
) -> HandPose:
    """
    按各手指伸出的高度（指尖在手腕上方的距离）生成手部姿态

    spread 把食指和中指指尖向两侧分开
    """
    pts = np.zeros((21, 2))
    pts[0] = WRIST

    thumb_tip = np.array(thumb if thumb is not None else THUMB_TIP, dtype=float)
    for i in range(1, 4):
        pts[i] = np.array(WRIST) + (thumb_tip - WRIST) * i / 4
    pts[4] = thumb_tip

    reaches = (index, middle, ring, pinky)
    shifts = (-spread, spread, 0.0, 0.0)
    for finger, (reach, x, shift) in enumerate(zip(reaches, MCP_X, shifts)):
        base = 5 + finger * 4
        mcp = np.array([x, MCP_Y])
        tip = np.array([x + shift, WRIST[1] - reach])
        pts[base] = mcp
        pts[base + 1] = mcp + (tip - mcp) / 3
        pts[base + 2] = mcp + (tip - mcp) * 2 / 3
        pts[base + 3] = tip

    pts += np.asarray(offset, dtype=float)
    return HandPose.from_points(pts)


class PoseFactory:
    """常用手势"""

    @staticmethod
    def fist(**kw) -> HandPose:
        return make_pose(0.04, 0.04, 0.04, 0.04, **kw)

    @staticmethod
    def three_finger(**kw) -> HandPose:
        return make_pose(0.3, 0.3, 0.3, 0.04, **kw)

    @staticmethod
    def v_sign(**kw) -> HandPose:
        return make_pose(0.3, 0.3, 0.04, 0.04, spread=0.03, **kw)

    @staticmethod
    def pointing(**kw) -> HandPose:
        return make_pose(0.3, 0.04, 0.04, 0.04, **kw)

    @staticmethod
    def palm_open(reach: float = 0.4, **kw) -> HandPose:
        return make_pose(reach, reach, reach, reach, **kw)

    @staticmethod
    def pinch(**kw) -> HandPose:
        # 食指指尖在 (0.46, 0.65)，拇指贴着它
        return make_pose(0.15, 0.3, 0.04, 0.04, thumb=(0.47, 0.65), **kw)

    @staticmethod
    def neutral(**kw) -> HandPose:
        return make_pose(0.12, 0.12, 0.12, 0.04, **kw)

    make = staticmethod(make_pose)


@pytest.fixture
def poses() -> PoseFactory:
    return PoseFactory()


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)


@pytest.fixture
def formation_config() -> FormationConfig:
    return FormationConfig(ornament_count=60, dust_count=30, gift_count=4, plush_count=2, seed=7)


@pytest.fixture
def small_config(formation_config) -> Config:
    config = Config()
    config.formation = formation_config
    config.glyph.text = "HI"
    return config
