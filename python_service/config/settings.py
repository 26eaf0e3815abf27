"""
Gesture Tree 配置文件
包含手势识别阈值、模式状态机参数、粒子编队参数、服务器配置等
"""

import json
import logging
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

logger = logging.getLogger(__name__)


@dataclass
class GestureThresholds:
    """手势识别阈值配置（距离均为归一化坐标）"""

    # 捏合选择：拇指-食指指尖距离
    pinch_distance: float = 0.05
    pinch_middle_min: float = 0.15       # 中指到手腕的最小距离
    pinch_middle_ratio: float = 1.2      # 中指需比食指伸出更多

    # 三指展开（相对于手掌大小）
    three_finger_ratio: float = 1.5
    three_finger_pinky_ratio: float = 1.0

    # 握拳：四指指尖到手腕距离均小于此比例
    fist_ratio: float = 0.8

    # V 手势
    v_sign_ratio: float = 1.3
    v_sign_others_ratio: float = 0.5     # 无名指/小指相对食指/中指
    v_sign_spread_ratio: float = 1.2     # 指尖间距 / 指根间距

    # 指向
    point_min_distance: float = 0.1      # 食指到手腕的绝对距离
    point_others_ratio: float = 0.7

    # 张开手掌：平均指尖距离
    palm_open_threshold: float = 0.35


@dataclass
class StateMachineConfig:
    """模式状态机配置"""

    # 冷却时间（毫秒）
    letter_cooldown: int = 1000
    theme_cooldown: int = 2000

    # 旋转
    sensitivity: float = 6.0             # 手掌位移 -> 角速度增益
    spin_limit: float = 3.0
    spin_smoothing: float = 0.2
    spin_decay_lost: float = 0.95        # 未检测到手时每帧衰减
    spin_decay_idle: float = 0.9         # 回到 TREE / 指向时每帧衰减

    # 散开缩放
    scale_smoothing: float = 0.15
    scale_min: float = 0.1
    scale_max: float = 5.0

    # 手部跟随（TREE 模式下的轻微摆动）
    hand_follow_gain: float = 3.0
    hand_follow_smoothing: float = 0.1

    # 各模式下的整体旋转
    tree_spin_speed: float = 0.4
    tree_tilt: float = 0.15
    letter_tilt: float = 0.785398
    letter_spin_speed: float = 0.1


@dataclass
class FormationConfig:
    """粒子编队配置"""

    ornament_count: int = 3000
    dust_count: int = 1500
    gift_count: int = 20
    plush_count: int = 8

    tree_height: float = 30.0
    tree_radius: float = 10.0

    camera_z: float = 55.0
    focus_distance: float = 15.0         # 聚焦对象距相机的距离

    # 指数平滑速率（每秒）
    tree_rate: float = 3.0
    scatter_rate: float = 5.0
    name_rate: float = 4.0
    focus_rate: float = 6.0
    scale_rate: float = 5.0

    seed: Optional[int] = None


@dataclass
class GlyphConfig:
    """文字点阵配置"""

    text: str = "NOEL"
    canvas_width: int = 400
    canvas_height: int = 200
    intensity_threshold: int = 50
    pixel_scale: float = 0.12
    y_offset: float = 5.0
    depth_scale: float = 2.0
    depth_jitter: float = 1.5
    shell_radius: Tuple[float, float] = (30.0, 50.0)
    font_thickness: int = 12


@dataclass
class DetectorConfig:
    """手部检测器配置"""

    model_path: str = "assets/hand_landmarker.task"
    min_detection_confidence: float = 0.7
    min_presence_confidence: float = 0.6
    min_tracking_confidence: float = 0.5


@dataclass
class ServerConfig:
    """WebSocket 服务器配置"""

    host: str = "127.0.0.1"
    port: int = 8765

    # 广播帧率上限
    broadcast_fps: int = 30


@dataclass
class CameraConfig:
    """摄像头配置"""

    device_id: int = 0               # 摄像头设备ID
    width: int = 640                 # 分辨率宽度
    height: int = 480                # 分辨率高度
    fps: int = 30                    # 帧率
    mirror: bool = True              # 是否镜像（自拍模式）


@dataclass
class Config:
    """主配置类，整合所有配置"""

    gesture: GestureThresholds = field(default_factory=GestureThresholds)
    state_machine: StateMachineConfig = field(default_factory=StateMachineConfig)
    formation: FormationConfig = field(default_factory=FormationConfig)
    glyph: GlyphConfig = field(default_factory=GlyphConfig)
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    camera: CameraConfig = field(default_factory=CameraConfig)

    # 主题：0 = 金色, 1 = 冰雪
    theme: int = 0
    letter: str = "Merry Christmas!"

    # 调试选项
    debug: bool = False
    log_level: str = "INFO"


def _apply_overrides(target: Any, overrides: Dict[str, Any], prefix: str = ""):
    """把字典中的值写入 dataclass，未知键只记录警告"""
    known = {f.name for f in fields(target)}
    for key, value in overrides.items():
        name = f"{prefix}{key}"
        if key not in known:
            logger.warning("忽略未知配置项: %s", name)
            continue

        current = getattr(target, key)
        if is_dataclass(current):
            if not isinstance(value, dict):
                raise ValueError(f"配置项 {name} 应为对象")
            _apply_overrides(current, value, prefix=f"{name}.")
        elif isinstance(current, tuple):
            setattr(target, key, tuple(value))
        else:
            setattr(target, key, value)


def load_config(path: Optional[Union[str, Path]] = None) -> Config:
    """
    加载配置

    Args:
        path: JSON 配置文件路径，为 None 或文件不存在时使用默认配置

    Returns:
        Config 对象
    """
    config = Config()
    if path is None:
        return config

    path = Path(path)
    if not path.exists():
        logger.info("配置文件 %s 不存在，使用默认配置", path)
        return config

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"无效的配置文件 {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"无效的配置文件 {path}: 顶层应为对象")

    _apply_overrides(config, data)
    return config


# 创建默认配置实例
default_config = Config()
