"""
粒子编队模块
管理所有装饰粒子及其各模式下的目标位置，并逐帧推进位置、缩放和发光强度

粒子的静态数据（类型、目标位置、随机相位）在创建时生成；
当前变换只由 FormationEngine 持有和修改。
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from config.settings import FormationConfig
from .glyph import GlyphAssignment
from .layout import base_ring_points, sphere_shell_points, transform_point, tree_points
from .state_machine import TOPPER, Mode, ModeContext

logger = logging.getLogger(__name__)


class ParticleKind(Enum):
    """粒子类型"""
    BOX = "box"
    GOLD_BOX = "gold_box"
    GOLD_SPHERE = "gold_sphere"
    RED = "red"
    CANE = "cane"
    DUST = "dust"
    PHOTO = "photo"
    GIFT = "gift"
    PLUSH = "plush"


ORNAMENT_KINDS = (
    ParticleKind.BOX,
    ParticleKind.GOLD_BOX,
    ParticleKind.GOLD_SPHERE,
    ParticleKind.RED,
    ParticleKind.CANE,
)
ORNAMENT_WEIGHTS = (0.35, 0.35, 0.20, 0.06, 0.04)

# 各主题下装饰物使用的材质：(金色主题, 冰雪主题)
ORNAMENT_PALETTES = {
    ParticleKind.BOX: ("green", "ice"),
    ParticleKind.GOLD_BOX: ("gold", "ice"),
    ParticleKind.GOLD_SPHERE: ("gold", "ice"),
    ParticleKind.RED: ("red", "snow"),
    ParticleKind.CANE: ("candy", "ice"),
}

# 带发光通道的材质及其基础发光色
EMISSIVE_COLORS = {
    "gold": 0x664400,
    "green": 0x001100,
    "red": 0x330000,
    "candy": 0x222222,
    "ice": 0x001133,
    "snow": 0xaaaaaa,
}

# 文字模式下文字粒子的发光色（按主题）
GLYPH_HUES = (0xffaa00, 0x00ffff)

BACKGROUND_LAYERS = ("starfield", "snowfall")


@dataclass
class Particle:
    """单个装饰粒子的静态数据"""
    pid: int
    kind: ParticleKind
    base_scale: float
    phase_offset: float
    speed_factor: float
    pos_tree: np.ndarray
    pos_scatter: np.ndarray
    palette: str = ""
    accent: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_dust_like(self) -> bool:
        return self.kind is ParticleKind.DUST

    @property
    def has_emissive(self) -> bool:
        return self.palette in EMISSIVE_COLORS

    @property
    def emissive(self) -> Optional[int]:
        return EMISSIVE_COLORS.get(self.palette)


@dataclass
class Topper:
    """树顶星星"""
    home: np.ndarray
    position: np.ndarray
    scale: float = 1.0
    rotation: np.ndarray = field(default_factory=lambda: np.zeros(3))
    facing_camera: bool = False
    palette: str = "star_gold"
    halo_color: int = 0xffaa00

    def to_dict(self) -> Dict:
        return {
            "position": self.position.round(3).tolist(),
            "scale": round(float(self.scale), 4),
            "rotation": self.rotation.round(4).tolist(),
            "facing_camera": self.facing_camera,
            "palette": self.palette,
            "halo_color": self.halo_color
        }


@dataclass
class FrameSnapshot:
    """写入场景的一帧数据"""
    positions: np.ndarray
    scales: np.ndarray
    emissive_colors: np.ndarray
    emissive_intensities: np.ndarray
    emissive_mask: np.ndarray
    facing: np.ndarray
    topper: Topper

    def to_dict(self) -> Dict:
        emissive = np.flatnonzero(self.emissive_mask)
        return {
            "positions": self.positions.round(3).tolist(),
            "scales": self.scales.round(4).tolist(),
            "emissive": {
                "indices": emissive.tolist(),
                "colors": self.emissive_colors[emissive].tolist(),
                "intensities": self.emissive_intensities[emissive].round(3).tolist()
            },
            "facing": np.flatnonzero(self.facing).tolist(),
            "topper": self.topper.to_dict()
        }


@dataclass(frozen=True)
class _StaticArrays:
    """按粒子顺序打包的静态数据，结构变化时整体重建"""
    kinds: Tuple[ParticleKind, ...]
    base_scale: np.ndarray
    phase: np.ndarray
    speed: np.ndarray
    pos_tree: np.ndarray
    pos_scatter: np.ndarray
    is_dust: np.ndarray
    is_photo: np.ndarray
    is_keepsake: np.ndarray      # 礼物和玩偶
    has_emissive: np.ndarray
    emissive_base: np.ndarray

    @classmethod
    def pack(cls, particles: Sequence[Particle]) -> "_StaticArrays":
        kinds = tuple(p.kind for p in particles)
        return cls(
            kinds=kinds,
            base_scale=np.array([p.base_scale for p in particles], dtype=float),
            phase=np.array([p.phase_offset for p in particles], dtype=float),
            speed=np.array([p.speed_factor for p in particles], dtype=float),
            pos_tree=np.array([p.pos_tree for p in particles], dtype=float).reshape(-1, 3),
            pos_scatter=np.array([p.pos_scatter for p in particles], dtype=float).reshape(-1, 3),
            is_dust=np.array([k is ParticleKind.DUST for k in kinds], dtype=bool),
            is_photo=np.array([k is ParticleKind.PHOTO for k in kinds], dtype=bool),
            is_keepsake=np.array(
                [k in (ParticleKind.GIFT, ParticleKind.PLUSH) for k in kinds], dtype=bool
            ),
            has_emissive=np.array(
                [p.has_emissive and not p.is_dust_like for p in particles], dtype=bool
            ),
            emissive_base=np.array([p.emissive or 0 for p in particles], dtype=int)
        )


@dataclass
class ResolvedTargets:
    """一帧内各粒子解析出的目标（纯计算结果）"""
    positions: np.ndarray
    scales: np.ndarray
    rates: np.ndarray
    facing: np.ndarray


def _smoothing(rate, dt: float):
    """指数平滑系数，dt 有限时永远小于 1"""
    return 1.0 - np.exp(-np.asarray(rate) * max(dt, 0.0))


def resolve_targets(
    static: _StaticArrays,
    glyph: GlyphAssignment,
    mode: Mode,
    time: float,
    scatter_scale: float = 1.0,
    focus_index: Optional[int] = None,
    focus_point: Optional[np.ndarray] = None,
    config: Optional[FormationConfig] = None
) -> ResolvedTargets:
    """
    按模式解析所有粒子的目标位置、目标缩放和平滑速率

    只依赖静态数据、模式参数和时间，不修改任何状态
    """
    cfg = config or FormationConfig()
    n = len(static.kinds)
    base = static.base_scale

    scales = base.copy()
    rates = np.full(n, cfg.tree_rate)
    facing = np.zeros(n, dtype=bool)

    if mode is Mode.SCATTER:
        targets = static.pos_scatter * scatter_scale
        rates[:] = cfg.scatter_rate
    elif mode is Mode.LETTER:
        targets = static.pos_scatter.copy()
    elif mode is Mode.NAME:
        targets = np.array(glyph.points, dtype=float)
        rates[:] = cfg.name_rate
        scales = np.where(glyph.members, base * 2.5, 0.0)
    elif mode is Mode.FOCUS:
        targets = static.pos_scatter.copy()
        scales[:] = 0.01
        if focus_index is not None and focus_point is not None:
            targets[focus_index] = focus_point
            rates[focus_index] = cfg.focus_rate
            scales[focus_index] = base[focus_index] * 5.0
            facing[focus_index] = True
    else:
        targets = static.pos_tree.copy()

    # 静止编队时的轻微晃动
    if mode is Mode.TREE:
        jitter = np.ones(n, dtype=bool)
    elif mode is Mode.NAME:
        jitter = glyph.members
    else:
        jitter = None

    if jitter is not None:
        phase = time * static.speed + static.phase
        targets[jitter, 1] += np.sin(phase[jitter]) * 0.15
        targets[jitter, 0] += np.cos(time * 0.5 * static.speed[jitter] + static.phase[jitter]) * 0.1

    if mode is not Mode.FOCUS:
        pulse = base * (0.5 + 0.5 * np.sin(time * 3 + static.phase))
        if mode is Mode.NAME:
            dust = static.is_dust & glyph.members
        else:
            dust = static.is_dust
        scales = np.where(dust, pulse, scales)

        if mode in (Mode.SCATTER, Mode.LETTER):
            scales = np.where(static.is_photo, base * 2.5, scales)
        if mode is Mode.SCATTER:
            scales = np.where(static.is_keepsake, base * 1.2, scales)

    return ResolvedTargets(positions=targets, scales=scales, rates=rates, facing=facing)


def resolve_emissive(
    static: _StaticArrays,
    glyph: GlyphAssignment,
    mode: Mode,
    time: float,
    theme_index: int
) -> Tuple[np.ndarray, np.ndarray]:
    """
    发光色和发光强度

    Returns:
        (colors, intensities)，只对 has_emissive 的粒子有意义
    """
    blink = np.sin(time * 2 + static.phase)
    intensities = np.where(blink > 0.5, 1.0 + (blink - 0.5) * 2.5, 0.4)
    colors = static.emissive_base.copy()

    if mode is Mode.NAME:
        members = glyph.members
        intensities = np.where(members, 1.5 + blink, intensities)
        colors = np.where(members, GLYPH_HUES[theme_index % 2], colors)

    return colors, intensities


class FormationEngine:
    """
    编队引擎
    持有所有粒子，逐帧把粒子向当前模式的目标位置平滑移动
    """

    def __init__(
        self,
        config: Optional[FormationConfig] = None,
        rng: Optional[np.random.Generator] = None
    ):
        self.config = config or FormationConfig()
        self.rng = rng if rng is not None else np.random.default_rng(self.config.seed)

        self.particles: List[Particle] = []
        self.theme_index = 0
        self._next_pid = 0

        h = self.config.tree_height
        home = np.array([0.0, h / 2 + 1.2, 0.0])
        self.topper = Topper(home=home, position=home.copy())

        self._static = _StaticArrays.pack([])
        self._glyph = GlyphAssignment.dispersed(np.zeros((0, 3)))
        self._index: Dict[int, int] = {}

        # 当前变换
        self._position = np.zeros((0, 3))
        self._scale = np.zeros(0)
        self._emissive_color = np.zeros(0, dtype=int)
        self._emissive_intensity = np.zeros(0)
        self._facing = np.zeros(0, dtype=bool)

    def __len__(self) -> int:
        return len(self.particles)

    # ------------------------------------------------------------------
    # 创建与删除
    # ------------------------------------------------------------------

    def _make_particles(
        self,
        kinds: Sequence[ParticleKind],
        base_scales: np.ndarray,
        pos_tree: np.ndarray,
        scatter_radius: Tuple[float, float],
        meta: Optional[Dict[str, Any]] = None
    ) -> List[Particle]:
        n = len(kinds)
        pos_scatter = sphere_shell_points(self.rng, n, *scatter_radius)
        phases = self.rng.random(n) * 100
        speeds = 0.5 + self.rng.random(n)

        created = []
        for i, kind in enumerate(kinds):
            created.append(Particle(
                pid=self._next_pid,
                kind=kind,
                base_scale=float(base_scales[i]),
                phase_offset=float(phases[i]),
                speed_factor=float(speeds[i]),
                pos_tree=pos_tree[i],
                pos_scatter=pos_scatter[i],
                meta=dict(meta or {})
            ))
            self._next_pid += 1

        for p in created:
            self._apply_palette(p)
        return created

    def build(self):
        """创建场景中的全部粒子（装饰物、礼物、玩偶、光尘）"""
        cfg = self.config
        rng = self.rng
        h, radius = cfg.tree_height, cfg.tree_radius

        n = cfg.ornament_count
        kinds = rng.choice(len(ORNAMENT_KINDS), size=n, p=ORNAMENT_WEIGHTS)
        ornaments = self._make_particles(
            [ORNAMENT_KINDS[k] for k in kinds],
            0.4 + rng.random(n) * 0.4,
            tree_points(rng, n, h, radius, garland_fraction=0.3),
            (10.0, 30.0)
        )

        n = cfg.gift_count
        gifts = self._make_particles(
            [ParticleKind.GIFT] * n,
            0.8 + rng.random(n) * 0.4,
            base_ring_points(rng, n, 4.0, 12.0, -h / 2 + 1.0),
            (10.0, 30.0)
        )

        n = cfg.plush_count
        plush = self._make_particles(
            [ParticleKind.PLUSH] * n,
            1.2 + rng.random(n) * 0.3,
            base_ring_points(rng, n, 5.0, 12.0, -h / 2 + 1.5),
            (10.0, 30.0)
        )

        n = cfg.dust_count
        dust = self._make_particles(
            [ParticleKind.DUST] * n,
            0.5 + rng.random(n),
            tree_points(rng, n, h, radius),
            (15.0, 40.0)
        )

        # 装饰物从树下方飞入
        starts = [np.array([0.0, -100.0, 0.0])] * len(ornaments)
        starts += [np.zeros(3)] * (len(gifts) + len(plush) + len(dust))
        self._append(ornaments + gifts + plush + dust, starts)

        logger.info(
            "创建粒子: 装饰 %d, 礼物 %d, 玩偶 %d, 光尘 %d",
            len(ornaments), len(gifts), len(plush), len(dust)
        )

    def add_photo(self, aspect: float = 1.0, **meta) -> Particle:
        """
        添加一个相框粒子

        Args:
            aspect: 照片宽高比
            meta: 交给场景使用的附加数据（如图片地址）

        Returns:
            新建的粒子
        """
        meta["aspect"] = float(aspect)
        photo = self._make_particles(
            [ParticleKind.PHOTO],
            np.ones(1),
            tree_points(self.rng, 1, self.config.tree_height, self.config.tree_radius),
            (10.0, 30.0),
            meta=meta
        )
        self._append(photo, [np.zeros(3)])
        logger.info("添加照片 #%d", photo[0].pid)
        return photo[0]

    def remove_photos(self) -> int:
        """删除所有照片，返回删除数量"""
        keep = ~self._static.is_photo
        removed = int(np.count_nonzero(~keep))
        if removed == 0:
            return 0

        self.particles = [p for p, k in zip(self.particles, keep) if k]
        self._glyph = self._glyph.subset(keep)
        self._position = self._position[keep]
        self._scale = self._scale[keep]
        self._emissive_color = self._emissive_color[keep]
        self._emissive_intensity = self._emissive_intensity[keep]
        self._facing = self._facing[keep]
        self._repack()

        logger.info("删除照片 %d 张", removed)
        return removed

    def _append(self, particles: List[Particle], starts: Sequence[np.ndarray]):
        if not particles:
            return

        n = len(particles)
        self.particles.extend(particles)

        # 新粒子在文字模式下先沿用散开位置
        self._glyph = self._glyph.extended([p.pos_scatter for p in particles])

        self._position = np.vstack([self._position, np.array(starts, dtype=float).reshape(n, 3)])
        self._scale = np.concatenate([self._scale, [p.base_scale for p in particles]])
        self._emissive_color = np.concatenate(
            [self._emissive_color, np.array([p.emissive or 0 for p in particles], dtype=int)]
        )
        self._emissive_intensity = np.concatenate([self._emissive_intensity, np.zeros(n)])
        self._facing = np.concatenate([self._facing, np.zeros(n, dtype=bool)])
        self._repack()

    def _repack(self):
        self._static = _StaticArrays.pack(self.particles)
        self._index = {p.pid: i for i, p in enumerate(self.particles)}

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def photo_ids(self) -> List[int]:
        """按创建顺序返回照片粒子 ID"""
        return [p.pid for p in self.particles if p.kind is ParticleKind.PHOTO]

    def index_of(self, pid: int) -> Optional[int]:
        return self._index.get(pid)

    @property
    def glyph(self) -> GlyphAssignment:
        return self._glyph

    @property
    def positions(self) -> np.ndarray:
        return self._position

    @property
    def scales(self) -> np.ndarray:
        return self._scale

    @property
    def background_layer(self) -> str:
        return BACKGROUND_LAYERS[self.theme_index]

    # ------------------------------------------------------------------
    # 文字与主题
    # ------------------------------------------------------------------

    def apply_glyph(self, assignment: GlyphAssignment):
        """整体替换文字编队分配"""
        if len(assignment) != len(self.particles):
            raise ValueError(
                f"文字分配数量 {len(assignment)} 与粒子数量 {len(self.particles)} 不一致"
            )
        self._glyph = assignment
        logger.info("文字编队已更新: %d 个文字粒子", assignment.member_count)

    def _apply_palette(self, p: Particle):
        gold = self.theme_index == 0

        if p.kind in ORNAMENT_PALETTES:
            p.palette = ORNAMENT_PALETTES[p.kind][0 if gold else 1]
        elif p.kind is ParticleKind.GIFT:
            if gold:
                p.palette = "red" if self.rng.random() > 0.5 else "green"
            else:
                p.palette = "blue" if self.rng.random() > 0.5 else "white"
            p.accent = "gold" if gold else "ice"
        elif p.kind is ParticleKind.PLUSH:
            p.palette = "bear_brown" if gold else "bear_white"
        elif p.kind is ParticleKind.PHOTO:
            p.palette = "frame_gold" if gold else "frame_ice"
            p.accent = None if gold else "snow_border"
        else:
            p.palette = "dust"

    def apply_theme(self, theme_index: int) -> str:
        """
        按主题重新分配所有粒子材质

        Returns:
            当前可见的背景层名称
        """
        self.theme_index = int(theme_index) % 2
        for p in self.particles:
            self._apply_palette(p)

        gold = self.theme_index == 0
        self.topper.palette = "star_gold" if gold else "star_ice"
        self.topper.halo_color = 0xffaa00 if gold else 0xaaddff

        self._repack()
        return self.background_layer

    def palettes(self) -> List[Dict[str, Any]]:
        """每个粒子的静态渲染信息（类型、材质、基础缩放）"""
        return [
            {
                "id": p.pid,
                "kind": p.kind.value,
                "palette": p.palette,
                "accent": p.accent,
                "base_scale": round(p.base_scale, 4),
                "meta": p.meta
            }
            for p in self.particles
        ]

    # ------------------------------------------------------------------
    # 逐帧更新
    # ------------------------------------------------------------------

    def focus_point(self, world_inverse: np.ndarray) -> np.ndarray:
        """相机正前方固定距离处的点，变换到编队的局部坐标"""
        cfg = self.config
        return transform_point(world_inverse, (0.0, 0.0, cfg.camera_z - cfg.focus_distance))

    def update(
        self,
        dt: float,
        time: float,
        ctx: ModeContext,
        world_inverse: Optional[np.ndarray] = None
    ) -> FrameSnapshot:
        """
        推进一帧

        Args:
            dt: 帧间隔（秒）
            time: 累计时间（秒）
            ctx: 当前模式上下文
            world_inverse: 编队世界变换的逆矩阵（4x4），FOCUS 模式下用于把
                聚焦对象放到相机前方

        Returns:
            本帧的场景数据
        """
        cfg = self.config
        mode = ctx.mode

        focus_index = None
        focus_point = None
        if mode is Mode.FOCUS and world_inverse is not None:
            focus_point = self.focus_point(world_inverse)
            if ctx.focus_target is not None and ctx.focus_target != TOPPER:
                focus_index = self.index_of(ctx.focus_target)

        resolved = resolve_targets(
            self._static,
            self._glyph,
            mode,
            time,
            scatter_scale=ctx.scatter_scale,
            focus_index=focus_index,
            focus_point=focus_point,
            config=cfg
        )

        k = _smoothing(resolved.rates, dt)[:, None]
        self._position += (resolved.positions - self._position) * k
        self._scale += (resolved.scales - self._scale) * _smoothing(cfg.scale_rate, dt)
        self._facing = resolved.facing

        if mode is not Mode.FOCUS:
            colors, intensities = resolve_emissive(
                self._static, self._glyph, mode, time, ctx.theme_index
            )
            mask = self._static.has_emissive
            self._emissive_color = np.where(mask, colors, self._emissive_color)
            self._emissive_intensity = np.where(mask, intensities, self._emissive_intensity)

        focused = mode is Mode.FOCUS and ctx.focus_target == TOPPER and focus_point is not None
        self._update_topper(dt, time, focus_point if focused else None)

        return self.snapshot()

    def _update_topper(self, dt: float, time: float, focus_point: Optional[np.ndarray]):
        star = self.topper
        if focus_point is not None:
            k = _smoothing(5.0, dt)
            star.position += (focus_point - star.position) * k
            star.scale += (3.0 - star.scale) * k
            star.facing_camera = True
        else:
            k = _smoothing(3.0, dt)
            star.position += (star.home - star.position) * k
            star.rotation[1] -= dt
            star.rotation[2] = np.sin(time) * 0.2
            star.scale += (1.0 + np.sin(time * 2) * 0.1 - star.scale) * k
            star.facing_camera = False

    def snapshot(self) -> FrameSnapshot:
        return FrameSnapshot(
            positions=self._position.copy(),
            scales=self._scale.copy(),
            emissive_colors=self._emissive_color.copy(),
            emissive_intensities=self._emissive_intensity.copy(),
            emissive_mask=self._static.has_emissive.copy(),
            facing=self._facing.copy(),
            topper=self.topper
        )
