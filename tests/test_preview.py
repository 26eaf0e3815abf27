import numpy as np
import pytest

from core.preview import PreviewRenderer, hex_to_bgr
from core.scene import TreeScene


@pytest.fixture
def scene(small_config):
    return TreeScene(small_config, np.random.default_rng(0))


def test_hex_to_bgr():
    assert hex_to_bgr(0xffaa00) == (0x00, 0xaa, 0xff)


def test_origin_projects_to_center():
    renderer = PreviewRenderer(width=200, height=100)
    pixels, depth = renderer.project(np.zeros((1, 3)))
    assert pixels[0] == pytest.approx([100, 50])
    assert depth[0] == pytest.approx(renderer.config.camera_z)


def test_closer_points_spread_further():
    renderer = PreviewRenderer()
    near, _ = renderer.project(np.array([[1.0, 0.0, 20.0]]))
    far, _ = renderer.project(np.array([[1.0, 0.0, -20.0]]))
    assert near[0, 0] > far[0, 0] > renderer.width / 2


@pytest.mark.parametrize("theme", [0, 1])
def test_render_frame(scene, poses, theme):
    scene.state_machine.set_theme(theme, 0)
    snapshot = scene.step(poses.palm_open(), 0.0, 0.5)

    renderer = PreviewRenderer(scene.config.formation, width=320, height=240)
    thumbnail = np.full((48, 64, 3), 200, dtype=np.uint8)
    canvas = renderer.render(scene.engine, snapshot, scene.context, dt=0.5, fps=30.0, thumbnail=thumbnail)

    assert canvas.shape == (240, 320, 3)
    assert canvas.dtype == np.uint8
    assert canvas.any()
    # 缩略图在右下角
    assert (canvas[-20, -20] == 200).all()
