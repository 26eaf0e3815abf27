import numpy as np
import pytest

from core.gesture import GestureClassifier, GestureSignal
from core.state_machine import (
    TOPPER,
    Mode,
    ModeContext,
    ModeStateMachine,
    scatter_scale_target,
)


@pytest.fixture
def classifier():
    return GestureClassifier()


@pytest.fixture
def machine():
    return ModeStateMachine()


@pytest.fixture
def events(machine):
    received = []
    machine.register_callback(received.append)
    return received


def feed(machine, classifier, pose, timestamp, photo_ids=()):
    return machine.update(classifier.classify(pose), timestamp, photo_ids)


def test_starts_in_tree(machine):
    ctx = machine.context
    assert ctx.mode is Mode.TREE
    assert ctx.photo_cursor == -1
    assert ctx.focus_target is None
    assert ctx.gesture_debounce_timestamp is None


def test_palm_open_enters_scatter(machine, classifier, poses, events):
    assert feed(machine, classifier, poses.palm_open(), 0) is Mode.SCATTER
    assert events[-1].event_type == "mode_changed"
    assert events[-1].data == {"previous": "tree"}


def test_scatter_anchors_palm_once_per_entry(machine, classifier, poses):
    ctx = machine.context

    feed(machine, classifier, poses.palm_open(), 0)
    anchor = ctx.palm_reference.copy()
    assert anchor == pytest.approx([0.5, 0.7])

    feed(machine, classifier, poses.palm_open(offset=(0.05, 0.0)), 33)
    assert ctx.palm_reference == pytest.approx(anchor)
    # 手掌右移 -> 绕 y 轴正向旋转
    assert ctx.spin_velocity[1] > 0
    assert ctx.spin_velocity[0] == pytest.approx(0.0)

    feed(machine, classifier, poses.fist(), 66)
    assert ctx.mode is Mode.TREE

    feed(machine, classifier, poses.palm_open(offset=(0.1, 0.05)), 100)
    assert ctx.mode is Mode.SCATTER
    assert ctx.palm_reference == pytest.approx([0.6, 0.75])


def test_spin_is_clamped(machine, classifier, poses):
    feed(machine, classifier, poses.palm_open(), 0)
    for i in range(1, 100):
        feed(machine, classifier, poses.palm_open(offset=(0.45, -0.45)), i * 33)
    limit = machine.config.spin_limit
    assert np.all(np.abs(machine.context.spin_velocity) <= limit + 1e-9)


def test_scatter_scale_target_bounds():
    assert scatter_scale_target(0.4, 0.0) == 5.0
    assert scatter_scale_target(0.4, 100.0) == pytest.approx(0.1)
    assert scatter_scale_target(0.4, 0.4) == pytest.approx(1.0)
    # 手收拢 -> 散得更开
    assert scatter_scale_target(0.5, 0.4) > 1.0


def test_scatter_scale_stays_in_range(machine, classifier, poses, rng):
    feed(machine, classifier, poses.palm_open(0.4), 0)
    ctx = machine.context
    for i in range(1, 300):
        reach = rng.uniform(0.36, 2.0)
        feed(machine, classifier, poses.palm_open(reach), i * 33)
        if ctx.mode is Mode.SCATTER:
            assert 0.1 <= ctx.scatter_scale <= 5.0


def test_theme_toggles_once_per_cooldown(machine, classifier, poses, events):
    for t in range(0, 2000, 100):
        feed(machine, classifier, poses.v_sign(), t)

    toggles = [e for e in events if e.event_type == "theme_changed"]
    assert len(toggles) == 1
    assert machine.context.theme_index == 1

    feed(machine, classifier, poses.v_sign(), 2100)
    assert machine.context.theme_index == 0


def test_focus_cycles_photos_then_topper(machine, classifier, poses):
    photos = [10, 11]
    ctx = machine.context
    targets = []

    for i in range(4):
        t = i * 1000
        feed(machine, classifier, poses.pointing(), t, photos)
        assert ctx.mode is Mode.FOCUS
        targets.append(ctx.focus_target)

        # 持续指向不会切换目标
        feed(machine, classifier, poses.pointing(), t + 33, photos)
        assert ctx.focus_target == targets[-1]

        feed(machine, classifier, poses.neutral(), t + 66, photos)
        assert ctx.mode is Mode.TREE
        assert ctx.focus_target is None

    assert targets == [10, 11, TOPPER, 10]


def test_focus_without_photos_targets_topper(machine, classifier, poses):
    feed(machine, classifier, poses.pointing(), 0)
    assert machine.context.focus_target == TOPPER
    assert machine.context.photo_cursor == -1


def test_pinch_opens_letter_and_bypasses_gestures(machine, classifier, poses, events):
    feed(machine, classifier, poses.pinch(), 0)
    assert machine.mode is Mode.LETTER
    assert any(e.event_type == "letter_open" for e in events)

    for pose in (poses.fist(), poses.palm_open(), poses.three_finger(), None):
        feed(machine, classifier, pose, 100)
        assert machine.mode is Mode.LETTER

    machine.context.spin_velocity[:] = 2.0
    machine.close_letter(200)
    assert machine.mode is Mode.TREE
    assert np.all(machine.context.spin_velocity == 0)


def test_letter_cooldown(machine, classifier, poses):
    feed(machine, classifier, poses.pinch(), 0)
    machine.close_letter(100)

    feed(machine, classifier, poses.pinch(), 500)
    assert machine.mode is Mode.TREE

    feed(machine, classifier, poses.pinch(), 1200)
    assert machine.mode is Mode.LETTER


def test_name_mode_locks_until_palm_open_or_fist(machine, classifier, poses):
    feed(machine, classifier, poses.palm_open(), 0)
    machine.context.spin_velocity[:] = 1.0

    feed(machine, classifier, poses.three_finger(), 33)
    assert machine.mode is Mode.NAME
    assert np.all(machine.context.spin_velocity == 0)

    for pose in (poses.pointing(), poses.neutral(), None):
        feed(machine, classifier, pose, 66)
        assert machine.mode is Mode.NAME

    feed(machine, classifier, poses.fist(), 100)
    assert machine.mode is Mode.TREE

    feed(machine, classifier, poses.three_finger(), 133)
    feed(machine, classifier, poses.palm_open(), 166)
    assert machine.mode is Mode.SCATTER


def test_theme_toggle_works_in_name_mode(machine, classifier, poses):
    feed(machine, classifier, poses.three_finger(), 0)
    feed(machine, classifier, poses.v_sign(), 33)
    assert machine.mode is Mode.NAME
    assert machine.context.theme_index == 1


def test_fist_in_focus_does_not_change_mode(machine, classifier, poses):
    feed(machine, classifier, poses.pointing(), 0)
    feed(machine, classifier, poses.fist(), 33)
    assert machine.mode is Mode.FOCUS


def test_hand_lost_keeps_mode_and_decays_spin(machine, classifier, poses):
    feed(machine, classifier, poses.palm_open(), 0)
    ctx = machine.context
    ctx.spin_velocity[:] = [1.0, -1.0]

    machine.update(GestureSignal.none(), 33)
    assert ctx.mode is Mode.SCATTER
    assert not ctx.hand_detected

    machine.advance(1 / 30)
    assert ctx.spin_velocity == pytest.approx([0.95, -0.95])


def test_advance_rotation_per_mode():
    m = ModeStateMachine(context=ModeContext())
    m.advance(0.1)
    assert m.context.rotation[1] == pytest.approx(-0.04)
    assert 0 < m.context.rotation[0] < 0.15

    m = ModeStateMachine(context=ModeContext(mode=Mode.SCATTER))
    m.context.hand_detected = True
    m.context.spin_velocity[:] = [0.5, 1.0]
    m.advance(0.5)
    assert m.context.rotation[:2] == pytest.approx([0.25, 0.5])

    m = ModeStateMachine(context=ModeContext(mode=Mode.NAME))
    m.context.rotation[:] = [1.0, 1.0, 0.0]
    for _ in range(200):
        m.advance(0.05)
    assert m.context.rotation[:2] == pytest.approx([0.0, 0.0], abs=1e-3)


def test_failing_callback_does_not_break_update(machine, classifier, poses):
    def broken(event):
        raise RuntimeError("boom")

    machine.register_callback(broken)
    assert feed(machine, classifier, poses.palm_open(), 0) is Mode.SCATTER


def test_reset_keeps_theme(machine):
    machine.set_theme(1, 0)
    machine.context.mode = Mode.SCATTER
    machine.reset()
    assert machine.mode is Mode.TREE
    assert machine.context.theme_index == 1
