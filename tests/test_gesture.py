import numpy as np
import pytest

from config.settings import GestureThresholds
from core.detector import HandPose
from core.gesture import (
    GESTURE_RULES,
    GestureClassifier,
    GestureSignal,
    GestureType,
    HandFeatures,
    is_fist,
    is_three_finger_spread,
)

from conftest import make_pose


@pytest.fixture
def classifier():
    return GestureClassifier()


@pytest.mark.parametrize("name, expected", [
    ("fist", GestureType.FIST),
    ("three_finger", GestureType.THREE_FINGER_SPREAD),
    ("v_sign", GestureType.V_SIGN_SPREAD),
    ("pointing", GestureType.POINTING),
    ("palm_open", GestureType.PALM_OPEN),
    ("pinch", GestureType.PINCH_SELECT),
    ("neutral", GestureType.NEUTRAL),
])
def test_classifies_synthetic_poses(classifier, poses, name, expected):
    signal = classifier.classify(getattr(poses, name)())
    assert signal.gesture is expected
    assert signal.detected


def test_no_pose_is_no_signal(classifier):
    signal = classifier.classify(None)
    assert signal == GestureSignal.none()
    assert not signal.detected


def test_partial_landmarks_are_rejected():
    assert HandPose.from_points(np.zeros((20, 2))) is None
    assert HandPose.from_points([]) is None

    points = np.zeros((21, 2))
    points[3, 0] = np.nan
    assert HandPose.from_points(points) is None


def test_pose_is_read_only(poses):
    pose = poses.fist()
    with pytest.raises(ValueError):
        pose.points[0, 0] = 1.0


def test_palm_is_middle_finger_base(classifier, poses):
    signal = classifier.classify(poses.palm_open(offset=(0.1, -0.05)))
    assert signal.palm == pytest.approx((0.6, 0.65))


def test_v_sign_flags_theme_toggle_without_pointing(classifier, poses):
    signal = classifier.classify(poses.v_sign())
    assert signal.theme_toggle
    assert not signal.pointing
    assert not signal.palm_open


def test_v_sign_needs_spread_fingertips(classifier):
    signal = classifier.classify(make_pose(0.3, 0.3, 0.04, 0.04, spread=0.0))
    assert signal.gesture is not GestureType.V_SIGN_SPREAD
    assert not signal.theme_toggle


def test_open_v_sign_also_reports_palm_open(classifier):
    signal = classifier.classify(make_pose(0.7, 0.7, 0.04, 0.04, spread=0.05))
    assert signal.gesture is GestureType.V_SIGN_SPREAD
    assert signal.palm_open


def test_pointing_confidence(classifier, poses):
    pointing = classifier.classify(poses.pointing())
    open_hand = classifier.classify(poses.palm_open())
    assert pointing.pointing_confidence > 0.5
    assert open_hand.pointing_confidence == pytest.approx(0.0, abs=0.05)


def test_three_finger_and_fist_are_exclusive(rng):
    t = GestureThresholds()
    for _ in range(2000):
        reaches = rng.uniform(0.0, 0.6, size=4)
        pose = make_pose(*reaches, spread=rng.uniform(0.0, 0.05))
        f = HandFeatures.from_pose(pose)
        assert not (is_three_finger_spread(f, t) and is_fist(f, t))


def test_first_matching_rule_wins(rng, classifier):
    t = classifier.thresholds
    for _ in range(500):
        reaches = rng.uniform(0.0, 0.6, size=4)
        pose = make_pose(*reaches, spread=rng.uniform(0.0, 0.05))
        f = HandFeatures.from_pose(pose)

        expected = next(
            (rule.gesture for rule in GESTURE_RULES if rule.predicate(f, t)),
            GestureType.NEUTRAL
        )
        assert classifier.classify(pose).gesture is expected


def test_custom_thresholds(poses):
    # 阈值调低后，普通伸展的手也算张开
    classifier = GestureClassifier(GestureThresholds(palm_open_threshold=0.1))
    signal = classifier.classify(poses.neutral())
    assert signal.gesture is GestureType.PALM_OPEN
