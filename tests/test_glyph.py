import numpy as np
import pytest

from config.settings import GlyphConfig
from core.glyph import GlyphAssignment, GlyphSampler


@pytest.fixture
def sampler(rng):
    return GlyphSampler(GlyphConfig(), rng)


@pytest.mark.parametrize("text", ["", "   ", None])
def test_empty_text_has_no_points(sampler, text):
    assert not sampler.rasterize(text).any()
    assert sampler.sample(text).shape == (0, 3)


def test_empty_text_disperses_every_particle(sampler):
    assignment = sampler.assign(200, sampler.sample(""))
    assert assignment.member_count == 0

    radius = np.linalg.norm(assignment.points, axis=1)
    assert np.all((radius >= 30.0) & (radius <= 50.0))


def test_sample_stays_on_canvas(sampler):
    cfg = sampler.config
    points = sampler.sample("NOEL")
    assert len(points) > 100

    half_w = cfg.canvas_width / 2 * cfg.pixel_scale
    half_h = cfg.canvas_height / 2 * cfg.pixel_scale
    assert np.all(np.abs(points[:, 0]) <= half_w)
    assert np.all(np.abs(points[:, 1] - cfg.y_offset) <= half_h)

    z_min = -cfg.depth_jitter / 2
    z_max = cfg.depth_jitter / 2 + cfg.depth_scale
    assert np.all((points[:, 2] >= z_min) & (points[:, 2] <= z_max))


def test_text_is_centered(sampler):
    points = sampler.sample("HOHOHO")
    assert abs(points[:, 0].mean()) < 2.0


def test_assign_one_to_one(sampler):
    points = np.arange(30, dtype=float).reshape(10, 3)
    assignment = sampler.assign(50, points)

    assert len(assignment) == 50
    assert assignment.member_count == 10
    member_points = {tuple(p) for p in assignment.points[assignment.members]}
    assert member_points == {tuple(p) for p in points}


def test_more_points_than_particles(sampler):
    points = sampler.sample("NOEL")
    assignment = sampler.assign(20, points)
    assert assignment.member_count == 20

    rows = {tuple(p) for p in points}
    assert all(tuple(p) in rows for p in assignment.points)


def test_member_choice_is_random(sampler):
    points = np.zeros((10, 3))
    first = sampler.assign(100, points).members
    second = sampler.assign(100, points).members
    assert not np.array_equal(first, second)


def test_assignment_is_immutable(sampler):
    assignment = sampler.assign(10, np.zeros((5, 3)))
    with pytest.raises(ValueError):
        assignment.members[0] = False
    with pytest.raises(ValueError):
        assignment.points[0, 0] = 1.0


def test_extended_and_subset():
    base = GlyphAssignment(points=np.ones((3, 3)), members=np.array([True, False, True]))
    grown = base.extended(np.zeros((2, 3)))
    assert len(grown) == 5
    assert grown.member_count == 2

    kept = grown.subset(np.array([True, True, False, True, False]))
    assert kept.members.tolist() == [True, False, False]
