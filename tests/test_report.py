"""
Tests for registration statistics, charts and the stack report.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import json

import pytest

from luckystack.config import RegistrationMethod, StackConfig
from luckystack.matching import Match
from luckystack.registration import (
    BoundingBox,
    DescriptorRegistration,
    ImageRegistration,
    Registration,
    WeightedCentroid,
)
from luckystack.report import (
    plot_arc_histogram,
    plot_registration_scatter,
    registration_statistics,
    strategy_offsets,
    write_stack_report,
)


@pytest.fixture
def registration():
    return Registration(0, [
        ImageRegistration(
            "a.png",
            descriptor=DescriptorRegistration(0.0, 0.0, 20),
            bbox=BoundingBox(40, 60, 40, 60),
            centroid=WeightedCentroid(50.0, 50.0),
        ),
        ImageRegistration(
            "b.png",
            descriptor=DescriptorRegistration(2.0, -1.0, 15),
            bbox=BoundingBox(38, 58, 41, 61),
        ),
        ImageRegistration("c.png", descriptor=DescriptorRegistration.rejection()),
    ])


class TestStatistics:
    """Tests for per-strategy summaries."""

    def test_offsets(self, registration):
        values = strategy_offsets(registration, RegistrationMethod.BOUNDING_BOX)
        assert values.shape == (2, 2)
        assert values[1].tolist() == [2.0, -1.0]

    def test_no_usable_offsets(self, registration):
        values = strategy_offsets(registration, RegistrationMethod.CENTROID, registration.images[1:])
        assert values.shape == (0, 2)

    def test_statistics(self, registration):
        stats = registration_statistics(registration)
        assert stats["n_frames"] == 3
        assert stats["reference"] == "a.png"

        descriptor = stats["strategies"]["descriptor"]
        assert descriptor["usable"] == 2
        assert descriptor["rejected"] == 1
        assert descriptor["dx_max"] == 2.0
        assert descriptor["dy_mean"] == pytest.approx(-0.5)
        assert stats["strategies"]["centroid"] == {"usable": 1, "dx_min": 0.0, "dx_max": 0.0,
                                                   "dx_mean": 0.0, "dy_min": 0.0, "dy_max": 0.0,
                                                   "dy_mean": 0.0}
        # native types only
        json.dumps(stats)


class TestCharts:
    """Charts are written as PNG files."""

    def test_scatter(self, registration, tmp_path):
        path = plot_registration_scatter(registration, tmp_path / "charts" / "registration-scatter.png")
        assert path.exists()
        assert path.stat().st_size > 0

    def test_arc_histogram(self, tmp_path):
        matches = [Match((10.0, 0.0), (0.0, 0.0)), Match((0.0, 10.0), (0.0, 0.0))]
        path = plot_arc_histogram(matches, tmp_path / "arc.png")
        assert path.exists()


class TestStackReport:
    """Tests for the JSON run record."""

    def test_report(self, registration, tmp_path):
        survivors = list(registration.images[:2])
        counts = {
            RegistrationMethod.DESCRIPTOR: 2,
            RegistrationMethod.BOUNDING_BOX: 2,
            RegistrationMethod.CENTROID: 1,
        }
        outputs = {"bbox": tmp_path / "stack_bbox.png"}
        config = StackConfig(rejections="size:0.02", margin=3)

        path = write_stack_report(tmp_path / "stack_report.json", config, registration, survivors, counts, outputs)
        with open(path) as f:
            report = json.load(f)

        assert report["frames"] == {"registered": 3, "kept": 2, "excluded": 1}
        assert report["excluded"] == ["c.png"]
        assert report["reference"] == "a.png"
        assert report["contributors"] == {"descriptor": 2, "bbox": 2, "centroid": 1}
        assert report["outputs"] == {"bbox": str(tmp_path / "stack_bbox.png")}
        assert report["config"]["rejections"] == "size:0.02"
        assert report["config"]["margin"] == 3
        assert "luckystack_version" in report
        assert "timestamp" in report
