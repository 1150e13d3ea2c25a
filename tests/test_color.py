"""
Tests for working colour spaces.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import numpy as np
import pytest

from luckystack.color import from_working, linear_to_srgb, srgb_to_linear, to_working
from luckystack.config import COLORSPACES, ConfigurationError


class TestColorSpaces:
    """Tests for conversions into and out of the working space."""

    @pytest.mark.parametrize("colorspace", COLORSPACES)
    def test_round_trip(self, colorspace):
        values = np.linspace(0.0, 1.0, 101).reshape(1, -1, 1).repeat(3, axis=2)
        restored = from_working(to_working(values, colorspace), colorspace)
        np.testing.assert_allclose(restored, values, atol=1e-12)

    @pytest.mark.parametrize("colorspace", COLORSPACES)
    def test_input_not_modified(self, colorspace):
        frame = np.full((2, 2, 3), 0.5)
        to_working(frame, colorspace)[:] = 0.0
        assert frame[0, 0, 0] == 0.5

    def test_quadratic_and_sqrt(self):
        frame = np.full((1, 1, 3), 0.5)
        assert to_working(frame, "quadratic")[0, 0, 0] == pytest.approx(0.25)
        assert to_working(frame, "sqrt")[0, 0, 0] == pytest.approx(np.sqrt(0.5))

    def test_srgb_reference_values(self):
        """Known points of the sRGB transfer curve."""
        assert srgb_to_linear(np.array(0.0)) == 0.0
        assert srgb_to_linear(np.array(1.0)) == pytest.approx(1.0)
        assert srgb_to_linear(np.array(0.5)) == pytest.approx(0.214041, abs=1e-6)
        assert srgb_to_linear(np.array(0.04)) == pytest.approx(0.04 / 12.92)
        assert linear_to_srgb(np.array(0.214041)) == pytest.approx(0.5, abs=1e-6)

    def test_unknown_colorspace(self):
        with pytest.raises(ConfigurationError, match="Unknown colorspace 'cmyk'"):
            to_working(np.zeros((1, 1, 3)), "cmyk")
