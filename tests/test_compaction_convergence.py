import pytest

from services.compaction import has_converged


@pytest.mark.parametrize(
    "measurements,expected",
    [
        ([], False),
        ([9000], False),
        # two identical latest sizes converge regardless of the floor
        ([100, 100], True),
        ([9000, 8000, 8000], True),
        # within +/-20% of the first measurement, both above the floor
        ([6000, 5500], True),
        ([6000, 8000, 7000], True),
        # outside the band
        ([10000, 7000], False),
        ([6000, 7300], False),
        # below the floor
        ([6000, 4900], False),
        ([3000, 2900], False),
    ],
)
def test_has_converged(measurements, expected):
    assert has_converged(measurements, 0.2, 5000) is expected


def test_tolerance_band_is_inclusive():
    assert has_converged([10000, 7500], 0.25, 0)
    assert has_converged([10000, 12500], 0.25, 0)
    assert not has_converged([10000, 12501], 0.25, 0)
