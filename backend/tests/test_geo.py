import math
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from autocare.models import Coordinate
from autocare.services.geo import distance_km, is_valid_coordinate

MUMBAI = Coordinate(latitude=19.0760, longitude=72.8777)
DELHI = Coordinate(latitude=28.7041, longitude=77.1025)


def test_distance_to_self_is_zero():
    assert distance_km(MUMBAI, MUMBAI) == 0.0


def test_distance_is_symmetric():
    assert distance_km(MUMBAI, DELHI) == pytest.approx(distance_km(DELHI, MUMBAI))


def test_mumbai_to_delhi_fixture():
    assert distance_km(MUMBAI, DELHI) == pytest.approx(1153, abs=5)


def test_antipodal_points_stay_finite():
    north = Coordinate(latitude=90.0, longitude=0.0)
    south = Coordinate(latitude=-90.0, longitude=0.0)
    assert distance_km(north, south) == pytest.approx(math.pi * 6371.0, rel=1e-9)


def test_nan_input_propagates():
    broken = Coordinate(latitude=float("nan"), longitude=72.0)
    assert math.isnan(distance_km(broken, MUMBAI))


@pytest.mark.parametrize(
    "latitude,longitude,expected",
    [
        (19.07, 72.87, True),
        (90.0, -180.0, True),
        (90.1, 0.0, False),
        (0.0, 180.5, False),
        (None, 72.0, False),
        (float("nan"), 72.0, False),
    ],
)
def test_coordinate_validation(latitude, longitude, expected):
    assert is_valid_coordinate(latitude, longitude) is expected
