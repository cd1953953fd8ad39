import pytest

from servicefinder.models import GeoPoint
from servicefinder.services import geo_index
from servicefinder.services.errors import InvalidCoordinatesError, InvalidRadiusError

MUMBAI_PROVIDER = GeoPoint(latitude=19.0760, longitude=72.8777)
MUMBAI_CUSTOMER = GeoPoint(latitude=19.0596, longitude=72.8295)


def test_distance_is_symmetric_and_deterministic():
    forward = geo_index.distance_km(MUMBAI_PROVIDER, MUMBAI_CUSTOMER)
    backward = geo_index.distance_km(MUMBAI_CUSTOMER, MUMBAI_PROVIDER)
    assert forward == backward
    assert forward == geo_index.distance_km(MUMBAI_PROVIDER, MUMBAI_CUSTOMER)
    assert 5.0 < forward < 6.0


def test_distance_to_self_is_zero():
    assert geo_index.distance_km(MUMBAI_PROVIDER, MUMBAI_PROVIDER) == 0.0


def test_distance_rejects_out_of_range_coordinates():
    with pytest.raises(InvalidCoordinatesError):
        geo_index.distance_km(GeoPoint(latitude=91, longitude=0), MUMBAI_PROVIDER)
    with pytest.raises(InvalidCoordinatesError):
        geo_index.distance_km(MUMBAI_PROVIDER, GeoPoint(latitude=0, longitude=-180.5))


def test_within_radius_boundary_is_inclusive():
    km = geo_index.distance_km(MUMBAI_PROVIDER, MUMBAI_CUSTOMER)
    assert geo_index.within_radius(MUMBAI_CUSTOMER, MUMBAI_PROVIDER, km)
    assert not geo_index.within_radius(MUMBAI_CUSTOMER, MUMBAI_PROVIDER, km - 0.001)


@pytest.mark.parametrize("radius", [0, -1, float("nan")])
def test_within_radius_rejects_non_positive_radius(radius):
    with pytest.raises(InvalidRadiusError):
        geo_index.within_radius(MUMBAI_CUSTOMER, MUMBAI_PROVIDER, radius)


def test_bounding_box_contains_center_and_is_clamped():
    box = geo_index.bounding_box(MUMBAI_PROVIDER, 10)
    assert geo_index.in_box(box, MUMBAI_PROVIDER)
    assert box.min_lat < MUMBAI_PROVIDER.latitude < box.max_lat

    near_pole = geo_index.bounding_box(GeoPoint(latitude=89.99, longitude=179.9), 50)
    assert near_pole.max_lat == 90.0
    assert near_pole.max_lon == 180.0
    assert near_pole.min_lon >= -180.0


def test_filter_within_radius_keeps_boundary_points_and_sorts():
    km = geo_index.distance_km(MUMBAI_CUSTOMER, MUMBAI_PROVIDER)
    far = GeoPoint(latitude=18.5204, longitude=73.8567)
    matches = geo_index.filter_within_radius(
        MUMBAI_CUSTOMER,
        km,
        [("far", far), ("provider", MUMBAI_PROVIDER), ("self", MUMBAI_CUSTOMER)],
    )
    assert [item for item, _ in matches] == ["self", "provider"]
    assert matches[1][1] == km


def test_bounding_boxes_split_at_the_antimeridian():
    west_side = GeoPoint(latitude=0.0, longitude=-179.95)
    boxes = geo_index.bounding_boxes(west_side, 20)
    assert len(boxes) == 2
    assert boxes[0].min_lon == -180.0
    assert boxes[1].max_lon == 180.0
    assert boxes[1].min_lon < 179.95

    assert len(geo_index.bounding_boxes(MUMBAI_PROVIDER, 10)) == 1
    assert geo_index.bounding_boxes(GeoPoint(latitude=90.0, longitude=0.0), 10)[0].min_lon == -180.0


def test_filter_within_radius_reaches_across_the_antimeridian():
    west_side = GeoPoint(latitude=0.0, longitude=-179.95)
    east_side = GeoPoint(latitude=0.0, longitude=179.95)
    matches = geo_index.filter_within_radius(east_side, 20, [("west", west_side)])
    assert [item for item, _ in matches] == ["west"]
    assert 10.0 < matches[0][1] < 12.0


def test_km_to_miles():
    assert geo_index.km_to_miles(10) == pytest.approx(6.21371)
