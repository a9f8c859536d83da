from django.test import SimpleTestCase

from shuttle import geo


class HaversineTests(SimpleTestCase):
    def test_one_thousandth_degree_of_latitude(self):
        self.assertAlmostEqual(geo.haversine_m(0.0, 0.0, 0.001, 0.0), 111.19, places=1)

    def test_zero_distance(self):
        self.assertEqual(geo.haversine_m(37.14, 27.56, 37.14, 27.56), 0.0)

    def test_distance_over_mappings(self):
        a = {"lat": 0.0, "lng": 0.0}
        b = {"lat": 0.0, "lng": 0.001}
        self.assertAlmostEqual(geo.distance(a, b), 111.19, places=1)


class BearingTests(SimpleTestCase):
    def test_cardinal_directions(self):
        origin = {"lat": 0.0, "lng": 0.0}
        self.assertAlmostEqual(geo.bearing(origin, {"lat": 1.0, "lng": 0.0}), 0.0)
        self.assertAlmostEqual(geo.bearing(origin, {"lat": 0.0, "lng": 1.0}), 90.0)
        self.assertAlmostEqual(geo.bearing(origin, {"lat": -1.0, "lng": 0.0}), 180.0)
        self.assertAlmostEqual(geo.bearing(origin, {"lat": 0.0, "lng": -1.0}), 270.0)


class SegmentProjectionTests(SimpleTestCase):
    def test_point_along_segment(self):
        # (lng, lat): segment runs north from the origin, about 111 m long.
        result = geo.project_onto_segment((0.0, 0.0003), (0.0, 0.0), (0.0, 0.001))
        self.assertAlmostEqual(result["t"], 0.3)
        self.assertAlmostEqual(result["projected"][1], 0.0003)
        self.assertAlmostEqual(result["distance"], 0.0, places=6)

    def test_offset_point_measures_haversine_distance(self):
        result = geo.project_onto_segment((0.0001, 0.0005), (0.0, 0.0), (0.0, 0.001))
        self.assertAlmostEqual(result["t"], 0.5)
        self.assertAlmostEqual(result["distance"], 11.12, places=1)

    def test_projection_is_clamped_to_segment(self):
        before = geo.project_onto_segment((0.0, -0.001), (0.0, 0.0), (0.0, 0.001))
        after = geo.project_onto_segment((0.0, 0.005), (0.0, 0.0), (0.0, 0.001))
        self.assertEqual(before["t"], 0.0)
        self.assertEqual(after["t"], 1.0)
        self.assertAlmostEqual(after["projected"][1], 0.001)

    def test_degenerate_segment_returns_start(self):
        result = geo.project_onto_segment((0.0, 0.001), (0.0, 0.0), (0.0, 0.0))
        self.assertEqual(result["t"], 0.0)
        self.assertEqual(result["projected"], (0.0, 0.0))
        self.assertAlmostEqual(result["distance"], 111.19, places=1)


class ConversionTests(SimpleTestCase):
    def test_knots_to_kmh(self):
        self.assertAlmostEqual(geo.knots_to_kmh(10), 18.52)

    def test_valid_coordinates(self):
        self.assertTrue(geo.valid_coordinates(37.1, 27.5))
        self.assertFalse(geo.valid_coordinates(91.0, 0.0))
        self.assertFalse(geo.valid_coordinates(0.0, -180.5))
        self.assertFalse(geo.valid_coordinates(float("nan"), 0.0))
        self.assertFalse(geo.valid_coordinates(None, 0.0))
