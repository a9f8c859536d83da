import math

from django.test import SimpleTestCase, override_settings

from shuttle import routes
from shuttle.correction import full_correction, snap_to_stop
from shuttle.geo import project_onto_segment
from shuttle.routes import RouteNetwork, get_route_network

# (lng, lat) pairs: a 111 m leg north from the origin, then a 111 m leg east.
L_SHAPE = [(0.0, 0.0), (0.0, 0.001), (0.001, 0.001)]


class RouteSnapTests(SimpleTestCase):
    def setUp(self):
        self.network = RouteNetwork([(0.0, 0.0), (0.0, 0.001)])

    def test_fix_in_corridor_lands_on_segment(self):
        result = self.network.snap(0.0, 0.0003, max_distance=50)
        self.assertTrue(result["snapped"])
        self.assertAlmostEqual(result["lng"], 0.0)
        self.assertAlmostEqual(result["lat"], 0.0003)

        # About 33 m along the 111 m segment.
        projection = project_onto_segment((0.0, 0.0003), (0.0, 0.0), (0.0, 0.001))
        self.assertAlmostEqual(projection["t"], 0.3)
        self.assertEqual(projection["projected"], (result["lng"], result["lat"]))

    def test_offset_fix_is_pulled_onto_segment(self):
        result = self.network.snap(0.0002, 0.0005, max_distance=50)
        self.assertTrue(result["snapped"])
        self.assertAlmostEqual(result["lng"], 0.0)
        self.assertAlmostEqual(result["lat"], 0.0005)
        self.assertAlmostEqual(result["distance"], 22.24, places=1)
        self.assertEqual(result["original_lng"], 0.0002)

    def test_fix_beyond_max_distance_is_unchanged(self):
        result = self.network.snap(0.001, 0.0005, max_distance=50)
        self.assertFalse(result["snapped"])
        self.assertEqual((result["lng"], result["lat"]), (0.001, 0.0005))
        self.assertAlmostEqual(result["distance"], 111.19, places=1)

    def test_empty_network_reports_infinite_distance(self):
        result = RouteNetwork([]).snap(0.0, 0.0)
        self.assertFalse(result["snapped"])
        self.assertTrue(math.isinf(result["distance"]))

    def test_long_gaps_split_runs(self):
        network = RouteNetwork([(0.0, 0.0), (0.0, 0.001), (0.0, 0.01)])
        self.assertEqual(len(network.segments), 1)
        # Halfway along the 1 km gap there is nothing to snap to.
        result = network.snap(0.0, 0.005, max_distance=50)
        self.assertFalse(result["snapped"])

    def test_default_network_is_built_from_resort_routes(self):
        network = get_route_network()
        expected = sum(len(route["coordinates"]) for route in routes.ROUTE_DEFINITIONS)
        self.assertEqual(len(network), expected)
        self.assertGreater(len(network.segments), 0)
        self.assertIs(get_route_network(), network)

    @override_settings(SHUTTLE_CONFIG={"route_run_break": 1.0})
    def test_run_break_follows_settings(self):
        self.assertEqual(get_route_network().run_break_m, 1.0)


class HeadingTests(SimpleTestCase):
    def setUp(self):
        self.network = RouteNetwork(L_SHAPE)

    def test_heading_points_to_next_vertex(self):
        self.assertAlmostEqual(self.network.correct_heading(0.0, 0.0001, 200.0), 0.0)
        self.assertAlmostEqual(self.network.correct_heading(0.0001, 0.001, 200.0), 90.0, places=4)

    def test_last_vertex_keeps_heading(self):
        self.assertEqual(self.network.correct_heading(0.001, 0.001, 123.0), 123.0)

    def test_nearest_vertex(self):
        nearest = self.network.nearest_vertex(0.0, 0.0009)
        self.assertEqual(nearest["index"], 1)
        self.assertEqual(nearest["point"], (0.0, 0.001))
        self.assertIsNone(RouteNetwork([]).nearest_vertex(0.0, 0.0))


class StopSnapTests(SimpleTestCase):
    def setUp(self):
        # Stop 1 sits about 16.7 m east of the origin, stop 2 exactly on it.
        self.stops = [
            {"id": 2, "name": "Beach", "lat": 0.0, "lng": 0.0},
            {"id": 1, "name": "Lobby", "lat": 0.0, "lng": 0.00015},
        ]

    def test_first_stop_by_id_wins_over_nearest(self):
        result = snap_to_stop(0.0, 0.0, self.stops, snap_radius=20)
        self.assertTrue(result["snapped_to_stop"])
        self.assertEqual(result["stop_id"], 1)
        self.assertEqual(result["stop_name"], "Lobby")
        self.assertEqual((result["lng"], result["lat"]), (0.00015, 0.0))

    def test_order_does_not_depend_on_caller(self):
        first = snap_to_stop(0.0, 0.0, self.stops, snap_radius=20)
        second = snap_to_stop(0.0, 0.0, list(reversed(self.stops)), snap_radius=20)
        self.assertEqual(first["stop_id"], second["stop_id"])

    def test_out_of_radius(self):
        result = snap_to_stop(0.0, 0.0, self.stops, snap_radius=10)
        self.assertTrue(result["snapped_to_stop"])
        self.assertEqual(result["stop_id"], 2)

        result = snap_to_stop(0.01, 0.01, self.stops, snap_radius=10)
        self.assertFalse(result["snapped_to_stop"])
        self.assertEqual((result["lng"], result["lat"]), (0.01, 0.01))


class FullCorrectionTests(SimpleTestCase):
    def setUp(self):
        self.network = RouteNetwork(L_SHAPE)
        self.stops = [{"id": 1, "name": "Corner", "lat": 0.001, "lng": 0.0001}]

    def test_stop_wins_over_route(self):
        result = full_correction(
            0.0, 0.001, self.stops, stop_snap_radius=20, route_max_distance=50, network=self.network
        )
        self.assertEqual(result["correction_type"], "stop")
        self.assertEqual(result["stop_id"], 1)
        self.assertEqual(result["distance"], 0.0)
        self.assertEqual((result["lng"], result["lat"]), (0.0001, 0.001))

    def test_route_when_no_stop_in_range(self):
        result = full_correction(
            0.0001, 0.0005, self.stops, stop_snap_radius=20, route_max_distance=50, network=self.network
        )
        self.assertEqual(result["correction_type"], "route")
        self.assertAlmostEqual(result["lng"], 0.0)
        self.assertGreater(result["distance"], 0.0)

    def test_none_keeps_raw_fix(self):
        result = full_correction(
            0.01, 0.01, self.stops, stop_snap_radius=20, route_max_distance=50, network=self.network
        )
        self.assertEqual(result["correction_type"], "none")
        self.assertEqual((result["lng"], result["lat"]), (0.01, 0.01))
        self.assertIsNone(result["stop_id"])

    def test_empty_network_degrades_to_none(self):
        result = full_correction(0.0, 0.0, [], network=RouteNetwork([]))
        self.assertEqual(result["correction_type"], "none")
        self.assertTrue(math.isinf(result["distance"]))
