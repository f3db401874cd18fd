import unittest
from datetime import datetime
from unittest.mock import patch, MagicMock

import requests

from carpark_models import Facility, Occupancy, SourceRecord, SourceUnavailable, MalformedResponse
from carpark_pipeline import (
    CarparkPipeline, parse_int, parse_coordinate, synthesize_facility_id,
    build_occupancy, normalize_record, reconcile, names_match,
    apply_occupancy, apply_scraped_occupancy,
)
from config import WORD_OVERLAP_THRESHOLD
from tfnsw_sources import CarparkApiClient, fetch_mock_records

NOW = datetime(2024, 10, 19, 12, 5)


def _response(status_code=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    response.text = text
    response.headers = {"content-type": "application/json"}
    return response


def _failing(error):
    def fetch():
        raise error
    return fetch


class TestParsing(unittest.TestCase):
    def test_parse_int(self):
        self.assertEqual(parse_int(15), 15)
        self.assertEqual(parse_int(" 12 "), 12)
        self.assertEqual(parse_int("7.9"), 7)
        self.assertEqual(parse_int(None), 0)
        self.assertEqual(parse_int(True), 0)
        self.assertEqual(parse_int("abc"), 0)
        self.assertEqual(parse_int("-5"), 0)
        self.assertEqual(parse_int("inf"), 0)

    def test_parse_coordinate(self):
        self.assertEqual(parse_coordinate("-33.7"), -33.7)
        self.assertIsNone(parse_coordinate(None))
        self.assertIsNone(parse_coordinate("north"))
        self.assertIsNone(parse_coordinate(float("nan")))
        self.assertIsNone(parse_coordinate("inf"))
        self.assertIsNone(parse_coordinate(float("-inf")))

    def test_synthesized_id(self):
        self.assertEqual(synthesize_facility_id(0, "Park&Ride - Tallawong"), "0-park-ride-tallawong")
        self.assertEqual(synthesize_facility_id(4, ""), "4")


class TestNormalizeRecord(unittest.TestCase):
    def test_free_plus_occupied(self):
        facility = normalize_record(
            SourceRecord(name="Park&Ride - Ashfield (historical only)", available="10", occupied="30"), 0, NOW)
        self.assertEqual(facility.facility_name, "Park&Ride - Ashfield")
        self.assertEqual(facility.occupancy.total, 40)
        self.assertEqual(facility.occupancy.occupied, 30)
        self.assertEqual(facility.spots_free, 10)

    def test_free_spots_clamped(self):
        over = normalize_record(SourceRecord(name="A", total="20", occupied="35"), 0, NOW)
        self.assertEqual(over.spots_free, 0)
        negative = normalize_record(SourceRecord(name="B", total="-5", occupied="2"), 1, NOW)
        self.assertEqual(negative.occupancy.total, 0)
        self.assertEqual(negative.spots_free, 0)

    def test_free_spots_within_total(self):
        for total, occupied in [("100", "0"), ("100", "100"), ("0", "0"), (None, "x"), ("50", None)]:
            facility = normalize_record(SourceRecord(name="A", total=total, occupied=occupied), 0, NOW)
            self.assertGreaterEqual(facility.spots_free, 0)
            self.assertLessEqual(facility.spots_free, facility.occupancy.total)

    def test_available_only_estimates_total(self):
        occupancy = build_occupancy(SourceRecord(name="Ashfield", available=42), NOW)
        self.assertEqual(occupancy.total, 84)
        self.assertEqual(occupancy.occupied, 42)

    def test_time_labels_default_to_now(self):
        occupancy = build_occupancy(SourceRecord(name="A", total=1), NOW)
        self.assertEqual((occupancy.time, occupancy.month), ("12:05", "Oct"))
        kept = build_occupancy(SourceRecord(name="A", total=1, time="08:00", month="Jan"), NOW)
        self.assertEqual((kept.time, kept.month), ("08:00", "Jan"))

    def test_zero_zero_is_no_position(self):
        facility = normalize_record(SourceRecord(name="Nowhere", latitude="0", longitude="0"), 0, NOW)
        self.assertIsNone(facility.position)


class TestReconcile(unittest.TestCase):
    def test_positions_backfilled_from_table(self):
        facilities, missing = reconcile([SourceRecord(name="Park&Ride - Ashfield", available=5, occupied=5)], NOW)
        self.assertEqual(facilities[0].position, (-33.8889, 151.1256))
        self.assertEqual(facilities[0].tsn, "AFD")
        self.assertEqual(missing, [])

    def test_source_tsn_kept(self):
        facilities, _ = reconcile([SourceRecord(name="Park&Ride - Ashfield", tsn="XYZ")], NOW)
        self.assertEqual(facilities[0].tsn, "XYZ")
        self.assertTrue(facilities[0].is_resolved)

    def test_source_position_kept(self):
        facilities, _ = reconcile([SourceRecord(name="Park&Ride - Ashfield", latitude="-33.5", longitude="151.5")], NOW)
        self.assertEqual(facilities[0].position, (-33.5, 151.5))

    def test_unresolved_kept_and_logged_once(self):
        records = [SourceRecord(name="Nowhere"), SourceRecord(name="Elsewhere"),
                   SourceRecord(name="Park&Ride - Gordon")]
        with self.assertLogs("carpark_pipeline", level="WARNING") as logs:
            facilities, missing = reconcile(records, NOW)
        self.assertEqual(len(facilities), 3)
        self.assertEqual(missing, ["Elsewhere", "Nowhere"])
        self.assertEqual(len(logs.records), 1)
        self.assertIn("Nowhere", logs.output[0])

    def test_synthesized_ids_are_stable(self):
        records = [SourceRecord(name="Park&Ride - Tallawong"), SourceRecord(name="Park&Ride - Gordon")]
        first, _ = reconcile(records, NOW)
        second, _ = reconcile(records, NOW)
        self.assertEqual([f.facility_id for f in first], [f.facility_id for f in second])
        self.assertEqual(first[0].facility_id, "0-park-ride-tallawong")

    def test_duplicate_ids_made_unique(self):
        records = [SourceRecord(name="Park&Ride - Tallawong P1", facility_id="26"),
                   SourceRecord(name="Park&Ride - Tallawong P2", facility_id="26")]
        facilities, _ = reconcile(records, NOW)
        self.assertEqual([f.facility_id for f in facilities], ["26", "26-2"])


class TestNamesMatch(unittest.TestCase):
    def test_threshold(self):
        self.assertEqual(WORD_OVERLAP_THRESHOLD, 0.5)

    def test_prefix_and_case_ignored(self):
        self.assertTrue(names_match("Park&Ride - Tallawong P1", "tallawong  p1"))

    def test_containment_with_word_overlap(self):
        self.assertTrue(names_match("Park&Ride - Kellyville (north)", "Kellyville"))

    def test_containment_without_shared_word(self):
        self.assertFalse(names_match("Ashfield", "Ash"))

    def test_unrelated_names(self):
        self.assertFalse(names_match("Park&Ride - Gordon", "Park&Ride - Hornsby"))

    def test_empty_names(self):
        self.assertFalse(names_match("", "Gordon"))
        self.assertFalse(names_match("Park&Ride - ", "Park&Ride - "))


class TestApplyOccupancy(unittest.TestCase):
    def setUp(self):
        self.facilities, _ = reconcile([
            SourceRecord(name="Park&Ride - Tallawong P1", facility_id="26"),
            SourceRecord(name="Park&Ride - Ashfield"),
            SourceRecord(name="Park&Ride - Gordon", facility_id="12"),
        ], NOW)

    def test_match_by_id(self):
        merged = apply_occupancy(self.facilities, {
            "26": SourceRecord(name="", facility_id="26", total=100, occupied=30, time="07:45"),
        }, NOW)
        self.assertEqual(merged[0].spots_free, 70)
        self.assertEqual(merged[0].occupancy.time, "07:45")

    def test_match_by_name(self):
        merged = apply_occupancy(self.facilities, {
            "99": SourceRecord(name="Park&Ride - Ashfield", facility_id="99", total=50, occupied=50),
        }, NOW)
        self.assertEqual(merged[1].occupancy.total, 50)
        self.assertEqual(merged[1].spots_free, 0)
        self.assertNotEqual(merged[1].facility_id, "99")

    def test_unmatched_entries_dropped(self):
        merged = apply_occupancy(self.facilities, {
            "77": SourceRecord(name="Nowhere", facility_id="77", total=5, occupied=1),
        }, NOW)
        self.assertEqual(len(merged), 3)
        self.assertNotIn("77", [f.facility_id for f in merged])
        self.assertEqual(merged, self.facilities)

    def test_occupancy_values(self):
        snapshot = Occupancy(total=10, occupied=4, time="09:00", month="Oct")
        merged = apply_occupancy(self.facilities, {"12": snapshot}, NOW)
        self.assertIs(merged[2].occupancy, snapshot)
        self.assertEqual(merged[2].spots_free, 6)

    def test_tsn_filled_when_missing(self):
        facilities, _ = reconcile([SourceRecord(name="Nowhere", facility_id="40")], NOW)
        merged = apply_occupancy(facilities, {"40": SourceRecord(name="", facility_id="40", tsn="NWH")}, NOW)
        self.assertEqual(merged[0].tsn, "NWH")

    def test_position_filled_when_missing(self):
        facilities, _ = reconcile([SourceRecord(name="Nowhere", facility_id="40")], NOW)
        merged = apply_occupancy(facilities, {
            "40": SourceRecord(name="", facility_id="40", latitude="-33.9", longitude="151.0"),
        }, NOW)
        self.assertEqual(merged[0].position, (-33.9, 151.0))

    def test_existing_position_kept(self):
        merged = apply_occupancy(self.facilities, {
            "26": SourceRecord(name="", facility_id="26", latitude="-30.0", longitude="150.0"),
        }, NOW)
        self.assertEqual(merged[0].position, (-33.6896, 150.9068))

    def test_zero_zero_position_ignored(self):
        facilities, _ = reconcile([SourceRecord(name="Nowhere", facility_id="40")], NOW)
        merged = apply_occupancy(facilities, {
            "40": SourceRecord(name="", facility_id="40", latitude=0, longitude=0),
        }, NOW)
        self.assertIsNone(merged[0].position)


class TestApplyScrapedOccupancy(unittest.TestCase):
    def _facility(self, name, total):
        return Facility(facility_id=name, facility_name=name, occupancy=Occupancy(total=total, time="10:00"))

    def test_known_capacity_kept(self):
        merged = apply_scraped_occupancy([self._facility("Park&Ride - Ashfield", 200)],
                                         {"Ashfield": {"name": "Ashfield", "spaces": 42}})
        self.assertEqual(merged[0].occupancy.total, 200)
        self.assertEqual(merged[0].occupancy.occupied, 158)
        self.assertEqual(merged[0].spots_free, 42)
        self.assertEqual(merged[0].occupancy.time, "10:00")

    def test_unknown_capacity_estimated(self):
        merged = apply_scraped_occupancy([self._facility("Park&Ride - Ashfield", 0)],
                                         {"Ashfield": {"name": "Ashfield", "spaces": 42}})
        self.assertEqual(merged[0].occupancy.total, 84)
        self.assertEqual(merged[0].spots_free, 42)

    def test_spaces_clamped_to_capacity(self):
        merged = apply_scraped_occupancy([self._facility("Park&Ride - Gordon", 10)],
                                         {"Gordon Henry St": {"name": "Gordon Henry St", "spaces": 42}})
        self.assertEqual(merged[0].spots_free, 10)
        self.assertEqual(merged[0].occupancy.occupied, 0)

    def test_unmatched_facility_untouched(self):
        facility = self._facility("Park&Ride - Hornsby", 10)
        self.assertEqual(apply_scraped_occupancy([facility], {"Gordon": {"spaces": 1}}), [facility])


class TestSourcePriority(unittest.TestCase):
    @patch("tfnsw_sources.requests.get")
    @patch("tfnsw_sources.requests.post")
    def test_scrape_used_when_graphql_fails(self, mock_post, mock_get):
        mock_post.side_effect = requests.exceptions.ConnectionError("down")
        mock_get.return_value = _response(payload={"Ashfield": {"name": "Ashfield", "spaces": 42}})
        pipeline = CarparkPipeline(rest_client=MagicMock(), use_mock=False)

        result = pipeline.fetch_facilities()

        self.assertEqual(result.source, "scrape")
        self.assertTrue(result.is_demo)
        self.assertEqual(result.status, "degraded")
        self.assertEqual(len(result.facilities), 1)
        facility = result.facilities[0]
        self.assertEqual(facility.spots_free, 42)
        self.assertEqual(facility.tsn, "AFD")
        self.assertTrue(facility.is_resolved)

    def test_primary_source_is_live(self):
        pipeline = CarparkPipeline(sources=[
            ("graphql", lambda: [SourceRecord(name="Park&Ride - Tallawong", available="120", occupied="880")]),
        ], rest_client=MagicMock())
        result = pipeline.fetch_facilities()
        self.assertFalse(result.is_demo)
        self.assertEqual(result.status, "live")
        self.assertEqual(result.facilities[0].occupancy.total, 1000)
        self.assertEqual(result.facilities[0].spots_free, 120)

    def test_empty_source_falls_through(self):
        pipeline = CarparkPipeline(sources=[
            ("graphql", lambda: []),
            ("scrape", lambda: [SourceRecord(name="Gordon", available=3)]),
        ], rest_client=MagicMock())
        result = pipeline.fetch_facilities()
        self.assertEqual(result.source, "scrape")
        self.assertTrue(result.is_demo)

    def test_all_sources_failing(self):
        pipeline = CarparkPipeline(sources=[
            ("graphql", _failing(MalformedResponse("bad shape"))),
            ("scrape", _failing(SourceUnavailable("down"))),
            ("rest", _failing(requests.exceptions.ConnectionError("refused"))),
        ], rest_client=MagicMock())
        with self.assertLogs("carpark_pipeline", level="ERROR"):
            result = pipeline.fetch_facilities()
        self.assertEqual(result.facilities, [])
        self.assertIsNone(result.source)
        self.assertEqual(result.status, "no data")

    def test_facility_lists_deduplicated(self):
        facilities = [Facility(facility_id="26", facility_name="A"), Facility(facility_id="26", facility_name="B")]
        pipeline = CarparkPipeline(sources=[("rest", lambda: facilities)], rest_client=MagicMock())
        result = pipeline.fetch_facilities()
        self.assertEqual([f.facility_id for f in result.facilities], ["26", "26-2"])
        self.assertEqual(result.missing_coordinates, ["A", "B"])

    def test_mock_source(self):
        pipeline = CarparkPipeline(sources=[
            ("graphql", _failing(SourceUnavailable("down"))),
            ("mock", fetch_mock_records),
        ], rest_client=MagicMock())
        result = pipeline.fetch_facilities()
        self.assertEqual(result.source, "mock")
        self.assertTrue(result.is_demo)
        self.assertEqual(len(result.facilities), 5)
        self.assertEqual(result.missing_coordinates, [])

    def test_default_source_order(self):
        pipeline = CarparkPipeline(rest_client=MagicMock(), use_mock=False)
        self.assertEqual([name for name, _ in pipeline.sources], ["graphql", "scrape", "rest"])
        with_mock = CarparkPipeline(rest_client=MagicMock(), use_mock=True)
        self.assertEqual([name for name, _ in with_mock.sources], ["graphql", "scrape", "rest", "mock"])


class TestRestSource(unittest.TestCase):
    def setUp(self):
        self.client = CarparkApiClient(base_url="https://api.example.test/v1/carpark", api_key="k")
        self.client.retry_delay = 0  # speed up test
        self.scraper = MagicMock()
        self.scraper.fetch_scraped.side_effect = SourceUnavailable("scraper down")
        self.pipeline = CarparkPipeline(sources=[], rest_client=self.client, scraper=self.scraper)
        self.pipeline.sources = [("rest", self.pipeline.fetch_rest_facilities)]

    @patch("tfnsw_sources.requests.get")
    def test_rate_limited_occupancy_keeps_facility_list(self, mock_get):
        mock_get.side_effect = [
            _response(payload={"26": "Park&Ride - Tallawong P1", "6": "Park&Ride - Ashfield"}),
            _response(status_code=429),
            _response(status_code=429),
            requests.exceptions.Timeout("timed out"),
        ]

        result = self.pipeline.fetch_facilities()

        self.assertEqual(mock_get.call_count, 4)
        self.assertEqual(result.source, "rest")
        self.assertEqual([f.facility_id for f in result.facilities], ["26", "6"])
        self.assertTrue(all(f.is_resolved for f in result.facilities))
        self.assertTrue(all(f.spots_free == 0 for f in result.facilities))
        self.scraper.fetch_scraped.assert_called_once()

    @patch("tfnsw_sources.requests.get")
    def test_occupancy_merged(self, mock_get):
        mock_get.side_effect = [
            _response(payload={"26": "Park&Ride - Tallawong P1"}),
            _response(payload={"26": {"total": 500, "occupied": 120}}),
        ]
        result = self.pipeline.fetch_facilities()
        self.assertEqual(result.facilities[0].spots_free, 380)

    @patch("tfnsw_sources.requests.get")
    def test_occupancy_position_used_before_table(self, mock_get):
        mock_get.side_effect = [
            _response(payload={"99": "Park&Ride - Brand New Station"}),
            _response(payload={"99": {
                "spots": "100",
                "occupancy": {"total": "10"},
                "location": {"latitude": "-33.9", "longitude": "151.0"},
            }}),
        ]

        with self.assertNoLogs("carpark_pipeline", level="WARNING"):
            result = self.pipeline.fetch_facilities()

        facility = result.facilities[0]
        self.assertEqual(facility.position, (-33.9, 151.0))
        self.assertEqual(facility.spots_free, 90)
        self.assertEqual(result.missing_coordinates, [])

    @patch("tfnsw_sources.requests.get")
    def test_scraped_counts_when_rate_limited(self, mock_get):
        mock_get.side_effect = [
            _response(payload={"6": "Park&Ride - Ashfield", "26": "Park&Ride - Tallawong P1"}),
            _response(status_code=429),
            _response(status_code=429),
            _response(status_code=429),
        ]
        self.scraper.fetch_scraped.side_effect = None
        self.scraper.fetch_scraped.return_value = {"Ashfield": {"name": "Ashfield", "spaces": 42}}

        facilities = self.pipeline.fetch_rest_facilities()

        self.assertEqual(mock_get.call_count, 4)
        by_id = {f.facility_id: f for f in facilities}
        self.assertEqual(by_id["6"].spots_free, 42)
        self.assertEqual(by_id["6"].occupancy.total, 84)
        self.assertEqual(by_id["6"].tsn, "AFD")
        self.assertEqual(by_id["26"].spots_free, 0)

    @patch("tfnsw_sources.requests.get")
    def test_scraper_not_used_when_occupancy_available(self, mock_get):
        mock_get.side_effect = [
            _response(payload={"6": "Park&Ride - Ashfield"}),
            _response(payload={"6": {"total": 50, "occupied": 45}}),
        ]
        facilities = self.pipeline.fetch_rest_facilities()
        self.assertEqual(facilities[0].spots_free, 5)
        self.scraper.fetch_scraped.assert_not_called()

    @patch("tfnsw_sources.requests.get")
    def test_fetch_occupancy_only(self, mock_get):
        mock_get.return_value = _response(payload={"26": {"total": 100, "occupied": 40, "time": "06:30"}})
        occupancy = self.pipeline.fetch_occupancy_only()
        self.assertEqual(occupancy["26"].total, 100)
        self.assertEqual(occupancy["26"].occupied, 40)
        self.assertEqual(occupancy["26"].time, "06:30")

    @patch("tfnsw_sources.requests.get")
    def test_fetch_occupancy_only_failure_is_empty(self, mock_get):
        mock_get.return_value = _response(status_code=500)
        self.assertEqual(self.pipeline.fetch_occupancy_only(), {})


if __name__ == "__main__":
    unittest.main()
