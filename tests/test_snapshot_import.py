import json
import shutil
import tempfile
import threading
import unittest
from pathlib import Path
from unittest.mock import Mock

import requests

from depotsync.core.retry import RetryPolicy
from depotsync.services.errors import CorruptSnapshotError, NetworkError
from depotsync.services.progress import ScanMode
from depotsync.services.snapshot_import import LocalSnapshotImport, SnapshotImport, parse_snapshot

from tests.helpers import snapshot_body


class _RecordingContext:
    def __init__(self):
        self.cancel_event = threading.Event()
        self.statuses = []
        self.reports = []

    def check_cancelled(self):
        return None

    def set_status(self, status, message=""):
        self.statuses.append(status)

    def set_connection(self, connected, logged_on):
        return None

    def report(self, **values):
        self.reports.append(values)


def _http_returning(body, status_code=200):
    response = Mock()
    response.content = body
    response.status_code = status_code
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"HTTP {status_code}")
    http = Mock()
    http.get.return_value = response
    return http


class ParseSnapshotTests(unittest.TestCase):
    def test_empty_body_is_corrupt(self):
        for body in (b"", b"   ", None):
            with self.assertRaises(CorruptSnapshotError):
                parse_snapshot(body, min_mappings=1)

    def test_truncated_json_is_corrupt(self):
        body = json.dumps(snapshot_body(3)).encode("utf-8")[:-20]

        with self.assertRaises(CorruptSnapshotError):
            parse_snapshot(body, min_mappings=1)

    def test_missing_depot_mappings_is_corrupt(self):
        with self.assertRaises(CorruptSnapshotError):
            parse_snapshot(json.dumps({"metadata": {}}), min_mappings=1)
        with self.assertRaises(CorruptSnapshotError):
            parse_snapshot(json.dumps([1, 2, 3]), min_mappings=1)

    def test_below_sanity_floor_is_corrupt(self):
        with self.assertRaises(CorruptSnapshotError):
            parse_snapshot(json.dumps(snapshot_body(5)), min_mappings=10)

    def test_valid_snapshot_parses_owner_and_name(self):
        payload = snapshot_body(2, change_number=31000123)
        payload["depotMappings"]["228988"] = {
            "appIds": [228980, 570],
            "appNames": ["Steamworks Common Redistributables", "Dota 2"],
            "ownerId": 570,
        }
        payload["depotMappings"]["not-a-depot"] = {"ownerId": 1}
        payload["depotMappings"]["999"] = {"appIds": []}

        records, change_number = parse_snapshot(json.dumps(payload).encode("utf-8"), min_mappings=3)

        by_depot = {record.depot_id: record for record in records}
        self.assertEqual(change_number, 31000123)
        self.assertEqual(len(records), 3)
        self.assertEqual(by_depot[228988].app_id, 570)
        self.assertEqual(by_depot[228988].game_name, "Dota 2")
        self.assertEqual(by_depot[10001].game_name, "Snapshot Game 1000")
        self.assertEqual(by_depot[10001].source, "snapshot")
        self.assertIsNone(by_depot[10001].observed_at.tzinfo)

    def test_owner_falls_back_to_first_app(self):
        payload = {"depotMappings": {"501": {"appIds": [500], "appNames": []}}}

        records, change_number = parse_snapshot(json.dumps(payload), min_mappings=1)

        self.assertEqual(records[0].app_id, 500)
        self.assertEqual(records[0].game_name, "App 500")
        self.assertEqual(change_number, 0)


class SnapshotImportStrategyTests(unittest.TestCase):
    def test_batches_cover_every_mapping(self):
        http = _http_returning(json.dumps(snapshot_body(5)).encode("utf-8"))
        strategy = SnapshotImport("https://example.invalid/snapshot.json", http=http, min_mappings=1, batch_size=2)
        ctx = _RecordingContext()

        strategy.connect(ctx)
        batches = list(strategy.batches(ctx))

        self.assertEqual([len(batch.mappings) for batch in batches], [2, 2, 1])
        self.assertEqual([batch.batch_index for batch in batches], [1, 2, 3])
        self.assertEqual(batches[0].total_batches_known, 3)
        self.assertEqual(strategy.current_change_number, 31000000)
        self.assertEqual(ctx.reports[-1]["processed_batches"], 3)

    def test_corrupt_download_fails_before_any_batch(self):
        http = _http_returning(b"<html>rate limited</html>")
        strategy = SnapshotImport("https://example.invalid/snapshot.json", http=http, min_mappings=1)

        with self.assertRaises(CorruptSnapshotError):
            strategy.connect(_RecordingContext())

    def test_http_errors_exhaust_retries(self):
        http = _http_returning(b"", status_code=503)
        strategy = SnapshotImport(
            "https://example.invalid/snapshot.json",
            http=http,
            min_mappings=1,
            retry_policy=RetryPolicy(attempts=3, backoff=0),
        )

        with self.assertRaises(NetworkError):
            strategy.connect(_RecordingContext())
        self.assertEqual(http.get.call_count, 3)


class LocalSnapshotImportTests(unittest.TestCase):
    def setUp(self):
        self.directory = tempfile.mkdtemp(prefix="depotsync-snapshot-")
        self.path = Path(self.directory) / "pics_depot_mappings.json"

    def tearDown(self):
        shutil.rmtree(self.directory, ignore_errors=True)

    def test_reads_mappings_from_file(self):
        self.path.write_text(json.dumps(snapshot_body(3, change_number=42)), encoding="utf-8")
        strategy = LocalSnapshotImport(str(self.path), batch_size=2)
        ctx = _RecordingContext()

        strategy.connect(ctx)
        batches = list(strategy.batches(ctx))

        self.assertEqual(strategy.mode, ScanMode.LOCAL_IMPORT)
        self.assertEqual(sum(len(batch.mappings) for batch in batches), 3)
        self.assertEqual(strategy.current_change_number, 42)

    def test_missing_file_fails_before_any_batch(self):
        strategy = LocalSnapshotImport(str(self.path))

        with self.assertRaises(CorruptSnapshotError):
            strategy.connect(_RecordingContext())

    def test_truncated_file_is_corrupt(self):
        self.path.write_bytes(json.dumps(snapshot_body(3)).encode("utf-8")[:-10])

        with self.assertRaises(CorruptSnapshotError):
            LocalSnapshotImport(str(self.path)).connect(_RecordingContext())


if __name__ == "__main__":
    unittest.main()
