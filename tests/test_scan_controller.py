import json
import threading
import unittest
from pathlib import Path
from unittest.mock import Mock

from depotsync.models import DepotMapping
from depotsync.services.acquisition import FullCrawl, IncrementalCrawl, MappingBatch
from depotsync.services.errors import AuthError
from depotsync.services.mapping_applier import MappingApplier
from depotsync.services.mapping_store import MappingStore
from depotsync.services.progress import ProgressBroadcaster, ScanMode, ScanStatus
from depotsync.services.scan_controller import ChangeNumberProbe, ScanJobController
from depotsync.services.snapshot_import import LocalSnapshotImport, SnapshotImport

from tests.helpers import BlockingStrategy, FakePicsClient, TempDatabase, mapping, snapshot_body

WAIT = 10.0


def _snapshot_http(count=6):
    response = Mock()
    response.content = json.dumps(snapshot_body(count)).encode("utf-8")
    http = Mock()
    http.get.return_value = response
    return http


class ScanJobControllerTests(unittest.TestCase):
    def setUp(self):
        self.database = TempDatabase()
        self.store = MappingStore(self.database.session_factory)
        self.applier = MappingApplier(self.store)
        self.broadcaster = ProgressBroadcaster()
        self.pics = FakePicsClient(current_change_number=1005, changed_apps=[10, 20, 30])
        self.app_list = {app_id: f"Catalog Game {app_id}" for app_id in range(1, 11)}
        self.current_change_number = 1005
        self.strategy_override = None
        self.controller = ScanJobController(
            self.store,
            self.applier,
            self.broadcaster,
            strategy_factory=self._strategy,
            probe=ChangeNumberProbe(fetch=lambda: self.current_change_number),
            gap_threshold=20000,
        )

    def tearDown(self):
        self.controller.wait_idle(WAIT)
        self.database.close()

    def _strategy(self, mode, auth_mode, last_change_number):
        if self.strategy_override is not None:
            return self.strategy_override
        if mode == ScanMode.SNAPSHOT_IMPORT:
            return SnapshotImport("https://example.invalid/snapshot.json", http=_snapshot_http(), min_mappings=1, batch_size=4)
        if mode == ScanMode.LOCAL_IMPORT:
            return LocalSnapshotImport(str(Path(self.database.directory) / "pics_depot_mappings.json"), batch_size=4)
        if mode == ScanMode.INCREMENTAL:
            return IncrementalCrawl(last_change_number, auth_mode, client_factory=lambda event: self.pics, batch_size=2)
        return FullCrawl(
            auth_mode,
            client_factory=lambda event: self.pics,
            app_list_fetcher=lambda: self.app_list,
            batch_size=2,
        )

    def _run(self, mode, **kwargs):
        result = self.controller.start(mode, **kwargs)
        self.assertTrue(result.started, result)
        self.assertTrue(result.handle.wait(WAIT))
        return self.controller.get_snapshot()

    def test_snapshot_is_idle_shell_without_history(self):
        snapshot = self.controller.get_snapshot()

        self.assertEqual(snapshot.status, ScanStatus.IDLE)
        self.assertIsNone(snapshot.id)

    def test_concurrent_starts_admit_exactly_one(self):
        gate = threading.Event()
        self.strategy_override = BlockingStrategy(gate)
        barrier = threading.Barrier(2)
        results = []

        def attempt():
            barrier.wait()
            results.append(self.controller.start(ScanMode.FULL))

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(WAIT)
        gate.set()

        self.assertEqual(sorted(result.outcome for result in results), ["busy", "started"])

    def test_busy_start_has_no_side_effects(self):
        gate = threading.Event()
        self.strategy_override = BlockingStrategy(gate)
        first = self.controller.start(ScanMode.FULL)
        self.strategy_override.entered.wait(WAIT)

        second = self.controller.start(ScanMode.SNAPSHOT_IMPORT)
        job_id = self.controller.get_snapshot().id
        gate.set()
        first.handle.wait(WAIT)

        self.assertTrue(second.is_busy)
        self.assertEqual(job_id, first.handle.job_id)

    def test_incremental_scenario_completes_and_advances_change_number(self):
        self.store.record_successful_run(1000)

        snapshot = self._run(ScanMode.INCREMENTAL)

        self.assertEqual(snapshot.status, ScanStatus.COMPLETE)
        self.assertEqual(self.store.get_last_change_number(), 1005)
        self.assertEqual(self.store.count(), 3)
        self.assertEqual(snapshot.mappings_found_total, 3)
        self.assertEqual(snapshot.processed_batches, 2)
        self.assertFalse(snapshot.is_connected)

    def test_gap_exceeded_creates_no_job_and_snapshot_import_still_runs(self):
        self.store.record_successful_run(1000)
        self.current_change_number = 26000

        result = self.controller.start(ScanMode.INCREMENTAL)

        self.assertTrue(result.gap_exceeded)
        self.assertEqual(result.decision.gap, 25000)
        self.assertIsNone(self.controller.get_snapshot().id)
        self.assertEqual(self.controller.get_snapshot().status, ScanStatus.IDLE)
        self.assertEqual(self.pics.fetch_calls, [])

        snapshot = self._run(ScanMode.SNAPSHOT_IMPORT)
        self.assertEqual(snapshot.status, ScanStatus.COMPLETE)
        self.assertEqual(self.store.count(), 6)
        self.assertEqual(self.store.get_last_change_number(), 31000000)

    def test_snapshot_import_twice_keeps_one_row_per_depot(self):
        first = self._run(ScanMode.SNAPSHOT_IMPORT)
        count_after_first = self.store.count()
        second = self._run(ScanMode.SNAPSHOT_IMPORT)

        with self.database.session_factory() as db:
            depot_ids = [row[0] for row in db.query(DepotMapping.depot_id).all()]
        self.assertEqual(first.status, ScanStatus.COMPLETE)
        self.assertEqual(second.status, ScanStatus.COMPLETE)
        self.assertEqual(count_after_first, 6)
        self.assertEqual(self.store.count(), count_after_first)
        self.assertEqual(len(depot_ids), len(set(depot_ids)))
        self.assertEqual(second.mappings_found_this_session, 6)
        self.assertEqual(second.mappings_found_total, 6)

    def test_local_import_reads_the_snapshot_file(self):
        path = Path(self.database.directory) / "pics_depot_mappings.json"
        path.write_text(json.dumps(snapshot_body(5, change_number=2000)), encoding="utf-8")

        snapshot = self._run(ScanMode.LOCAL_IMPORT)

        self.assertEqual(snapshot.status, ScanStatus.COMPLETE)
        self.assertEqual(snapshot.mode, ScanMode.LOCAL_IMPORT)
        self.assertEqual(self.store.count(), 5)
        self.assertEqual(self.store.get_last_change_number(), 2000)

    def test_local_import_without_file_is_an_error(self):
        snapshot = self._run(ScanMode.LOCAL_IMPORT)

        self.assertEqual(snapshot.status, ScanStatus.ERROR)
        self.assertIn("not found", snapshot.error_detail)
        self.assertEqual(self.store.count(), 0)

    def test_job_baseline_is_read_after_the_slot_is_claimed(self):
        self.store.record_successful_run(1000)
        passed = []

        def recording_factory(mode, auth_mode, last_change_number):
            passed.append(last_change_number)
            return self._strategy(mode, auth_mode, last_change_number)

        def fetch_while_another_job_finishes():
            self.applier.apply(MappingBatch(mappings=[mapping(999, 99, "Earlier Game")]))
            self.store.record_successful_run(1003)
            return 1005

        self.controller.strategy_factory = recording_factory
        self.controller.probe = ChangeNumberProbe(fetch=fetch_while_another_job_finishes)

        snapshot = self._run(ScanMode.INCREMENTAL)

        self.assertEqual(passed, [1003])
        self.assertEqual(snapshot.status, ScanStatus.COMPLETE)
        self.assertEqual(snapshot.mappings_found_total, 4)
        self.assertEqual(self.store.count(), 4)

    def test_unknown_change_number_refuses_incremental(self):
        result = self.controller.start(ScanMode.INCREMENTAL)

        self.assertTrue(result.gap_exceeded)
        self.assertEqual(result.decision.gap, 0)

    def test_force_full_runs_full_crawl(self):
        self.current_change_number = 99999

        result = self.controller.start(ScanMode.INCREMENTAL, force_full=True)
        result.handle.wait(WAIT)

        self.assertEqual(result.handle.mode, ScanMode.FULL)
        self.assertEqual(self.controller.get_snapshot().status, ScanStatus.COMPLETE)
        self.assertEqual(self.store.count(), 10)

    def test_cancel_mid_crawl_keeps_only_finished_batches(self):
        cancel_at = 3

        def cancel_during_fetch(call_number):
            if call_number == cancel_at:
                self.controller.cancel()

        self.pics.on_fetch = cancel_during_fetch

        snapshot = self._run(ScanMode.FULL)

        applied_apps = [app for chunk in self.pics.fetch_calls[: cancel_at - 1] for app in chunk]
        stored = sorted(
            record.app_id for app_id in self.app_list for record in self.store.list_for_app(app_id)
        )
        self.assertEqual(snapshot.status, ScanStatus.CANCELLED)
        self.assertTrue(snapshot.cancel_requested)
        self.assertIsNone(snapshot.error_detail)
        self.assertEqual(stored, sorted(applied_apps))
        self.assertEqual(snapshot.processed_batches, cancel_at - 1)
        self.assertEqual(self.store.get_last_change_number(), 0)

    def test_cancel_without_job(self):
        self.assertFalse(self.controller.cancel())

    def test_progress_is_monotonic(self):
        subscription = self.broadcaster.subscribe(max_pending=500)

        self._run(ScanMode.FULL)

        events = []
        while True:
            event = subscription.get(timeout=0.05)
            if event is None:
                break
            events.append(event)
        processed = [event.job.processed_batches for event in events]
        self.assertEqual(processed, sorted(processed))
        self.assertEqual(events[0].kind, "Started")
        self.assertEqual(events[-1].kind, "Complete")
        self.assertEqual(processed[-1], 5)
        for event in events:
            self.assertLessEqual(event.job.processed_batches, event.job.total_batches)

    def test_failure_ends_in_error_and_releases_slot(self):
        self.pics.connect_error = AuthError("Steam rejected the account login")

        snapshot = self._run(ScanMode.FULL)

        self.assertEqual(snapshot.status, ScanStatus.ERROR)
        self.assertIn("rejected", snapshot.error_detail)
        self.assertFalse(self.controller.is_busy())

        self.pics.connect_error = None
        snapshot = self._run(ScanMode.FULL)
        self.assertEqual(snapshot.status, ScanStatus.COMPLETE)

    def test_full_update_demand_during_incremental_is_an_error(self):
        self.store.record_successful_run(1000)
        self.pics.force_full_update = True

        snapshot = self._run(ScanMode.INCREMENTAL)

        self.assertEqual(snapshot.status, ScanStatus.ERROR)
        self.assertIn("full scan", snapshot.error_detail)
        self.assertEqual(self.store.get_last_change_number(), 1000)

    def test_probe_failure_does_not_block_start(self):
        self.store.record_successful_run(1000)
        self.controller.probe = ChangeNumberProbe(fetch=Mock(side_effect=ConnectionError("offline")))

        snapshot = self._run(ScanMode.INCREMENTAL)

        self.assertEqual(snapshot.status, ScanStatus.COMPLETE)

    def test_acknowledge_resets_terminal_job(self):
        self.assertFalse(self.controller.acknowledge())
        self._run(ScanMode.FULL)

        self.assertTrue(self.controller.acknowledge())
        snapshot = self.controller.get_snapshot()
        self.assertEqual(snapshot.status, ScanStatus.IDLE)
        self.assertEqual(snapshot.mappings_found_total, 10)

    def test_existing_downloads_are_tagged_during_crawl(self):
        from depotsync.models import DownloadRecord

        with self.database.session_factory() as db:
            db.add(DownloadRecord(service="steam", depot_id=11))
            db.commit()

        self._run(ScanMode.FULL)

        with self.database.session_factory() as db:
            row = db.query(DownloadRecord).filter(DownloadRecord.depot_id == 11).first()
        self.assertEqual(row.game_name, "Catalog Game 1")


class ChangeNumberProbeTests(unittest.TestCase):
    def test_value_is_cached_until_ttl(self):
        now = [0.0]
        fetch = Mock(side_effect=[100, 200])
        probe = ChangeNumberProbe(fetch=fetch, ttl_seconds=60, clock=lambda: now[0])

        self.assertEqual(probe.current(), 100)
        now[0] = 30.0
        self.assertEqual(probe.current(), 100)
        now[0] = 61.0
        self.assertEqual(probe.current(), 200)
        self.assertEqual(fetch.call_count, 2)

    def test_prime_skips_unknown_values(self):
        probe = ChangeNumberProbe(fetch=Mock(return_value=5))
        probe.prime(0)

        self.assertEqual(probe.current(), 5)


if __name__ == "__main__":
    unittest.main()
