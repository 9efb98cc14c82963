from __future__ import annotations

import unittest

from correction_store.config import StoreConfig
from correction_store.errors import AlreadyRunningError, BuildTextError, CorruptRecordError
from correction_store.repository import CorrectionRepository
from correction_store.sync import CorrectionSync
from correction_store.worker import CorrectionLoop, StoreState

from fake_object_store import commit_files, linked_pair


FILES = {
    "story/a.md": "A.\n",
    "story/b.md": "B.\n",
    "story/c.md": "C.\n",
    "README.md": "Hallo\n",
}


class CorrectionLoopTests(unittest.TestCase):
    def setUp(self) -> None:
        self.local, self.remote = linked_pair(dict(FILES))
        self.repo = CorrectionRepository(self.local)
        self.sync = CorrectionSync(self.local, self.repo)
        self.config = StoreConfig(path_filter=r"story/.*\.md", poll_delay_seconds=30, error_delay_seconds=60)
        self.state = StoreState()
        self.sleeps = []
        self.calls = []

    def make_loop(self, *phases):
        return CorrectionLoop(
            self.repo,
            self.sync,
            phases,
            self.config,
            self.state,
            sleep=self.sleeps.append,
        )

    def recording_phase(self, name):
        def phase(path):
            self.calls.append((name, path))
            return False

        return phase

    def test_pass_orders_files_by_nearest_correction(self) -> None:
        for path in ("story/c.md", "story/b.md"):
            self.repo.correct_text(path, self.repo.get_or_create_metadata(path))
        commit_files(self.local, {**FILES, "story/b.md": "B2.\n"}, timestamp=1700000100)

        self.make_loop(self.recording_phase("check"), self.recording_phase("judge")).run(max_passes=1)

        self.assertEqual(
            self.calls,
            [
                ("check", "story/c.md"),
                ("judge", "story/c.md"),
                ("check", "story/b.md"),
                ("judge", "story/b.md"),
                ("check", "story/a.md"),
                ("judge", "story/a.md"),
            ],
        )
        self.assertEqual(self.sleeps, [30])
        self.assertEqual(self.state.passes, 1)
        self.assertFalse(self.state.running)
        self.assertEqual(self.state.pass_head, self.repo.head_commit())

    def test_second_loop_on_same_state_is_refused(self) -> None:
        self.state.running = True
        with self.assertRaises(AlreadyRunningError):
            self.make_loop().run(max_passes=1)
        self.assertTrue(self.state.running)

    def test_failed_pass_waits_error_delay(self) -> None:
        def broken(path):
            raise RuntimeError("grammar service down")

        with self.assertLogs("correction_store.worker", level="ERROR"):
            self.make_loop(broken).run(max_passes=2)

        self.assertEqual(self.sleeps, [60, 60])
        self.assertEqual(self.state.errors, 2)
        self.assertEqual(self.state.passes, 0)
        self.assertFalse(self.state.running)

    def test_corrupt_record_skips_file_but_not_pass(self) -> None:
        def check(path):
            self.calls.append(("check", path))
            if path == "story/a.md":
                raise CorruptRecordError("Stored correction record matches neither schema")
            return False

        def judge(path):
            self.calls.append(("judge", path))
            if path == "story/b.md":
                raise BuildTextError(0, "no selected text, model correction or original available")
            return False

        with self.assertLogs("correction_store.worker", level="ERROR"):
            self.make_loop(check, judge).run(max_passes=2)

        visited = [path for name, path in self.calls if name == "check"]
        self.assertEqual(visited, ["story/a.md", "story/b.md", "story/c.md"] * 2)
        self.assertEqual(set(self.state.skipped), {"story/a.md", "story/b.md"})
        self.assertEqual(self.state.passes, 2)
        self.assertEqual(self.state.errors, 0)
        self.assertEqual(self.sleeps, [30, 30])

    def test_network_failure_during_sync_waits_error_delay(self) -> None:
        self.local.offline = True
        with self.assertLogs("correction_store.worker", level="ERROR"):
            self.make_loop(self.recording_phase("check")).run(max_passes=1)
        self.assertEqual(self.sleeps, [60])
        self.assertEqual(self.calls, [])

    def test_moved_head_restarts_pass_without_waiting(self) -> None:
        def add_word_once(path):
            self.calls.append(("dictionary", path))
            if len(self.calls) == 1:
                self.repo.add_word_to_dictionary("Hallo")
                return True
            return False

        self.make_loop(add_word_once).run(max_passes=2)

        self.assertEqual(self.state.restarts, 1)
        self.assertEqual(self.state.passes, 1)
        self.assertEqual(self.sleeps, [30])
        self.assertEqual(len(self.calls), 4)

    def test_each_pass_gets_fresh_cache(self) -> None:
        loop = self.make_loop()
        loop.run_pass()
        first = self.state.cache
        loop.run_pass()
        self.assertIsNot(self.state.cache, first)


if __name__ == "__main__":
    unittest.main()
