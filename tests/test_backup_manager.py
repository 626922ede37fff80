import json
import os
import tempfile
import unittest
from pathlib import Path

from fass_backup.backup_manager import BackupManager
from fass_backup.errors import BackupError
from fass_backup.hasher import calculate_hash
from fass_backup.models import BackupPaths


class BackupManagerTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.source = self.root / "source"
        (self.source / "notes").mkdir(parents=True)
        (self.source / "a.txt").write_text("hello")
        (self.source / "notes" / "b.txt").write_text("notes")

        self.paths = BackupPaths(home=self.root / "state", backup_root=self.root / "Backup")
        self.paths.ensure()
        self.manager = BackupManager(self.paths)

    def tearDown(self):
        self._tmp.cleanup()

    def record(self, *parts):
        return self.manager.store.load().get(self.source.joinpath(*parts))

    def test_initial_backup_copies_tree_and_records_hashes(self):
        stats = self.manager.backup(self.source)

        self.assertEqual(stats.files_copied, 2)
        self.assertEqual(stats.files_failed, 0)
        self.assertEqual((self.paths.backup_root / "a.txt").read_text(), "hello")
        self.assertEqual((self.paths.backup_root / "notes" / "b.txt").read_text(), "notes")

        a = self.record("a.txt")
        self.assertEqual(a.content_hash, calculate_hash(self.source / "a.txt"))
        self.assertEqual(a.backup_path, self.paths.backup_root / "a.txt")
        self.assertEqual(a.file_type, "txt")
        self.assertEqual(len(self.manager.list_records()), 2)

    def test_second_backup_without_changes_is_idempotent(self):
        self.manager.backup(self.source)
        before = self.paths.index_file.read_bytes()

        stats = self.manager.backup(self.source)

        self.assertEqual(stats.files_copied, 0)
        self.assertEqual(stats.files_unchanged, 2)
        self.assertEqual(self.paths.index_file.read_bytes(), before)

    def test_backup_recopies_only_the_changed_file(self):
        self.manager.backup(self.source)
        b_before = self.record("notes", "b.txt")

        (self.source / "a.txt").write_text("hello!")
        stats = self.manager.backup(self.source)

        self.assertEqual(stats.files_copied, 1)
        self.assertEqual((self.paths.backup_root / "a.txt").read_text(), "hello!")
        self.assertEqual(self.record("notes", "b.txt"), b_before)

    def test_backup_now_copies_changed_file_and_returns_count(self):
        self.manager.backup(self.source)
        a_before = self.record("a.txt")
        b_before = self.record("notes", "b.txt")

        (self.source / "a.txt").write_text("hello!")
        count = self.manager.backup_now()

        self.assertEqual(count, 1)
        self.assertEqual((self.paths.backup_root / "a.txt").read_text(), "hello!")
        self.assertNotEqual(self.record("a.txt").content_hash, a_before.content_hash)
        self.assertEqual(self.record("notes", "b.txt"), b_before)

    def test_backup_now_without_changes_does_not_rewrite_index(self):
        self.manager.backup(self.source)
        before = self.paths.index_file.stat().st_mtime_ns

        self.assertEqual(self.manager.backup_now(), 0)
        self.assertEqual(self.paths.index_file.stat().st_mtime_ns, before)

    def test_backup_now_skips_missing_source_and_keeps_record(self):
        self.manager.backup(self.source)
        (self.source / "a.txt").unlink()

        self.assertEqual(self.manager.backup_now(), 0)
        self.assertIsNotNone(self.record("a.txt"))

    def test_backup_now_does_not_discover_new_files(self):
        self.manager.backup(self.source)
        (self.source / "c.txt").write_text("new")

        self.assertEqual(self.manager.backup_now(), 0)
        self.assertIsNone(self.record("c.txt"))

    def test_backup_now_can_skip_scheduled_records(self):
        self.manager.backup(self.source)
        self.manager.configure_schedule(self.source / "a.txt", enabled=True)
        (self.source / "a.txt").write_text("hello!")

        self.assertEqual(self.manager.backup_now(skip_scheduled=True), 0)
        self.assertEqual(self.manager.backup_now(), 1)

    def test_backup_record_is_scoped_to_one_file(self):
        self.manager.backup(self.source)
        (self.source / "a.txt").write_text("hello!")
        (self.source / "notes" / "b.txt").write_text("changed")

        self.assertTrue(self.manager.backup_record(self.source / "a.txt"))
        self.assertFalse(self.manager.backup_record(self.source / "a.txt"))
        self.assertEqual((self.paths.backup_root / "notes" / "b.txt").read_text(), "notes")

    def test_backup_keeps_schedule_fields(self):
        self.manager.backup(self.source)
        self.manager.configure_schedule(
            self.source / "a.txt", enabled=True, interval=5, unit="minutes"
        )

        (self.source / "a.txt").write_text("hello!")
        self.manager.backup(self.source)

        record = self.record("a.txt")
        self.assertTrue(record.auto_backup_enabled)
        self.assertEqual(record.period_seconds(), 300)

    def test_configure_schedule_rejects_bad_input(self):
        self.manager.backup(self.source)
        with self.assertRaises(BackupError):
            self.manager.configure_schedule(self.source / "a.txt", unit="weeks")
        with self.assertRaises(BackupError):
            self.manager.configure_schedule(self.source / "a.txt", interval=0)
        with self.assertRaises(BackupError):
            self.manager.configure_schedule(self.source / "zzz.txt", enabled=True)

    def test_backup_recopies_when_backup_copy_was_deleted(self):
        self.manager.backup(self.source)
        (self.paths.backup_root / "a.txt").unlink()

        stats = self.manager.backup(self.source)

        self.assertEqual(stats.files_copied, 1)
        self.assertTrue((self.paths.backup_root / "a.txt").exists())

    def test_missing_source_root_raises(self):
        with self.assertRaises(BackupError):
            self.manager.backup(self.root / "does-not-exist")

    def test_symlink_cycle_does_not_loop(self):
        os.symlink(self.source, self.source / "notes" / "loop")

        stats = self.manager.backup(self.source)

        self.assertEqual(stats.files_copied, 2)

    def test_backup_root_inside_source_is_not_walked(self):
        paths = BackupPaths(home=self.root / "state2", backup_root=self.source / "Backup")
        manager = BackupManager(paths)

        manager.backup(self.source)
        stats = manager.backup(self.source)

        self.assertEqual(stats.files_copied, 0)
        self.assertFalse((self.source / "Backup" / "Backup").exists())

    def test_no_partial_files_left_behind(self):
        self.manager.backup(self.source)
        leftovers = list(self.paths.backup_root.rglob("*.part"))
        self.assertEqual(leftovers, [])

    def test_delete_selected(self):
        self.manager.backup(self.source)
        target = self.paths.backup_root / "a.txt"

        self.assertTrue(self.manager.delete_selected(target))
        self.assertFalse(target.exists())
        self.assertFalse(self.manager.delete_selected(target))

    def test_forget_removes_copy_and_record(self):
        self.manager.backup(self.source)

        self.assertTrue(self.manager.forget(self.source / "a.txt"))
        self.assertIsNone(self.record("a.txt"))
        self.assertFalse((self.paths.backup_root / "a.txt").exists())
        self.assertTrue((self.source / "a.txt").exists())
        self.assertFalse(self.manager.forget(self.source / "a.txt"))

    def test_listing_a_legacy_index_converts_it(self):
        (self.paths.index_file).write_text(
            json.dumps(
                [
                    {
                        "original_path": str(self.source / "a.txt"),
                        "backup_path": str(self.paths.backup_root / "a.txt"),
                        "file_type": "txt",
                    }
                ]
            )
        )

        self.assertEqual(len(self.manager.list_records()), 1)
        self.assertEqual(self.manager.backup_now(), 1)

        document = json.loads(self.paths.index_file.read_text())
        self.assertIsInstance(document, dict)
        self.assertEqual(
            document["files"][str(self.source / "a.txt")]["content_hash"],
            calculate_hash(self.source / "a.txt"),
        )

    def test_restore_missing_original(self):
        self.manager.backup(self.source)
        (self.source / "a.txt").unlink()

        restored = self.manager.restore(self.source / "a.txt")

        self.assertEqual(restored, self.source / "a.txt")
        self.assertEqual(restored.read_text(), "hello")

    def test_restore_refuses_to_overwrite_without_flag(self):
        self.manager.backup(self.source)
        (self.source / "a.txt").write_text("local edit")

        with self.assertRaises(BackupError):
            self.manager.restore(self.source / "a.txt")
        self.assertEqual((self.source / "a.txt").read_text(), "local edit")

        self.manager.restore(self.source / "a.txt", overwrite=True)
        self.assertEqual((self.source / "a.txt").read_text(), "hello")


if __name__ == "__main__":
    unittest.main()
