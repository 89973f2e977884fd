from __future__ import annotations

import io
import shutil
import sys
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest import mock

REPO_ROOT = Path(__file__).resolve().parents[1]
TOOL_DIR = REPO_ROOT / "tool"
if str(TOOL_DIR) not in sys.path:
    sys.path.insert(0, str(TOOL_DIR))

from md_image_stacker import (  # noqa: E402
    Config,
    DocumentStore,
    ImageTarget,
    NoOwningDocumentError,
    StackerError,
    UnresolvableReferenceError,
    find_document_for_target,
    iter_markdown_files,
    main,
    process_document,
    stack_images,
)

NOTE = "---\ntitle: Trip\n---\n\nDay one\n![[a.png]]\n![[b.png]]\n\nend\n"
STACKED_NOTE = "---\ntitle: Trip\n---\n\nDay one\n![[a.png]] ![[b.png]]\n\nend\n"


class _TempDirCase(unittest.TestCase):
    def setUp(self) -> None:
        self.work_dir = Path(tempfile.mkdtemp(prefix="stacker-"))
        self.addCleanup(shutil.rmtree, self.work_dir, True)

    def write(self, name: str, text: str) -> Path:
        path = self.work_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path


class TestDocumentStore(_TempDirCase):
    def test_process_rewrites_and_backs_up(self):
        md_path = self.write("trip.md", NOTE)
        store = DocumentStore(backup=True)
        changed = store.process(md_path, lambda text: stack_images(text, ImageTarget("a.png")))
        self.assertTrue(changed)
        self.assertEqual(md_path.read_text(encoding="utf-8"), STACKED_NOTE)
        self.assertEqual((self.work_dir / "trip.md.bak").read_text(encoding="utf-8"), NOTE)

    def test_noop_does_not_write(self):
        md_path = self.write("trip.md", NOTE)
        before = md_path.stat().st_mtime_ns
        changed = DocumentStore(backup=True).process(md_path, lambda text: text)
        self.assertFalse(changed)
        self.assertEqual(md_path.stat().st_mtime_ns, before)
        self.assertFalse((self.work_dir / "trip.md.bak").exists())

    def test_failing_transform_leaves_file_untouched(self):
        md_path = self.write("trip.md", NOTE)
        with self.assertRaises(UnresolvableReferenceError):
            DocumentStore(backup=True).process(md_path, lambda text: stack_images(text, ImageTarget("")))
        self.assertEqual(md_path.read_text(encoding="utf-8"), NOTE)
        self.assertFalse((self.work_dir / "trip.md.bak").exists())

    def test_reapplies_transform_after_concurrent_edit(self):
        md_path = self.write("trip.md", NOTE)
        calls = []

        def transform(text: str) -> str:
            calls.append(text)
            if len(calls) == 1:
                md_path.write_text(text.replace("Day one", "Day one (edited)"), encoding="utf-8")
            return stack_images(text, ImageTarget("a.png"))

        self.assertTrue(DocumentStore().process(md_path, transform))
        self.assertEqual(len(calls), 2)
        self.assertEqual(
            md_path.read_text(encoding="utf-8"),
            STACKED_NOTE.replace("Day one", "Day one (edited)"),
        )

    def test_per_call_overrides(self):
        md_path = self.write("trip.md", NOTE)
        store = DocumentStore(backup=False, max_retries=5)
        self.assertTrue(store.process(md_path, lambda text: stack_images(text, ImageTarget("a.png")), backup=True))
        self.assertEqual((self.work_dir / "trip.md.bak").read_text(encoding="utf-8"), NOTE)
        self.assertFalse(store.backup)

        calls = []

        def transform(text: str) -> str:
            calls.append(text)
            md_path.write_text(text + "x", encoding="utf-8")
            return text + "y"

        with self.assertRaises(StackerError):
            store.process(md_path, transform, max_retries=0)
        self.assertEqual(len(calls), 1)

    def test_gives_up_when_file_keeps_changing(self):
        md_path = self.write("trip.md", NOTE)
        calls = []

        def transform(text: str) -> str:
            calls.append(text)
            md_path.write_text(text + "x", encoding="utf-8")
            return stack_images(text, ImageTarget("a.png"))

        with self.assertRaises(StackerError):
            DocumentStore(max_retries=1).process(md_path, transform)
        self.assertEqual(len(calls), 2)


class TestReferenceLocator(_TempDirCase):
    def test_finds_first_owning_document(self):
        self.write("a.md", "no images\n")
        owner = self.write("b.md", "![[cat.png]]\n")
        self.write("c.md", "![[cat.png]]\n")
        files = iter_markdown_files(self.work_dir)
        self.assertEqual(find_document_for_target(files, ImageTarget("app://v/cat.png?1")), owner)

    def test_finds_document_with_stacked_line(self):
        owner = self.write("notes/b.md", "![[cat.png]] ![[dog.png]]\n")
        self.write("notes/ignored.txt", "![[dog.png]]\n")
        files = iter_markdown_files(self.work_dir)
        self.assertEqual(files, [owner])
        self.assertEqual(find_document_for_target(files, ImageTarget("dog.png")), owner)

    def test_single_file_root(self):
        md_path = self.write("a.md", "x")
        self.assertEqual(iter_markdown_files(md_path), [md_path])

    def test_no_owning_document(self):
        self.write("a.md", "see ![[cat.png]] inline\n")
        with self.assertRaises(NoOwningDocumentError):
            find_document_for_target(iter_markdown_files(self.work_dir), ImageTarget("cat.png"))


class TestProcessDocument(_TempDirCase):
    def test_dry_run_returns_text_without_writing(self):
        md_path = self.write("trip.md", NOTE)
        cfg = Config(mode="stack", dry_run=True)
        result = process_document(md_path, ImageTarget("b.png"), cfg)
        self.assertTrue(result["changed"])
        self.assertFalse(result["updated"])
        self.assertEqual(result["text"], STACKED_NOTE)
        self.assertEqual(md_path.read_text(encoding="utf-8"), NOTE)

    def test_progress_callback_receives_messages(self):
        md_path = self.write("trip.md", STACKED_NOTE)
        messages = []
        cfg = Config(mode="unstack", progress_cb=messages.append)
        result = process_document(md_path, ImageTarget("a.png"), cfg)
        self.assertTrue(result["updated"])
        self.assertEqual(md_path.read_text(encoding="utf-8"), NOTE)
        self.assertEqual(len(messages), 2)
        self.assertIn("a.png", messages[0])

    def test_unknown_mode(self):
        md_path = self.write("trip.md", NOTE)
        with self.assertRaises(ValueError):
            process_document(md_path, ImageTarget("a.png"), Config(mode="list"))


class TestCli(_TempDirCase):
    def run_main(self, argv):
        buf = io.StringIO()
        with redirect_stdout(buf):
            code = main(argv)
        return code, buf.getvalue()

    def test_stack_then_unstack(self):
        md_path = self.write("trip.md", NOTE)
        code, out = self.run_main([str(md_path), "--mode", "stack", "--src", "app://vault/a.png?99"])
        self.assertEqual(code, 0, msg=out)
        self.assertEqual(md_path.read_text(encoding="utf-8"), STACKED_NOTE)

        code, out = self.run_main([str(self.work_dir), "--mode", "unstack", "--src", "b.png", "--backup"])
        self.assertEqual(code, 0, msg=out)
        self.assertEqual(md_path.read_text(encoding="utf-8"), NOTE)
        self.assertEqual((self.work_dir / "trip.md.bak").read_text(encoding="utf-8"), STACKED_NOTE)

    def test_lenient_flag(self):
        md_path = self.write("a.md", "![[a.png]]\n\n![[b.png]]\n")
        code, _ = self.run_main([str(md_path), "--src", "a.png", "--lenient"])
        self.assertEqual(code, 0)
        self.assertEqual(md_path.read_text(encoding="utf-8"), "![[a.png]] ![[b.png]]")

    def test_dry_run_prints_result(self):
        md_path = self.write("trip.md", NOTE)
        code, out = self.run_main([str(md_path), "--src", "a.png", "--dry-run"])
        self.assertEqual(code, 0)
        self.assertEqual(out, STACKED_NOTE)
        self.assertEqual(md_path.read_text(encoding="utf-8"), NOTE)

    def test_list_mode(self):
        md_path = self.write("trip.md", STACKED_NOTE + "![x](img/x.png)\n")
        code, out = self.run_main([str(md_path), "--mode", "list"])
        self.assertEqual(code, 0)
        self.assertIn("2 image line(s)", out)
        self.assertIn("L6: a.png b.png", out)
        self.assertIn("L9: img/x.png", out)

    def test_errors(self):
        code, _ = self.run_main([str(self.work_dir / "missing.md"), "--src", "a.png"])
        self.assertEqual(code, 1)

        md_path = self.write("trip.md", NOTE)
        code, _ = self.run_main([str(md_path)])
        self.assertEqual(code, 1)

        code, out = self.run_main([str(md_path), "--src", "zzz.png"])
        self.assertEqual(code, 2)
        self.assertIn("No file belonging", out)

        code, _ = self.run_main([str(md_path), "--src", "x", "--class", "excalidraw-svg-embed"])
        self.assertEqual(code, 2)
        self.assertEqual(md_path.read_text(encoding="utf-8"), NOTE)

    def test_unreadable_document_reports_error(self):
        md_path = self.write("trip.md", NOTE)
        with mock.patch("md_image_stacker.read_text", side_effect=PermissionError(13, "Permission denied", str(md_path))):
            code, out = self.run_main([str(self.work_dir), "--src", "a.png"])
        self.assertEqual(code, 2)
        self.assertIn("❌", out)
        self.assertIn("Permission denied", out)
        self.assertEqual(md_path.read_text(encoding="utf-8"), NOTE)


if __name__ == "__main__":
    unittest.main()
