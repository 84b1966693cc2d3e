"""
Tests for the screenshot store, screenshot references and domain memory.
"""

import base64
import json

from agentic_tab.memory import MemoryRecord, MemoryStore
from agentic_tab.tools import (
    TOOL_CATALOG,
    TOOL_DISPLAY_NAMES,
    ScreenshotStore,
    make_screenshot_ref,
    parse_screenshot_ref,
)


class TestScreenshotStore:
    """Tests for screenshot storage."""

    def test_add_encodes_and_numbers(self):
        store = ScreenshotStore()
        first = store.add(b"one")
        second = store.add(b"two", media_type="image/jpeg", note="after login")

        assert first.id == "screenshot_1"
        assert second.id == "screenshot_2"
        assert base64.b64decode(second.data) == b"two"
        assert store.get("screenshot_2").note == "after login"
        assert len(store) == 2

    def test_oldest_are_evicted(self):
        store = ScreenshotStore(max_items=2)
        for image in (b"a", b"b", b"c"):
            store.add(image)

        assert store.get("screenshot_1") is None
        assert store.get("screenshot_3") is not None
        assert len(store) == 2

    def test_clear(self):
        store = ScreenshotStore()
        store.add(b"a")
        store.clear()
        assert len(store) == 0


class TestScreenshotRefs:
    """Tests for screenshot reference results."""

    def test_reference(self):
        ref = parse_screenshot_ref(make_screenshot_ref("screenshot_4", "cart"))
        assert ref == {"type": "screenshotRef", "id": "screenshot_4", "note": "cart"}

    def test_other_results_are_not_references(self):
        assert parse_screenshot_ref("Clicked #submit") is None
        assert parse_screenshot_ref('{"type": "other"}') is None
        assert parse_screenshot_ref("{broken") is None

    def test_every_tool_has_a_display_name(self):
        assert set(TOOL_CATALOG) == set(TOOL_DISPLAY_NAMES)


class TestMemoryStore:
    """Tests for persistent domain memories."""

    def test_add_and_lookup_by_url(self, tmp_path):
        store = MemoryStore(tmp_path / "memory.json")
        store.add(MemoryRecord(
            domain="https://www.example.com/page",
            task_description="Dismiss cookie consent banners and popups",
            tool_sequence=["browser_dismiss_popups"],
        ))

        records = store.for_domain("http://example.com:8080/other")
        assert len(records) == 1
        assert records[0].domain == "example.com"
        assert store.for_domain("other.org") == []

    def test_same_task_replaces_record(self, tmp_path):
        store = MemoryStore(tmp_path / "memory.json")
        for sequence in (["a"], ["b"]):
            store.add(MemoryRecord(domain="example.com", task_description="Login", tool_sequence=sequence))

        assert [r.tool_sequence for r in store.all()] == [["b"]]

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "memory.json"
        MemoryStore(path).add(MemoryRecord(domain="example.com", task_description="Login"))

        reloaded = MemoryStore(path)
        assert [r.task_description for r in reloaded.all()] == ["Login"]
        assert json.loads(path.read_text())[0]["domain"] == "example.com"

    def test_unreadable_file_is_ignored(self, tmp_path):
        path = tmp_path / "memory.json"
        path.write_text("{not json")
        assert MemoryStore(path).all() == []

    def test_clear(self, tmp_path):
        store = MemoryStore(tmp_path / "memory.json")
        store.add(MemoryRecord(domain="example.com", task_description="Login"))
        store.clear()
        assert store.all() == []
        assert MemoryStore(tmp_path / "memory.json").all() == []
