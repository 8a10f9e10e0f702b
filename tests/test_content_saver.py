"""
Tests for content_saver.py.
"""

import json
import os
from pathlib import Path

import pytest

from kbcrawler.content_saver import FileContentSaver
from kbcrawler.errors import SaveError


@pytest.fixture
def saver(tmp_path):
    return FileContentSaver(str(tmp_path))


class TestSave:

    def test_layout_and_document(self, saver, tmp_path):
        ref = saver.save("Acme Corp", "https://Docs.Example.org/guide", "install the agent", {"title": "Setup Guide"})
        path = Path(ref)
        rel = path.relative_to(tmp_path).parts
        assert rel[0] == "acme_corp"
        assert rel[1] == "docs.example.org"
        assert len(rel[2]) == 4 and len(rel[3]) == 2
        assert path.name.endswith("_setup_guide.json")
        assert path.name.split("_", 1)[0].isdigit()

        doc = json.loads(path.read_text())
        assert doc["tenant_id"] == "Acme Corp"
        assert doc["url"] == "https://Docs.Example.org/guide"
        assert doc["title"] == "Setup Guide"
        assert doc["content"] == "install the agent"
        assert doc["metadata"]["word_count"] == 3
        assert doc["metadata"]["domain"] == "docs.example.org"

    def test_same_millisecond_does_not_overwrite(self, saver):
        refs = {saver.save("acme", "https://docs.example.org/", "x", {"title": "T"}) for _ in range(5)}
        assert len(refs) == 5

    def test_unwritable_root(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises(SaveError):
            FileContentSaver(str(blocker)).save("acme", "https://docs.example.org/", "x", {})


class TestListAndCleanup:

    def test_list_saved_filters_by_domain(self, saver):
        saver.save("acme", "https://a.example.org/1", "one", {"title": "One"})
        saver.save("acme", "https://b.example.org/2", "two", {"title": "Two"})
        saver.save("globex", "https://a.example.org/3", "three", {"title": "Three"})

        assert len(saver.list_saved("acme")) == 2
        only_a = saver.list_saved("acme", domain="a.example.org")
        assert [d["title"] for d in only_a] == ["One"]
        assert saver.list_saved("nobody") == []

    def test_cleanup_removes_old_files(self, saver):
        fresh = saver.save("acme", "https://docs.example.org/", "new", {"title": "New"})
        old = Path(saver.save("acme", "https://docs.example.org/", "old", {"title": "Old"}))
        ancient = old.with_name("1000000000000_old.json")
        os.rename(old, ancient)

        assert saver.cleanup_older_than(30) == 1
        assert not ancient.exists()
        assert Path(fresh).exists()
