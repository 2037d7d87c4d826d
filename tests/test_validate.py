"""Tests for ralph.tasks.validate: structural checks and the category allow-list."""

from __future__ import annotations

import pytest

from ralph.tasks.model import CATEGORIES, Task
from ralph.tasks.validate import check_categories, validate


def _item(**overrides):
    item = {
        "category": "feature",
        "description": "Add login form",
        "steps": ["Open /login", "Submit valid credentials"],
        "passes": False,
    }
    item.update(overrides)
    return item


class TestValidate:
    def test_empty_array_is_valid(self):
        result = validate([])
        assert result.valid
        assert result.tasks == []

    def test_conforming_items_are_valid(self):
        result = validate([_item(), _item(description="Second", passes=True, branch="feat/x")])
        assert result.valid
        assert result.reasons == []
        assert [t.description for t in result.tasks] == ["Add login form", "Second"]
        assert result.tasks[1].branch == "feat/x"
        assert result.tasks[1].passes is True

    @pytest.mark.parametrize("content", [{"tasks": []}, "text", None, 3])
    def test_non_array_is_invalid(self, content):
        result = validate(content)
        assert not result.valid
        assert result.reasons == ["Task store must be an array"]

    def test_missing_description(self):
        item = _item()
        del item["description"]
        result = validate([item])
        assert not result.valid
        assert "Item 1: missing or invalid 'description' field" in result.reasons

    def test_empty_description_is_invalid(self):
        assert not validate([_item(description="")]).valid

    def test_string_passes_is_invalid(self):
        result = validate([_item(passes="true")])
        assert not result.valid
        assert any("'passes'" in r for r in result.reasons)

    def test_steps_must_be_strings(self):
        result = validate([_item(steps=["ok", 2])])
        assert not result.valid
        assert "Item 1: step 2 must be a string" in result.reasons

    def test_branch_must_be_string(self):
        result = validate([_item(branch=7)])
        assert not result.valid
        assert any("'branch'" in r for r in result.reasons)

    def test_reasons_are_numbered_per_item(self):
        result = validate([_item(), "not an object", _item(category=None)])
        assert not result.valid
        assert "Item 2: must be an object" in result.reasons
        assert any(r.startswith("Item 3:") for r in result.reasons)
        assert result.tasks == []

    def test_unknown_category_is_still_structurally_valid(self):
        assert validate([_item(category="research")]).valid


class TestCheckCategories:
    def test_known_categories_pass(self):
        tasks = [Task(category=c, description=c) for c in CATEGORIES]
        assert check_categories(tasks) == []

    def test_unknown_category_reported(self):
        tasks = [Task(category="feature", description="a"), Task(category="research", description="b")]
        assert check_categories(tasks) == ["Item 2: unknown category 'research'"]
