"""
Unit tests for the scheme catalogue and its models.
"""
import json
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from saathi.models.scheme import SchemeCategory
from saathi.services.schemes import SchemeStore

from conftest import make_scheme


def test_shipped_catalogue_loads(catalogue):
    assert len(catalogue) >= 6
    assert catalogue.get("pm-scholarship").name == "PM Scholarship"


def test_search_ranks_name_matches_first(catalogue):
    results = catalogue.search_scored(["pm", "scholarship"])

    assert results[0][0].id == "pm-scholarship"
    assert results[0][1] > results[1][1]
    assert all(0.0 < score <= 1.0 for _, score in results)


def test_search_filters_by_category(catalogue):
    results = catalogue.search(["pm"], category=SchemeCategory.INTERNSHIP)

    assert [s.id for s in results] == ["pm-internship"]


def test_list_by_category_is_sorted(catalogue):
    ids = [s.id for s in catalogue.list(SchemeCategory.SCHOLARSHIP)]

    assert ids == sorted(ids)
    assert "pm-internship" not in ids


@pytest.mark.asyncio
async def test_upsert_and_remove_notify_listeners():
    store = SchemeStore([make_scheme(id="a")])
    changed = []

    async def listener(scheme_id):
        changed.append(scheme_id)

    store.add_listener(listener)

    assert await store.upsert(make_scheme(id="a", name="Renamed Scholarship")) is True
    assert await store.upsert(make_scheme(id="b")) is False
    assert await store.remove("a") is True
    assert await store.remove("missing") is False

    assert changed == ["a", "b", "a"]
    assert store.search(["renamed"]) == []


def test_invalid_records_are_skipped(tmp_path):
    good = make_scheme(id="good").to_wire()
    bad = {**good, "id": "bad", "eligibilityCriteria": []}
    path = tmp_path / "schemes.json"
    path.write_text(json.dumps([good, bad]), encoding="utf-8")

    store = SchemeStore.load_from_file(path)

    assert len(store) == 1
    assert store.get("good") is not None


def test_missing_catalogue_file_gives_empty_store(tmp_path):
    assert len(SchemeStore.load_from_file(tmp_path / "none.json")) == 0


def test_deadline_must_follow_last_update():
    now = datetime.now(timezone.utc)

    with pytest.raises(ValidationError):
        make_scheme(deadline=now - timedelta(days=10), last_updated=now)


def test_keywords_are_normalized_and_steps_ordered():
    scheme = make_scheme(
        keywords=["Scholarship", " scholarship ", "PM"],
        application_steps=[{"order": 2, "title": "Submit"}, {"order": 1, "title": "Register"}],
    )

    assert scheme.keywords == ["scholarship", "pm"]
    assert [step.title for step in scheme.application_steps] == ["Register", "Submit"]
