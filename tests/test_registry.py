"""Tests for the project registry and its session context."""

from __future__ import annotations

import pytest

from forinv.engine.registry import (
    SETTING_CURRENT_PROJECT,
    SETTING_OPERATOR_NAME,
    ProjectRegistry,
)
from forinv.exceptions import InvalidState, InvariantViolation, NotFoundError
from forinv.ledger.storage import RecordStore


@pytest.fixture
def registry(store: RecordStore) -> ProjectRegistry:
    registry = ProjectRegistry(store)
    registry.start()
    return registry


def _record_sample(registry: ProjectRegistry, species: str, diameter, height) -> None:
    registry.capture.select_species(species)
    registry.capture.capture_diameter(diameter)
    registry.capture.capture_height(height)


def test_start_creates_default_project_once(store: RecordStore) -> None:
    registry = ProjectRegistry(store)
    project = registry.start()

    assert project.name == "Bosco di prova"
    assert project.operator == "Squadra A"
    assert store.get_setting(SETTING_CURRENT_PROJECT) == project.id

    again = ProjectRegistry(store)
    assert again.start().id == project.id
    assert len(store.list_projects()) == 1


def test_start_resumes_remembered_project(store: RecordStore) -> None:
    first = store.create_project("First")
    second = store.create_project("Second")
    store.set_setting(SETTING_CURRENT_PROJECT, first)

    assert ProjectRegistry(store).start().id == first

    store.set_setting(SETTING_CURRENT_PROJECT, "gone")
    assert ProjectRegistry(store).start().id == second


def test_projects_most_recent_first(registry: ProjectRegistry) -> None:
    older = registry.current_project
    newer = registry.create_project("Newer", switch=False)
    assert [p.id for p in registry.projects] == [newer.id, older.id]

    registry.set_current_project(older.id)
    registry.record_inventory_tree(30, species_id="leccio")

    assert [p.id for p in registry.projects] == [older.id, newer.id]


def test_set_current_project_unknown(registry: ProjectRegistry) -> None:
    with pytest.raises(NotFoundError):
        registry.set_current_project("nope")


def test_switch_flushes_session_edits(registry: ProjectRegistry, store: RecordStore) -> None:
    first = registry.current_project
    registry.set_inventory_area(4)
    registry.set_operator_name("Marco")
    assert store.get_project(first.id).inventory_area_ha == 10.0

    second = registry.create_project("Second")

    saved = store.get_project(first.id)
    assert saved.inventory_area_ha == 4.0
    assert saved.operator == "Marco"
    assert store.get_setting(SETTING_OPERATOR_NAME) == "Marco"
    assert registry.current_project.id == second.id
    assert store.get_setting(SETTING_CURRENT_PROJECT) == second.id
    assert registry.current_project.operator == "Marco"


def test_sample_capture_updates_statistics(registry: ProjectRegistry) -> None:
    _record_sample(registry, "pino-domestico", 28, 18.0)
    _record_sample(registry, "pino-domestico", 33, 22.0)

    averages = registry.session.height_averages
    assert averages["pino-domestico"].count == 2
    assert averages["pino-domestico"].average == pytest.approx(20.0)
    assert registry.summary().sample_trees == 2
    assert registry.session.sample_trees_by_area() == {
        "area1": registry.session.sample_trees
    }


def test_inventory_statistics(registry: ProjectRegistry) -> None:
    registry.set_inventory_area(10)
    registry.select_inventory_species("leccio")
    tree = registry.record_inventory_tree(30)

    summary = registry.summary()
    assert summary.inventory_trees == 1
    assert summary.total_volume == pytest.approx(0.4771, abs=1e-3)
    assert summary.trees_per_ha == 0

    registry.delete_inventory_tree(tree.id)
    assert registry.summary().inventory_trees == 0


def test_record_inventory_tree_needs_species(registry: ProjectRegistry) -> None:
    with pytest.raises(InvalidState):
        registry.record_inventory_tree(30)
    with pytest.raises(NotFoundError):
        registry.select_inventory_species("faggio")


def test_delete_sample_tree_recomputes(registry: ProjectRegistry) -> None:
    _record_sample(registry, "pino-domestico", 28, 18.0)
    _record_sample(registry, "pino-domestico", 33, 22.0)
    first = registry.session.sample_trees[0]

    registry.delete_sample_tree(first.id)

    summary = registry.session.height_averages["pino-domestico"]
    assert (summary.count, summary.average) == (1, 22.0)


def test_clear_inventory(registry: ProjectRegistry) -> None:
    for diameter in (20, 25, 30):
        registry.record_inventory_tree(diameter, species_id="pino-domestico")
    assert registry.clear_inventory() == 3
    assert registry.session.inventory_trees == []


def test_remove_species_clears_selections(registry: ProjectRegistry) -> None:
    registry.select_inventory_species("leccio")
    registry.record_inventory_tree(30)
    registry.capture.select_species("leccio")
    registry.capture.capture_diameter(30)

    registry.remove_species("leccio")

    assert registry.session.selected_inventory_species is None
    assert registry.capture.species is None
    assert registry.capture.pending is None
    assert registry.session.inventory_trees == []
    assert "leccio" not in registry.current_project.species_catalog


def test_add_species_is_available_for_capture(registry: ProjectRegistry) -> None:
    registry.add_species("Sughera", form_factor=0.5)
    _record_sample(registry, "sughera", 40, 14.0)
    assert "sughera" in registry.session.height_averages


def test_cannot_delete_last_project(registry: ProjectRegistry) -> None:
    with pytest.raises(InvariantViolation):
        registry.delete_project(registry.current_project.id)
    assert len(registry.projects) == 1


def test_deleting_current_project_switches(registry: ProjectRegistry, store: RecordStore) -> None:
    first = registry.current_project
    second = registry.create_project("Second")
    registry.record_inventory_tree(30, species_id="leccio")

    registry.delete_project(second.id)

    assert registry.current_project.id == first.id
    assert store.get_setting(SETTING_CURRENT_PROJECT) == first.id
    assert store.database_stats()["inventory_trees"] == 0


def test_duplicate_project(registry: ProjectRegistry, store: RecordStore) -> None:
    _record_sample(registry, "pino-domestico", 28, 18.0)
    registry.record_inventory_tree(30, species_id="leccio")
    registry.set_inventory_area(5)
    source = registry.current_project

    copy = registry.duplicate_project(source.id)

    assert copy.name == f"{source.name} (copy)"
    assert copy.inventory_area_ha == 5.0
    assert len(store.list_sample_trees(copy.id)) == 1
    assert len(store.list_inventory_trees(copy.id)) == 1
    assert registry.current_project.id == source.id


def test_update_project_refreshes_session(registry: ProjectRegistry) -> None:
    project = registry.update_project(
        registry.current_project.id, name="Renamed", inventory_area_ha=2.5
    )
    assert project.name == "Renamed"
    assert registry.current_project.name == "Renamed"
    assert registry.summary().inventory_area_ha == 2.5


def test_species_breakdown_accessor(registry: ProjectRegistry) -> None:
    registry.record_inventory_tree(30, species_id="leccio")
    registry.record_inventory_tree(35, species_id="leccio")
    registry.record_inventory_tree(20, species_id="pino-domestico")

    breakdown = registry.species_breakdown()

    assert list(breakdown) == ["leccio", "pino-domestico"]
    assert breakdown["pino-domestico"].volume == 0.0
    assert registry.summary().species_without_height == ["pino-domestico"]


def test_read_only_session_writes_nothing(store: RecordStore) -> None:
    registry = ProjectRegistry(store)
    registry.start()
    _record_sample(registry, "pino-domestico", 28, 18.0)
    registry.close()
    generation = store.current_generation()

    again = ProjectRegistry(store)
    again.start()
    again.summary()
    again.close()

    assert store.current_generation() == generation


def test_update_species_refreshes_session(registry: ProjectRegistry) -> None:
    registry.record_inventory_tree(30, species_id="leccio")
    assert registry.summary().total_volume > 0

    updated = registry.update_species("leccio", clear_default_height=True)

    assert updated.default_height is None
    assert registry.current_project.species_catalog["leccio"].default_height is None
    assert registry.summary().total_volume == 0.0
    assert registry.summary().species_without_height == ["leccio"]
    with pytest.raises(NotFoundError):
        registry.update_species("faggio", form_factor=0.5)


def test_mark_synced_refreshes_session(registry: ProjectRegistry, store: RecordStore) -> None:
    _record_sample(registry, "pino-domestico", 28, 18.0)
    tree = registry.record_inventory_tree(30, species_id="leccio")
    sample_ids = [t.id for t in registry.session.sample_trees]

    assert registry.mark_synced(sample_ids, [tree.id], synced_at="2024-05-02T10:00:00+00:00") == 2

    assert all(t.synced_at for t in registry.session.sample_trees)
    assert registry.session.inventory_trees[0].synced_at == "2024-05-02T10:00:00+00:00"
    unsynced = store.list_unsynced(registry.current_project.id)
    assert unsynced == {"sample": [], "inventory": []}


def test_duplicate_project_starts_unsynced(
    registry: ProjectRegistry, store: RecordStore
) -> None:
    _record_sample(registry, "pino-domestico", 28, 18.0)
    tree = registry.record_inventory_tree(30, species_id="leccio")
    registry.mark_synced([t.id for t in registry.session.sample_trees], [tree.id])

    copy = registry.duplicate_project(registry.current_project.id)

    unsynced = store.list_unsynced(copy.id)
    assert len(unsynced["sample"]) == 1
    assert len(unsynced["inventory"]) == 1
