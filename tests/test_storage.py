"""Tests for the filesystem record store."""

from __future__ import annotations

import copy
import logging
from pathlib import Path

import pytest

from forinv.exceptions import NotFoundError, StorageError, ValidationError
from forinv.ledger.storage import (
    HEIGHT_AVERAGES_FILE,
    INVENTORY_KIND,
    SAMPLE_KIND,
    SAMPLE_TREES_FILE,
    RecordStore,
)
from forinv.records import GpsFix, InventoryTree, SampleTree


def _sample(species: str = "pino-domestico", diameter: int = 30, height=18.0, area="area1"):
    return SampleTree(area=area, species=species, diameter_class=diameter, height=height)


def _inventory(species: str = "pino-domestico", diameter: int = 30):
    return InventoryTree(species=species, diameter_class=diameter)


def _strip_volatile(snapshot: dict) -> dict:
    data = copy.deepcopy(snapshot)
    data.pop("exportedAt", None)
    data["project"].pop("createdAt", None)
    data["project"].pop("updatedAt", None)
    return data


def test_create_project_uses_configured_defaults(store: RecordStore) -> None:
    project_id = store.create_project("  Pineta Nord ")
    project = store.get_project(project_id)

    assert project.name == "Pineta Nord"
    assert project.inventory_area_ha == 10.0
    assert list(project.species_catalog) == ["pino-domestico", "leccio"]
    assert project.species_catalog["leccio"].default_height == 15.0
    assert project.created_at == project.updated_at


def test_create_project_requires_name(store: RecordStore) -> None:
    with pytest.raises(ValidationError):
        store.create_project("   ")
    with pytest.raises(ValidationError):
        store.create_project("Zero", inventory_area_ha=0)
    assert store.list_projects() == []


def test_project_ids_are_unique(store: RecordStore) -> None:
    ids = {store.create_project(f"P{idx}") for idx in range(5)}
    assert len(ids) == 5


def test_add_sample_tree_assigns_identity_and_rebuilds_cache(store: RecordStore) -> None:
    project_id = store.create_project("P")
    first = store.add_sample_tree(project_id, _sample(height=18.0))
    store.add_sample_tree(project_id, _sample(height=20.0, area="area2"))

    assert first.id and first.project_id == project_id and first.timestamp
    averages = store.get_height_averages(project_id)
    assert averages["pino-domestico"].count == 2
    assert averages["pino-domestico"].average == pytest.approx(19.0)
    assert [tree.area for tree in store.list_sample_trees(project_id)] == ["area1", "area2"]
    assert len(store.list_sample_trees(project_id, area="area2")) == 1


def test_add_sample_tree_rejections(store: RecordStore) -> None:
    project_id = store.create_project("P")

    with pytest.raises(NotFoundError):
        store.add_sample_tree("missing", _sample())
    with pytest.raises(NotFoundError):
        store.add_sample_tree(project_id, _sample(species="faggio"))
    with pytest.raises(ValidationError):
        store.add_sample_tree(project_id, _sample(area="area9"))
    with pytest.raises(ValidationError):
        store.add_sample_tree(project_id, _sample(diameter=0))
    with pytest.raises(ValidationError):
        store.add_sample_tree(project_id, _sample(height=None))

    assert store.list_sample_trees(project_id) == []


def test_add_inventory_tree_keeps_gps(store: RecordStore) -> None:
    project_id = store.create_project("P")
    tree = InventoryTree(
        species="leccio", diameter_class=45, gps=GpsFix(lat=41.9, lng=12.5, accuracy=3.5)
    )

    stored = store.add_inventory_tree(project_id, tree)

    assert stored.gps == GpsFix(lat=41.9, lng=12.5, accuracy=3.5)
    assert store.list_inventory_trees(project_id)[0].id == stored.id
    with pytest.raises(NotFoundError):
        store.add_inventory_tree(project_id, _inventory(species="faggio"))


def test_delete_unknown_trees_fails(store: RecordStore) -> None:
    with pytest.raises(NotFoundError):
        store.delete_sample_tree("nope")
    with pytest.raises(NotFoundError):
        store.delete_inventory_tree("nope")


def test_list_sample_trees_by_area(store: RecordStore) -> None:
    project_id = store.create_project("P")
    store.add_sample_tree(project_id, _sample(area="area1"))
    kept = store.add_sample_tree(project_id, _sample(area="area2"))

    assert [tree.id for tree in store.list_sample_trees(project_id, area="area2")] == [kept.id]
    assert store.list_sample_trees(project_id, area="area3") == []
    with pytest.raises(ValidationError):
        store.list_sample_trees(project_id, area="bogus")


def test_delete_sample_tree_rebuilds_summary(store: RecordStore) -> None:
    project_id = store.create_project("P")
    only = store.add_sample_tree(project_id, _sample(height=18.0))
    store.add_sample_tree(project_id, _sample(species="leccio", height=9.0))

    store.delete_sample_tree(only.id)

    averages = store.get_height_averages(project_id)
    assert "pino-domestico" not in averages
    assert averages["leccio"].count == 1


def test_delete_project_cascades(store: RecordStore) -> None:
    doomed = store.create_project("Doomed")
    kept = store.create_project("Kept")
    for project_id in (doomed, kept):
        store.add_sample_tree(project_id, _sample())
        store.add_inventory_tree(project_id, _inventory())

    store.delete_project(doomed)

    assert [project.id for project in store.list_projects()] == [kept]
    with pytest.raises(NotFoundError):
        store.list_sample_trees(doomed)
    with pytest.raises(NotFoundError):
        store.get_height_averages(doomed)
    stats = store.database_stats()
    assert stats["projects"] == 1
    assert stats["sample_trees"] == 1
    assert stats["inventory_trees"] == 1

    reopened = RecordStore(store.root, store.config)
    assert reopened.database_stats()["sample_trees"] == 1
    assert list(reopened.get_height_averages(kept)) == ["pino-domestico"]
    with pytest.raises(NotFoundError):
        store.delete_project(doomed)


def test_failed_commit_leaves_state_untouched(
    store: RecordStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    project_id = store.create_project("P")
    store.add_sample_tree(project_id, _sample())
    store.add_inventory_tree(project_id, _inventory())
    generation = store.current_generation()

    def broken_write(self, target: Path, state, seq: int) -> None:
        (target / "projects.json").write_text("[]", encoding="utf-8")
        raise OSError("disk full")

    monkeypatch.setattr(RecordStore, "_write_generation", broken_write)

    with pytest.raises(StorageError):
        store.delete_project(project_id)

    assert store.get_project(project_id).name == "P"
    assert len(store.list_sample_trees(project_id)) == 1
    assert len(store.list_inventory_trees(project_id)) == 1
    assert store.current_generation() == generation
    assert not any(p.name.startswith(".staging") for p in store.generations_dir.iterdir())

    monkeypatch.undo()
    reopened = RecordStore(store.root, store.config)
    assert len(reopened.list_inventory_trees(project_id)) == 1


def test_state_survives_reopen(store: RecordStore) -> None:
    project_id = store.create_project("P", operator="Giulia", location="Sabaudia")
    store.add_sample_tree(
        project_id,
        SampleTree(
            area="area3",
            species="leccio",
            diameter_class=25,
            height=12.3,
            operator="Giulia",
            gps=GpsFix(lat=41.30123, lng=13.02456),
        ),
    )
    store.set_setting("theme", {"dark": True})

    reopened = RecordStore(store.root, store.config)

    assert reopened.get_project(project_id) == store.get_project(project_id)
    assert reopened.list_sample_trees(project_id) == store.list_sample_trees(project_id)
    assert reopened.get_setting("theme") == {"dark": True}
    assert reopened.get_height_averages(project_id) == store.get_height_averages(project_id)


def test_tampered_generation_is_rejected(store: RecordStore) -> None:
    project_id = store.create_project("P")
    store.add_sample_tree(project_id, _sample())
    current = store.generations_dir / f"{store.current_generation():04d}"
    with (current / SAMPLE_TREES_FILE).open("a", encoding="utf-8") as fh:
        fh.write("x,y\n")

    with pytest.raises(StorageError):
        RecordStore(store.root, store.config)


def test_old_generations_are_pruned(store: RecordStore) -> None:
    store.create_project("P")
    for idx in range(4):
        store.set_setting("counter", idx)

    assert store.list_generations() == [4, 5]
    assert store.current_generation() == 5


def test_height_cache_regenerates_byte_for_byte(store: RecordStore) -> None:
    project_id = store.create_project("P")
    for height in (18.2, 19.7, 21.05):
        store.add_sample_tree(project_id, _sample(height=height))
    store.add_sample_tree(project_id, _sample(species="leccio", height=11.0))
    before = (
        store.generations_dir / f"{store.current_generation():04d}" / HEIGHT_AVERAGES_FILE
    ).read_bytes()

    store.rebuild_height_averages(project_id)

    after = (
        store.generations_dir / f"{store.current_generation():04d}" / HEIGHT_AVERAGES_FILE
    ).read_bytes()
    assert after == before


def test_remove_species_cascades(store: RecordStore) -> None:
    project_id = store.create_project("P")
    store.add_sample_tree(project_id, _sample(species="leccio", height=10.0))
    store.add_sample_tree(project_id, _sample(height=18.0))
    store.add_inventory_tree(project_id, _inventory(species="leccio"))
    store.add_inventory_tree(project_id, _inventory())

    store.remove_species(project_id, "leccio")

    assert "leccio" not in store.get_project(project_id).species_catalog
    assert {tree.species for tree in store.list_sample_trees(project_id)} == {"pino-domestico"}
    assert {tree.species for tree in store.list_inventory_trees(project_id)} == {"pino-domestico"}
    assert list(store.get_height_averages(project_id)) == ["pino-domestico"]
    with pytest.raises(NotFoundError):
        store.remove_species(project_id, "leccio")


def test_add_species_rejects_duplicate_slug(store: RecordStore) -> None:
    project_id = store.create_project("P")
    added = store.add_species(project_id, "Roverella", form_factor=0.5, default_height=14)

    assert added.id == "roverella"
    assert added.default_height == 14.0
    with pytest.raises(ValidationError):
        store.add_species(project_id, "ROVERELLA")
    with pytest.raises(ValidationError):
        store.add_species(project_id, "Sughera", form_factor=1.2)


def test_update_species(store: RecordStore) -> None:
    project_id = store.create_project("P")
    updated = store.update_species(project_id, "leccio", form_factor=0.5, clear_default_height=True)

    assert updated.form_factor == 0.5
    assert updated.default_height is None
    assert store.get_project(project_id).species_catalog["leccio"] == updated


def test_import_export_round_trip(store: RecordStore, snapshot: dict) -> None:
    project_id = store.import_project(snapshot)
    exported = store.export_project(project_id)

    assert exported["formatVersion"] == "2.0.0"
    assert _strip_volatile(exported) == _strip_volatile(snapshot)

    second_id = store.import_project(exported)
    assert second_id != project_id
    assert _strip_volatile(store.export_project(second_id)) == _strip_volatile(exported)
    first_ids = {tree.id for tree in store.list_sample_trees(project_id)}
    second_ids = {tree.id for tree in store.list_sample_trees(second_id)}
    assert first_ids.isdisjoint(second_ids)


def test_import_rederives_stale_cache(
    store: RecordStore, snapshot: dict, caplog: pytest.LogCaptureFixture
) -> None:
    snapshot["heightAverages"]["pino-domestico"]["average"] = 99.0

    with caplog.at_level(logging.WARNING, logger="forinv.ledger.storage"):
        project_id = store.import_project(snapshot)

    assert store.get_height_averages(project_id)["pino-domestico"].average == pytest.approx(
        55.0 / 3
    )
    assert "disagree" in caplog.text


def test_import_accepts_legacy_version_key(store: RecordStore, snapshot: dict) -> None:
    snapshot["version"] = snapshot.pop("formatVersion")
    project_id = store.import_project(snapshot)
    assert store.get_project(project_id).name == "Pineta Litoranea"


@pytest.mark.parametrize(
    "mutate",
    [
        lambda doc: doc.pop("inventoryTrees"),
        lambda doc: doc.pop("project"),
        lambda doc: doc.__setitem__("formatVersion", "1.0.0"),
        lambda doc: doc["sampleTrees"][0].__setitem__("species", "faggio"),
        lambda doc: doc["sampleTrees"][0].__setitem__("area", "area9"),
        lambda doc: doc["inventoryTrees"][0].__setitem__("diameterClass", -5),
    ],
)
def test_import_rejects_bad_snapshots(store: RecordStore, snapshot: dict, mutate) -> None:
    mutate(snapshot)
    with pytest.raises(ValidationError):
        store.import_project(snapshot)
    assert store.list_projects() == []


def test_export_all(store: RecordStore, snapshot: dict) -> None:
    store.import_project(snapshot)
    store.create_project("Empty")

    bundle = store.export_all()

    assert bundle["formatVersion"] == "2.0.0"
    assert sorted(p["project"]["name"] for p in bundle["projects"]) == [
        "Empty",
        "Pineta Litoranea",
    ]


def test_settings(store: RecordStore) -> None:
    assert store.get_setting("operatorName", "nobody") == "nobody"
    store.set_setting("operatorName", "Giulia")
    assert store.get_setting("operatorName") == "Giulia"
    with pytest.raises(ValidationError):
        store.set_setting("bad", object())


def test_trees_start_unsynced(store: RecordStore) -> None:
    project_id = store.create_project("P")
    sample = store.add_sample_tree(project_id, _sample())
    tree = store.add_inventory_tree(project_id, _inventory())

    unsynced = store.list_unsynced(project_id)

    assert sample.synced_at is None and tree.synced_at is None
    assert [t.id for t in unsynced[SAMPLE_KIND]] == [sample.id]
    assert [t.id for t in unsynced[INVENTORY_KIND]] == [tree.id]


def test_mark_synced(store: RecordStore) -> None:
    project_id = store.create_project("P")
    synced = store.add_sample_tree(project_id, _sample())
    pending = store.add_sample_tree(project_id, _sample(height=20.0))
    tree = store.add_inventory_tree(project_id, _inventory())
    before = store.get_project(project_id).updated_at

    stamp = "2024-05-02T10:00:00+00:00"
    assert store.mark_synced(project_id, [synced.id], SAMPLE_KIND, synced_at=stamp) == 1
    assert store.mark_synced(project_id, [tree.id], INVENTORY_KIND, synced_at=stamp) == 1

    unsynced = store.list_unsynced(project_id)
    assert [t.id for t in unsynced[SAMPLE_KIND]] == [pending.id]
    assert unsynced[INVENTORY_KIND] == []
    assert store.get_project(project_id).updated_at == before

    reopened = RecordStore(store.root, store.config)
    trees = {t.id: t for t in reopened.list_sample_trees(project_id)}
    assert trees[synced.id].synced_at == stamp
    assert trees[pending.id].synced_at is None
    assert reopened.list_inventory_trees(project_id)[0].synced_at == stamp


def test_mark_synced_is_all_or_nothing(store: RecordStore) -> None:
    project_id = store.create_project("P")
    other_id = store.create_project("Other")
    mine = store.add_inventory_tree(project_id, _inventory())
    foreign = store.add_inventory_tree(other_id, _inventory())
    generation = store.current_generation()

    with pytest.raises(NotFoundError):
        store.mark_synced(project_id, [mine.id, foreign.id], INVENTORY_KIND)
    with pytest.raises(ValidationError):
        store.mark_synced(project_id, [mine.id], "plot")

    assert store.current_generation() == generation
    assert len(store.list_unsynced(project_id)[INVENTORY_KIND]) == 1
    assert store.mark_synced(project_id, [], SAMPLE_KIND) == 0
    assert store.current_generation() == generation


def test_import_starts_unsynced(store: RecordStore, snapshot: dict) -> None:
    source_id = store.import_project(snapshot)
    store.mark_synced(
        source_id, [t.id for t in store.list_sample_trees(source_id)], SAMPLE_KIND
    )
    store.mark_synced(
        source_id, [t.id for t in store.list_inventory_trees(source_id)], INVENTORY_KIND
    )

    copy_id = store.import_project(store.export_project(source_id))

    unsynced = store.list_unsynced(copy_id)
    assert len(unsynced[SAMPLE_KIND]) == 3
    assert len(unsynced[INVENTORY_KIND]) == 3
    assert store.list_unsynced(source_id) == {SAMPLE_KIND: [], INVENTORY_KIND: []}
