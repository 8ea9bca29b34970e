from __future__ import annotations

import json
from pathlib import Path

import pytest

from forinv.config import ConfigBundle, load_config_bundle
from forinv.ledger.storage import RecordStore


FIXTURES = Path(__file__).parent / "fixtures"


@pytest.fixture
def config() -> ConfigBundle:
    return load_config_bundle(FIXTURES / "configs")


@pytest.fixture
def store(tmp_path: Path, config: ConfigBundle) -> RecordStore:
    return RecordStore(tmp_path / "workspace", config)


@pytest.fixture
def snapshot() -> dict:
    return json.loads((FIXTURES / "snapshots" / "pineta.json").read_text(encoding="utf-8"))
