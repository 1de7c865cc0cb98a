import json

import pytest


@pytest.fixture
def write_tileset(tmp_path):
    """Write a tileset document to ``<tmp>/<dirname>/tileset.json`` and return its path."""

    def _write(tileset, dirname="source", *, bom=False):
        directory = tmp_path / dirname
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / "tileset.json"
        text = json.dumps(tileset, indent=2)
        path.write_text(("\ufeff" if bom else "") + text, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def read_json():
    def _read(path):
        return json.loads(path.read_text(encoding="utf-8"))

    return _read
