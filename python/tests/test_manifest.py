import json

import pytest

from thingdev.errors import ManifestError
from thingdev.manifest import find_manifest, load_manifest, parse_manifest


def test_public_manifest_wins(tmp_path):
    (tmp_path / "public").mkdir()
    (tmp_path / "public" / "manifest.json").write_text(json.dumps({"id": "weather", "isWebApp": True}))
    (tmp_path / "manifest.json").write_text(json.dumps({"id": "other"}))
    assert find_manifest(tmp_path) == tmp_path / "public" / "manifest.json"
    manifest = load_manifest(tmp_path)
    assert manifest.id == "weather"
    assert manifest.is_web_app is True
    assert manifest.to_dict()["isWebApp"] is True


def test_root_manifest_fallback(tmp_path):
    (tmp_path / "manifest.json").write_text(
        json.dumps({"id": "clock", "requiredVersions": {"server": "1.0.0"}, "tags": ["utility"]})
    )
    manifest = load_manifest(tmp_path)
    assert manifest.required_versions == {"server": "1.0.0"}
    assert manifest.to_dict()["tags"] == ["utility"]


def test_missing_manifest(tmp_path):
    assert find_manifest(tmp_path) is None
    with pytest.raises(ManifestError):
        load_manifest(tmp_path)


def test_bad_manifest(tmp_path):
    (tmp_path / "manifest.json").write_text("{")
    with pytest.raises(ManifestError):
        load_manifest(tmp_path)
    with pytest.raises(ManifestError):
        parse_manifest({"label": "no id"})
    with pytest.raises(ManifestError):
        parse_manifest(["id"])
