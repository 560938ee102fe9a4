"""Application manifest loading."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import ManifestError


MANIFEST_LOCATIONS = (Path("public") / "manifest.json", Path("manifest.json"))


@dataclass
class AppManifest:
    id: str
    label: str = ""
    version: str = ""
    description: str = ""
    author: str = ""
    is_web_app: bool = False
    requires: List[str] = field(default_factory=list)
    platforms: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    homepage: str = ""
    repository: str = ""
    version_code: Optional[int] = None
    compatible_server: str = ""
    compatible_client: str = ""
    required_versions: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Camel-cased form as the emulator UI expects it."""
        raw = asdict(self)
        return {
            "id": raw["id"],
            "label": raw["label"],
            "version": raw["version"],
            "description": raw["description"],
            "author": raw["author"],
            "isWebApp": raw["is_web_app"],
            "requires": raw["requires"],
            "platforms": raw["platforms"],
            "tags": raw["tags"],
            "homepage": raw["homepage"],
            "repository": raw["repository"],
            "version_code": raw["version_code"],
            "compatible_server": raw["compatible_server"],
            "compatible_client": raw["compatible_client"],
            "requiredVersions": raw["required_versions"],
        }


def parse_manifest(raw: Dict[str, Any]) -> AppManifest:
    if not isinstance(raw, dict):
        raise ManifestError("manifest must be a JSON object")
    app_id = raw.get("id")
    if not isinstance(app_id, str) or not app_id:
        raise ManifestError("manifest missing 'id'")
    return AppManifest(
        id=app_id,
        label=str(raw.get("label") or ""),
        version=str(raw.get("version") or ""),
        description=str(raw.get("description") or ""),
        author=str(raw.get("author") or ""),
        is_web_app=bool(raw.get("isWebApp", False)),
        requires=list(raw.get("requires") or []),
        platforms=list(raw.get("platforms") or []),
        tags=list(raw.get("tags") or []),
        homepage=str(raw.get("homepage") or ""),
        repository=str(raw.get("repository") or ""),
        version_code=raw.get("version_code"),
        compatible_server=str(raw.get("compatible_server") or ""),
        compatible_client=str(raw.get("compatible_client") or ""),
        required_versions=dict(raw.get("requiredVersions") or {}),
    )


def find_manifest(root: Path) -> Optional[Path]:
    for relative in MANIFEST_LOCATIONS:
        candidate = Path(root) / relative
        if candidate.is_file():
            return candidate
    return None


def load_manifest(root: Path) -> AppManifest:
    path = find_manifest(root)
    if path is None:
        raise ManifestError(f"no manifest.json under {root}")
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ManifestError(f"failed to read {path}: {exc}") from exc
    return parse_manifest(raw)
