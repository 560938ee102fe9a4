"""Sample device state served by the emulator before real data arrives."""

from __future__ import annotations

import copy
from typing import Any, Dict, List


_SAMPLE_SONG: Dict[str, Any] = {
    "album": "Random Access Memories",
    "artist": "Daft Punk",
    "playlist": "Electronic Essentials",
    "playlist_id": "playlist_001",
    "track_name": "Get Lucky",
    "shuffle_state": False,
    "repeat_state": "off",
    "is_playing": True,
    "can_fast_forward": True,
    "can_skip": True,
    "can_like": True,
    "can_change_volume": True,
    "can_set_output": True,
    "track_duration": 369000,
    "track_progress": 145000,
    "volume": 75,
    "thumbnail": None,
    "device": "Desktop Speaker",
    "id": "track_001",
    "device_id": "device_001",
    "liked": True,
    "color": {
        "value": [41, 128, 185],
        "rgb": "rgb(41, 128, 185)",
        "rgba": "rgba(41, 128, 185, 1)",
        "hex": "#2980b9",
        "hexa": "#2980b9ff",
        "isDark": True,
        "isLight": False,
    },
}


def _sample_app(index: int, tag: str) -> Dict[str, Any]:
    name = f"sample-app-{index}"
    return {
        "name": name,
        "manifest": {
            "id": name,
            "requires": [],
            "version": "1.0.0",
            "description": f"Sample App {index}",
            "author": "Sample Author",
            "platforms": ["windows", "mac"],
            "tags": [tag],
            "requiredVersions": {"server": "1.0.0", "client": "1.0.0"},
        },
    }


_SAMPLE_APPS: List[Dict[str, Any]] = [_sample_app(1, "utilityOnly"), _sample_app(2, "webappOnly")]


def sample_song() -> Dict[str, Any]:
    return copy.deepcopy(_SAMPLE_SONG)


def sample_apps() -> List[Dict[str, Any]]:
    return copy.deepcopy(_SAMPLE_APPS)
