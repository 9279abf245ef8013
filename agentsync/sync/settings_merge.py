"""Settings merge — update the jointly-owned settings document.

The settings document is JSON shaped like::

    {
      "hooks": {
        "<EventType>": [
          {"matcher": "<pattern>", "hooks": [{...entry...}, ...]},
          ...
        ]
      },
      ...project-owned keys...
    }

Hook entries carrying ``"_managed": true`` belong to the sync system and are
replaced on every merge. Entries without the marker belong to the project
and are never altered, removed or reordered relative to each other.
"""

from __future__ import annotations

import copy
import json
from pathlib import Path

from agentsync.sync.hashing import hash_bytes

MANAGED_KEY = "_managed"
HOOKS_KEY = "hooks"
MATCHER_KEY = "matcher"


def is_managed(entry: object) -> bool:
    return isinstance(entry, dict) and entry.get(MANAGED_KEY) is True


def stamp_managed(document: dict) -> dict:
    """Return a copy of ``document`` with every hook entry marked managed."""
    stamped = copy.deepcopy(document)
    for groups in (stamped.get(HOOKS_KEY) or {}).values():
        for group in groups:
            for entry in group.get(HOOKS_KEY) or []:
                if isinstance(entry, dict):
                    entry[MANAGED_KEY] = True
    return stamped


def merge_settings(source: dict, target: dict | None) -> dict:
    """Merge the source's managed hooks into the target document.

    For each event/matcher in the source, managed entries are dropped from
    every target group with that matcher. The entries of the n-th source
    group then go after the surviving project entries of the n-th matching
    target group; source groups without a counterpart are appended. Groups
    present only in the target, and all non-hook keys of the target, are
    left untouched.
    """
    source = stamp_managed(source)
    if target is None:
        return source

    merged = copy.deepcopy(target)
    merged_hooks = merged.setdefault(HOOKS_KEY, {})

    for event, source_groups in (source.get(HOOKS_KEY) or {}).items():
        target_groups = merged_hooks.setdefault(event, [])

        by_matcher: dict[str, list[dict]] = {}
        for source_group in source_groups:
            by_matcher.setdefault(source_group.get(MATCHER_KEY, ""), []).append(source_group)

        for matcher, groups in by_matcher.items():
            matching = [g for g in target_groups if g.get(MATCHER_KEY, "") == matcher]
            for group in matching:
                group[HOOKS_KEY] = [e for e in group.get(HOOKS_KEY) or [] if not is_managed(e)]

            for index, source_group in enumerate(groups):
                if index < len(matching):
                    entries = copy.deepcopy(source_group.get(HOOKS_KEY) or [])
                    matching[index][HOOKS_KEY].extend(entries)
                else:
                    target_groups.append(copy.deepcopy(source_group))

    return merged


def managed_projection(document: dict) -> dict:
    """Extract only the managed hook entries, keyed by event and matcher."""
    projection: dict[str, list] = {}
    for event, groups in sorted((document.get(HOOKS_KEY) or {}).items()):
        for group in groups:
            managed = [e for e in group.get(HOOKS_KEY) or [] if is_managed(e)]
            if managed:
                projection.setdefault(event, []).append(
                    {MATCHER_KEY: group.get(MATCHER_KEY, ""), HOOKS_KEY: managed}
                )
    return projection


def managed_fingerprint(document: dict) -> str:
    """Hash of the managed projection, independent of project-owned entries."""
    canonical = json.dumps(managed_projection(document), sort_keys=True, separators=(",", ":"))
    return hash_bytes(canonical.encode("utf-8"))


def read_settings(path: str | Path) -> dict:
    """Load a settings document, rejecting any shape the merge cannot handle."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: settings document must be a JSON object")

    hooks = data.get(HOOKS_KEY)
    if hooks is None:
        return data
    if not isinstance(hooks, dict):
        raise ValueError(f"{path}: '{HOOKS_KEY}' must be an object of event types")
    for event, groups in hooks.items():
        if not isinstance(groups, list):
            raise ValueError(f"{path}: hooks.{event} must be a list of matcher groups")
        for group in groups:
            if not isinstance(group, dict):
                raise ValueError(f"{path}: hooks.{event} groups must be objects")
            if not isinstance(group.get(MATCHER_KEY, ""), str):
                raise ValueError(f"{path}: hooks.{event} matcher must be a string")
            if not isinstance(group.get(HOOKS_KEY) or [], list):
                raise ValueError(f"{path}: hooks.{event} group hooks must be a list")
    return data


def render_settings(document: dict) -> str:
    return json.dumps(document, indent=2) + "\n"


def apply_settings_merge(source_path: str | Path, target_path: str | Path) -> str:
    """Merge the source settings file into the target file in place.

    Writes via a temp file and rename. Returns the managed fingerprint of
    the written document.
    """
    target_path = Path(target_path)
    source = read_settings(source_path)
    target = read_settings(target_path) if target_path.exists() else None

    merged = merge_settings(source, target)

    target_path.parent.mkdir(parents=True, exist_ok=True)
    tmp = target_path.with_name(target_path.name + ".tmp")
    tmp.write_text(render_settings(merged), encoding="utf-8")
    tmp.replace(target_path)
    return managed_fingerprint(merged)
