"""Character bible matching for extracted scene names."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from storyloom.context.models import CharacterReference


def _normalize(name: str) -> str:
    return name.strip().lower()


def match_characters(
    extracted_names: Iterable[str], bible: Sequence[CharacterReference]
) -> list[CharacterReference]:
    """
    Match extracted names against the bible by name or alias, case-insensitively.

    Returns at most one result per bible entry, in the order names were
    extracted.
    """
    if not bible:
        return []

    matched_ids: set[str] = set()
    results: list[CharacterReference] = []

    for raw_name in extracted_names:
        name = _normalize(raw_name)
        if not name:
            continue
        for entry in bible:
            if entry.id in matched_ids:
                continue
            candidates = {_normalize(entry.name), *(_normalize(a) for a in entry.aliases)}
            if name in candidates:
                matched_ids.add(entry.id)
                results.append(entry)
                break

    return results
