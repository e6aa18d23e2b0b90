"""
Entity Index Lookup

Resolves extracted entity names against the precomputed entity -> facts
index, and renders matched facts as a prompt-insertable block.
"""

import re
from typing import Dict, List, Optional

from ..common.schemas import EntityIndex

ENTITY_FACTS_HEADER = "Known facts about people, pets and places in the user's life:"

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_entity_name(name: str) -> str:
    """Case- and whitespace-insensitive key for entity names."""
    return _WHITESPACE_RE.sub(" ", (name or "").strip()).casefold()


def resolve_entity(name: str, index: EntityIndex) -> Optional[str]:
    """Return the index's own key for an entity name, or None."""
    wanted = normalize_entity_name(name)
    if not wanted:
        return None
    for key in index:
        if normalize_entity_name(key) == wanted:
            return key
    return None


def lookup_entity_facts(entities: List[str], index: EntityIndex) -> Dict[str, List[str]]:
    """
    Look up facts for extracted entities.

    Args:
        entities: Entity names as extracted from the message
        index: Entity name -> facts

    Returns:
        Mapping of index key -> facts for every entity that resolved.
        Entities without a match are simply absent.
    """
    found: Dict[str, List[str]] = {}
    if not entities or not index:
        return found

    for entity in entities:
        key = resolve_entity(entity, index)
        if key is None or key in found:
            continue
        facts = [f for f in index.get(key) or [] if f and f.strip()]
        if facts:
            found[key] = facts
    return found


def format_entity_facts(facts: Dict[str, List[str]]) -> str:
    """Render facts as a flat text block; empty string when there are none."""
    if not facts:
        return ""

    lines = [ENTITY_FACTS_HEADER]
    for name, entity_facts in facts.items():
        lines.append(f"- {name}: {'; '.join(f.strip() for f in entity_facts)}")
    return "\n".join(lines)
