"""
Cache Key Builders

Pure key-construction and inspection helpers.

Key format: ``prefix:entity_type:id[:extra...]`` or ``prefix:name``,
colon-separated lowercase segments. The facade appends a version suffix
(``:vX.Y.Z``) before a key reaches the store.

Examples:
    character(95465499)            -> "esi:character:95465499"
    system(30000142)               -> "map:system:30000142"
    killmail(1001, "abcd")         -> "esi:killmail:1001:abcd"
"""

from __future__ import annotations

from typing import Any, Union

from .errors import InvalidKeyError

SEPARATOR = ":"
WILDCARD = "*"

# Prefixes
PREFIX_MAP = "map"
PREFIX_ESI = "esi"
PREFIX_TRACKED = "tracked"
PREFIX_RECENT = "recent"
PREFIX_CRITICAL = "critical"
PREFIX_CONFIG = "config"
PREFIX_DATA = "data"

# Entity types
ENTITY_CHARACTER = "character"
ENTITY_CORPORATION = "corporation"
ENTITY_ALLIANCE = "alliance"
ENTITY_SYSTEM = "system"
ENTITY_TYPE = "type"
ENTITY_KILLMAIL = "killmail"

KeyPart = Union[str, int]


def build_key(*parts: KeyPart) -> str:
    """
    Join parts into a cache key.

    Raises:
        InvalidKeyError: If fewer than two parts are given, a part is empty,
            or a part contains the separator
    """
    segments = [str(part).strip().lower() for part in parts]
    if len(segments) < 2 or any(not s for s in segments):
        raise InvalidKeyError(parts, f"Key needs at least two non-empty parts: {parts!r}")
    for segment in segments:
        if SEPARATOR in segment:
            raise InvalidKeyError(parts, f"Key part {segment!r} contains '{SEPARATOR}'")
    return SEPARATOR.join(segments)


def entity_key(prefix: str, entity_type: str, entity_id: KeyPart, *extra: KeyPart) -> str:
    return build_key(prefix, entity_type, entity_id, *extra)


# =============================================================================
# Domain Keys
# =============================================================================


def character(character_id: KeyPart) -> str:
    return entity_key(PREFIX_ESI, ENTITY_CHARACTER, character_id)


def corporation(corporation_id: KeyPart) -> str:
    return entity_key(PREFIX_ESI, ENTITY_CORPORATION, corporation_id)


def alliance(alliance_id: KeyPart) -> str:
    return entity_key(PREFIX_ESI, ENTITY_ALLIANCE, alliance_id)


def system(system_id: KeyPart) -> str:
    return entity_key(PREFIX_MAP, ENTITY_SYSTEM, system_id)


def type_key(type_id: KeyPart) -> str:
    return entity_key(PREFIX_ESI, ENTITY_TYPE, type_id)


def killmail(kill_id: KeyPart, killmail_hash: str) -> str:
    return entity_key(PREFIX_ESI, ENTITY_KILLMAIL, kill_id, killmail_hash)


def tracked_system(system_id: KeyPart) -> str:
    return entity_key(PREFIX_TRACKED, ENTITY_SYSTEM, system_id)


def tracked_character(character_id: KeyPart) -> str:
    return entity_key(PREFIX_TRACKED, ENTITY_CHARACTER, character_id)


def config(name: str) -> str:
    return build_key(PREFIX_CONFIG, name)


def data(name: str) -> str:
    return build_key(PREFIX_DATA, name)


# Fixed keys
RECENT_KILLS = build_key(PREFIX_RECENT, "kills")
TRACKED_SYSTEMS = build_key(PREFIX_TRACKED, "systems")
TRACKED_CHARACTERS = build_key(PREFIX_TRACKED, "characters")
MAP_SYSTEMS = build_key(PREFIX_MAP, "systems")
CRITICAL_STARTUP_DATA = build_key(PREFIX_CRITICAL, "startup_data")


def recent_kills() -> str:
    return RECENT_KILLS


def tracked_systems() -> str:
    return TRACKED_SYSTEMS


def tracked_characters() -> str:
    return TRACKED_CHARACTERS


def map_systems() -> str:
    return MAP_SYSTEMS


def critical_startup_data() -> str:
    return CRITICAL_STARTUP_DATA


# Domain name -> key builder, used by the facade and the warmer
ENTITY_BUILDERS = {
    ENTITY_CHARACTER: character,
    ENTITY_CORPORATION: corporation,
    ENTITY_ALLIANCE: alliance,
    ENTITY_SYSTEM: system,
    ENTITY_TYPE: type_key,
}


# =============================================================================
# Inspection
# =============================================================================


def is_valid_key(key: Any) -> bool:
    """A key is valid iff it has a separator and at least two non-empty segments."""
    if not isinstance(key, str) or SEPARATOR not in key:
        return False
    segments = key.split(SEPARATOR)
    return len(segments) >= 2 and all(segments)


def extract_pattern(key: str, pattern: str) -> list[str]:
    """
    Extract the segments matched by ``*`` wildcards.

    Returns an empty list when the key does not match the pattern.

    >>> extract_pattern("map:character:98765", "map:*:*")
    ['character', '98765']
    """
    if not isinstance(key, str) or not isinstance(pattern, str):
        return []

    key_parts = key.split(SEPARATOR)
    pattern_parts = pattern.split(SEPARATOR)
    if len(key_parts) != len(pattern_parts):
        return []

    captured: list[str] = []
    for key_part, pattern_part in zip(key_parts, pattern_parts):
        if pattern_part == WILDCARD:
            captured.append(key_part)
        elif key_part != pattern_part:
            return []
    return captured


def key_info(key: str) -> dict[str, Any]:
    """
    Describe a key's structure.

    Three-or-more segment keys yield prefix/entity_type/id/extra; two-segment
    keys yield prefix/name.

    Raises:
        InvalidKeyError: If the key is not valid
    """
    if not is_valid_key(key):
        raise InvalidKeyError(key)

    parts = key.split(SEPARATOR)
    if len(parts) >= 3:
        prefix, entity_type, entity_id, *extra = parts
        return {
            "prefix": prefix,
            "entity_type": entity_type,
            "id": entity_id,
            "extra": extra,
            "parts": parts,
        }
    prefix, name = parts
    return {"prefix": prefix, "name": name, "parts": parts}
