"""Mapping layer between flat StoreSettings fields and sectioned TOML format.

StoreSettings remains a flat Pydantic model. This module provides two functions:
- flat_to_sectioned(): flat dict → sectioned dict (for TOML save)
- sectioned_to_flat(): sectioned dict → flat dict (for TOML load)
"""

from __future__ import annotations

# {section_name: {flat_field_name: short_name_in_toml}}
SECTION_MAP: dict[str, dict[str, str]] = {
    'registry': {
        'max_handles': 'max_handles',
    },
    'writer': {
        'write_batch_window_s': 'batch_window_s',
        'write_batch_size': 'batch_size',
    },
    'stream': {
        'scan_page_size': 'page_size',
    },
    'import': {
        'import_chunk_size': 'chunk_size',
        'log_memory_every_tiles': 'log_memory_every_tiles',
    },
    'lifecycle': {
        'compact_on_close': 'compact_on_close',
    },
}

# Reverse index: flat_field → (section, short_name)
_FLAT_TO_SECTION: dict[str, tuple[str, str]] = {}
for _section, _fields in SECTION_MAP.items():
    for _flat, _short in _fields.items():
        _FLAT_TO_SECTION[_flat] = (_section, _short)

# Reverse index: (section, short_name) → flat_field
_SECTION_TO_FLAT: dict[str, dict[str, str]] = {}
for _section, _fields in SECTION_MAP.items():
    _SECTION_TO_FLAT[_section] = {v: k for k, v in _fields.items()}


def flat_to_sectioned(flat: dict) -> dict:
    """Convert flat StoreSettings dict to sectioned dict for TOML output."""
    result: dict = {}
    for key, value in flat.items():
        if key in _FLAT_TO_SECTION:
            section, short_name = _FLAT_TO_SECTION[key]
            result.setdefault(section, {})[short_name] = value
        else:
            result.setdefault('common', {})[key] = value
    return result


def sectioned_to_flat(data: dict) -> dict:
    """Convert sectioned TOML dict to flat dict for StoreSettings validation."""
    flat: dict = {}
    for key, value in data.items():
        if isinstance(value, dict) and key in _SECTION_TO_FLAT:
            # Known section: expand short names to flat names
            mapping = _SECTION_TO_FLAT[key]
            for short_name, field_value in value.items():
                flat[mapping.get(short_name, short_name)] = field_value
        elif isinstance(value, dict):
            # [common] holds keys without a section; unknown sections pass through too
            flat.update(value)
        else:
            # Top-level key (flat TOML)
            flat[key] = value
    return flat
