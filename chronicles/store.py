"""JSON file stores backing every table of the service.

Each mutable table lives in its own ``<name>_store.json`` file under
``config.DATA_DIR`` and is rewritten on every mutation. Story configs and
their character-sheet fields are read-only and come from the bundled seed
file at ``config.STORY_CONFIGS_PATH``.
"""
import json
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from . import config

logger = logging.getLogger("uvicorn.error")

TABLES = ("users", "stories", "character_sheets", "messages", "story_participants")

tables: Dict[str, Dict[str, Dict[str, Any]]] = {name: {} for name in TABLES}
story_configs: Dict[str, Dict[str, Any]] = {}
character_sheet_fields: Dict[str, Dict[str, Any]] = {}


def stamp_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def table_path(name: str) -> str:
    return os.path.join(config.DATA_DIR, f"{name}_store.json")


def load_simple_store(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
        if isinstance(data, dict):
            return data
    except (OSError, ValueError):
        logger.warning("Store %s is unreadable; starting empty", path)
        return {}
    return {}


def save_simple_store(path: str, payload: Dict[str, Any]) -> None:
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=True, indent=2)


def load_story_configs(path: Optional[str] = None) -> None:
    path = path or config.STORY_CONFIGS_PATH
    story_configs.clear()
    character_sheet_fields.clear()
    if not os.path.exists(path):
        logger.warning("No story configs found at %s", path)
        return
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, ValueError):
        logger.warning("Story configs at %s are unreadable", path)
        return
    for payload in data.get("configs", []):
        config_id = payload["id"]
        story_configs[config_id] = {
            "id": config_id,
            "name": payload["name"],
            "description": payload.get("description"),
            "system_prompt": payload.get("system_prompt") or "",
        }
        for order, field in enumerate(payload.get("fields", [])):
            field_id = field.get("id") or f"{config_id}:{field['field_name']}"
            character_sheet_fields[field_id] = {
                "id": field_id,
                "config_id": config_id,
                "field_name": field["field_name"],
                "field_label": field.get("field_label") or field["field_name"],
                "field_type": field.get("field_type", "text"),
                "is_required": bool(field.get("is_required", False)),
                "field_options": field.get("field_options"),
                "display_order": int(field.get("display_order", order)),
            }


def load_tables() -> None:
    os.makedirs(config.DATA_DIR, exist_ok=True)
    for name in TABLES:
        tables[name].clear()
        tables[name].update(load_simple_store(table_path(name)))
    load_story_configs()
    logger.info(
        "Loaded %d users, %d stories, %d messages from %s",
        len(tables["users"]),
        len(tables["stories"]),
        len(tables["messages"]),
        config.DATA_DIR,
    )


def persist(*names: str) -> None:
    os.makedirs(config.DATA_DIR, exist_ok=True)
    for name in names:
        save_simple_store(table_path(name), tables[name])


def insert(name: str, row: Dict[str, Any], persist_now: bool = True) -> Dict[str, Any]:
    row.setdefault("id", new_id())
    row.setdefault("created_at", stamp_now())
    tables[name][row["id"]] = row
    if persist_now:
        persist(name)
    return row


def get(name: str, row_id: str) -> Optional[Dict[str, Any]]:
    return tables[name].get(row_id)


def select(name: str, **filters: Any) -> List[Dict[str, Any]]:
    return [
        row
        for row in tables[name].values()
        if all(row.get(key) == value for key, value in filters.items())
    ]


def find_one(name: str, **filters: Any) -> Optional[Dict[str, Any]]:
    for row in tables[name].values():
        if all(row.get(key) == value for key, value in filters.items()):
            return row
    return None
