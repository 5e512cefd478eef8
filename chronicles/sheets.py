import json
import logging
import math
from typing import Any, Dict, List, Optional

from . import config, gateway, store
from .directory import get_config_fields
from .gateway import InvalidResponseFormat

logger = logging.getLogger("uvicorn.error")

ASSISTANT_SYSTEM_PROMPT = (
    "You are an assistant that builds character sheets for role-playing games. "
    "You return ONLY valid JSON, with no markdown and no extra text."
)


class SheetError(Exception):
    status_code = 400
    message = "Character sheet request failed."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        if message:
            self.message = message


class NoSheetTemplate(SheetError):
    status_code = 404
    message = "This story has no character sheet template."


class MissingRequiredFields(SheetError):
    status_code = 422

    def __init__(self, labels: List[str]):
        super().__init__("Please fill in: " + ", ".join(labels))
        self.labels = labels


def select_options(field: Dict[str, Any]) -> List[str]:
    options = field.get("field_options") or {}
    if isinstance(options, dict):
        return list(options.get("options") or [])
    return []


def describe_fields(fields: List[Dict[str, Any]]) -> str:
    lines = []
    for field in fields:
        line = f"- {field['field_label']} ({field['field_name']}, type: {field['field_type']})"
        if field.get("is_required"):
            line += " [REQUIRED]"
        options = select_options(field)
        if options:
            line += " - Options: " + ", ".join(options)
        lines.append(line)
    return "\n".join(lines)


def build_assistant_prompt(
    description: str, fields: List[Dict[str, Any]], system_prompt: Optional[str]
) -> str:
    return (
        "You are a creative assistant for narrative role-playing games. "
        "The theme of the story is:\n\n"
        f"{system_prompt or config.DEFAULT_THEME}\n\n"
        "The user wants to create a character with this description:\n"
        f'"{description}"\n\n'
        "Generate fitting values for each character sheet field below. "
        "Be creative and consistent with the theme and the description.\n\n"
        "Fields to fill:\n"
        f"{describe_fields(fields)}\n\n"
        "IMPORTANT: return ONE JSON OBJECT ONLY, with no extra text. Exact format:\n"
        "{\n"
        '  "field_name_1": "value",\n'
        '  "field_name_2": "value",\n'
        "  ...\n"
        "}\n\n"
        "For select fields, choose EXACTLY one of the listed options.\n"
        "For number fields, return a number.\n"
        "Make sure every REQUIRED field has a value."
    )


def strip_code_fences(text: str) -> str:
    trimmed = (text or "").strip()
    if trimmed.startswith("```json"):
        trimmed = trimmed[7:]
    if trimmed.startswith("```"):
        trimmed = trimmed[3:]
    if trimmed.endswith("```"):
        trimmed = trimmed[:-3]
    return trimmed.strip()


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
        if not math.isfinite(number):
            return None
        return int(number) if number.is_integer() else number
    return None


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def parse_field_values(raw: str, fields: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Turn the model's reply into sheet values, or raise InvalidResponseFormat.

    Only declared fields are kept. Select values must match an option exactly,
    number values must be numeric, and every required field must be present.
    """
    cleaned = strip_code_fences(raw)
    try:
        payload = json.loads(cleaned)
    except ValueError as exc:
        logger.warning("Character assistant returned unparseable JSON")
        raise InvalidResponseFormat() from exc
    if not isinstance(payload, dict):
        raise InvalidResponseFormat()

    values: Dict[str, Any] = {}
    for field in fields:
        name = field["field_name"]
        value = payload.get(name)
        if is_blank(value):
            if field.get("is_required"):
                logger.warning("Character assistant left required field %s empty", name)
                raise InvalidResponseFormat()
            continue
        field_type = field.get("field_type")
        if field_type == "select":
            if value not in select_options(field):
                logger.warning("Character assistant chose %r outside options of %s", value, name)
                raise InvalidResponseFormat()
        elif field_type == "number":
            value = _as_number(value)
            if value is None:
                raise InvalidResponseFormat()
        else:
            value = str(value)
        values[name] = value
    return values


async def suggest_field_values(
    description: str, fields: List[Dict[str, Any]], system_prompt: Optional[str]
) -> Dict[str, Any]:
    prompt = build_assistant_prompt(description, fields, system_prompt)
    raw = await gateway.complete_json_text(
        ASSISTANT_SYSTEM_PROMPT, prompt, config.ASSISTANT_TEMPERATURE
    )
    return parse_field_values(raw, fields)


class CharacterSheetDraft:
    """Values being edited for one sheet before they are saved."""

    def __init__(self, fields: List[Dict[str, Any]], values: Optional[Dict[str, Any]] = None,
                 sheet_id: Optional[str] = None):
        self.fields = fields
        self.values: Dict[str, Any] = dict(values or {})
        self.sheet_id = sheet_id

    def set_value(self, field_name: str, value: Any) -> None:
        self.values[field_name] = value

    def replace_values(self, values: Dict[str, Any]) -> None:
        # Assistant output replaces the draft wholesale; nothing is merged.
        self.values = dict(values)

    def missing_required(self) -> List[str]:
        return [
            field["field_label"]
            for field in self.fields
            if field.get("is_required") and is_blank(self.values.get(field["field_name"]))
        ]


def fields_for_story(story: Dict[str, Any]) -> List[Dict[str, Any]]:
    if not story.get("config_id"):
        raise NoSheetTemplate()
    return get_config_fields(story["config_id"])


def load_draft(story: Dict[str, Any], user_id: str) -> CharacterSheetDraft:
    fields = fields_for_story(story)
    sheet = store.find_one("character_sheets", story_id=story["id"], user_id=user_id)
    if sheet:
        return CharacterSheetDraft(fields, sheet.get("field_values") or {}, sheet["id"])
    return CharacterSheetDraft(fields)


def save_sheet(story: Dict[str, Any], user_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
    draft = load_draft(story, user_id)
    draft.replace_values(values)
    missing = draft.missing_required()
    if missing:
        raise MissingRequiredFields(missing)
    if draft.sheet_id:
        sheet = store.get("character_sheets", draft.sheet_id)
        sheet["field_values"] = draft.values
        sheet["updated_at"] = store.stamp_now()
        store.persist("character_sheets")
        return sheet
    return store.insert(
        "character_sheets",
        {
            "story_id": story["id"],
            "user_id": user_id,
            "field_values": draft.values,
            "updated_at": store.stamp_now(),
        },
    )
