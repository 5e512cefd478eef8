import json
import os
import re

CONFIGS_PATH = os.getenv(
    "STORY_CONFIGS_PATH",
    os.path.join(os.path.dirname(os.path.abspath(__file__)), "chronicles", "story_configs.json"),
)
FIELD_TYPES = ("text", "textarea", "number", "select")


def ask_field():
    name = input("  Field name (blank to finish): ").strip()
    if not name:
        return None
    label = input("  Label: ").strip() or name.title()
    field_type = input(f"  Type {FIELD_TYPES}: ").strip() or "text"
    if field_type not in FIELD_TYPES:
        print(f"  Unknown type '{field_type}', using text")
        field_type = "text"
    field = {
        "field_name": name,
        "field_label": label,
        "field_type": field_type,
        "is_required": input("  Required? [y/N]: ").strip().lower() == "y",
    }
    if field_type == "select":
        options = [opt.strip() for opt in input("  Options (comma separated): ").split(",") if opt.strip()]
        field["field_options"] = {"options": options}
    return field


def add_story_config():
    print("--- Chronicles Story Config Helper ---")

    if not os.path.exists(CONFIGS_PATH):
        print(f"Error: {CONFIGS_PATH} not found!")
        return

    with open(CONFIGS_PATH, "r", encoding="utf-8") as f:
        data = json.load(f)

    name = input("Theme Name: ").strip()
    if not name:
        print("A name is required.")
        return
    desc = input("Description: ").strip()
    prompt = input("Narrator system prompt: ").strip()

    config_id = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    if any(existing["id"] == config_id for existing in data["configs"]):
        config_id = f"{config_id}-{len(data['configs']) + 1}"

    print("\nCharacter sheet fields:")
    fields = []
    while True:
        field = ask_field()
        if field is None:
            break
        fields.append(field)

    data["configs"].append(
        {
            "id": config_id,
            "name": name,
            "description": desc,
            "system_prompt": prompt,
            "fields": fields,
        }
    )

    with open(CONFIGS_PATH, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)

    print(f"\nSuccess! Added '{name}' ({config_id}) with {len(fields)} fields.")
    print("Restart the server to pick up the new theme.")


if __name__ == "__main__":
    add_story_config()
