"""Story rooms: listing, creation and the access policy gating each room."""
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from . import config, store
from .auth import get_password_hash, verify_password

logger = logging.getLogger("uvicorn.error")


class Access(str, Enum):
    GRANT = "grant"
    PASSWORD_REQUIRED = "password_required"
    DENIED = "denied"


class DirectoryError(Exception):
    status_code = 400
    message = "Story request failed."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        if message:
            self.message = message


class InvalidStory(DirectoryError):
    status_code = 422
    message = "Invalid story."


class StoryNotFound(DirectoryError):
    status_code = 404
    message = "Story not found."


class WrongPassword(DirectoryError):
    status_code = 403
    message = "Wrong password."


class NotAllowed(DirectoryError):
    status_code = 403
    message = "You do not have access to this story."


class UserNotFound(DirectoryError):
    status_code = 404
    message = "This user does not exist yet."


class AlreadyParticipant(DirectoryError):
    status_code = 409
    message = "This player is already part of the story."


def public_story(story: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": story["id"],
        "title": story["title"],
        "description": story.get("description"),
        "is_public": bool(story.get("is_public")),
        "has_password": bool(story.get("hashed_password")),
        "created_by": story.get("created_by"),
        "config_id": story.get("config_id"),
        "created_at": story["created_at"],
    }


def list_stories() -> List[Dict[str, Any]]:
    rows = list(store.tables["stories"].values())
    return sorted(rows, key=lambda row: row.get("created_at", ""), reverse=True)


def require_story(story_id: str) -> Dict[str, Any]:
    story = store.get("stories", story_id)
    if not story:
        raise StoryNotFound()
    return story


def list_configs() -> List[Dict[str, Any]]:
    return sorted(store.story_configs.values(), key=lambda row: row["name"])


def get_config(config_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not config_id:
        return None
    return store.story_configs.get(config_id)


def get_config_fields(config_id: str) -> List[Dict[str, Any]]:
    fields = [
        field for field in store.character_sheet_fields.values() if field["config_id"] == config_id
    ]
    return sorted(fields, key=lambda field: field["display_order"])


def create_story(
    creator_id: str,
    title: str,
    description: Optional[str] = None,
    config_id: Optional[str] = None,
    is_public: bool = False,
    password: Optional[str] = None,
) -> Dict[str, Any]:
    title = (title or "").strip()
    description = (description or "").strip() or None
    if not title or len(title) > config.MAX_TITLE_LENGTH:
        raise InvalidStory(f"Title must be between 1 and {config.MAX_TITLE_LENGTH} characters.")
    if description and len(description) > config.MAX_DESCRIPTION_LENGTH:
        raise InvalidStory(
            f"Description must be at most {config.MAX_DESCRIPTION_LENGTH} characters."
        )
    if password and len(password) > config.MAX_ROOM_PASSWORD_LENGTH:
        raise InvalidStory(
            f"Password must be at most {config.MAX_ROOM_PASSWORD_LENGTH} characters."
        )
    if config_id and config_id not in store.story_configs:
        raise InvalidStory("Unknown story theme.")

    story = store.insert(
        "stories",
        {
            "title": title,
            "description": description,
            "config_id": config_id or None,
            "is_public": bool(is_public),
            "hashed_password": get_password_hash(password) if password else None,
            "created_by": creator_id,
        },
        persist_now=False,
    )
    # Story and creator participation are written together.
    add_participant(story["id"], creator_id, persist_now=False)
    store.persist("stories", "story_participants")
    logger.info("Story %s created by %s", story["id"], creator_id)
    return story


def add_participant(
    story_id: str, user_id: str, persist_now: bool = True
) -> Tuple[Dict[str, Any], bool]:
    existing = store.find_one("story_participants", story_id=story_id, user_id=user_id)
    if existing:
        return existing, False
    row = store.insert(
        "story_participants",
        {"story_id": story_id, "user_id": user_id},
        persist_now=persist_now,
    )
    return row, True


def is_participant(story: Dict[str, Any], user_id: str) -> bool:
    if story.get("created_by") == user_id:
        return True
    return store.find_one("story_participants", story_id=story["id"], user_id=user_id) is not None


def resolve_access(story: Dict[str, Any], user_id: str) -> Access:
    if story.get("created_by") == user_id:
        return Access.GRANT
    if store.find_one("story_participants", story_id=story["id"], user_id=user_id):
        return Access.GRANT
    if story.get("is_public") and story.get("hashed_password"):
        return Access.PASSWORD_REQUIRED
    if story.get("is_public"):
        _, created = add_participant(story["id"], user_id)
        if created:
            logger.info("User %s joined public story %s", user_id, story["id"])
        return Access.GRANT
    return Access.DENIED


def join_with_password(story: Dict[str, Any], user_id: str, password: str) -> Access:
    if is_participant(story, user_id):
        return Access.GRANT
    # Private rooms are invite-only; their password never opens them.
    if not story.get("is_public"):
        raise NotAllowed()
    hashed = story.get("hashed_password")
    if not hashed:
        return resolve_access(story, user_id)
    if not password or not verify_password(password, hashed):
        logger.warning("Wrong room password for story %s", story["id"])
        raise WrongPassword()
    _, created = add_participant(story["id"], user_id)
    if created:
        logger.info("User %s joined story %s with password", user_id, story["id"])
    return Access.GRANT


def invite_participant(story: Dict[str, Any], inviter_id: str, user_id: str) -> Dict[str, Any]:
    if not is_participant(story, inviter_id):
        raise NotAllowed()
    user_id = (user_id or "").strip()
    if not store.get("users", user_id):
        raise UserNotFound()
    if is_participant(story, user_id):
        raise AlreadyParticipant()
    row, _ = add_participant(story["id"], user_id)
    logger.info("User %s invited %s to story %s", inviter_id, user_id, story["id"])
    return row
