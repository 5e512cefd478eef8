import json
import os

import pytest

from chronicles import config, directory, store
from chronicles.directory import Access


def test_private_story_denies_strangers(make_user):
    owner = make_user()
    stranger = make_user()
    story = directory.create_story(owner["id"], "Secret", is_public=False)
    assert directory.resolve_access(story, stranger["id"]) is Access.DENIED
    assert store.select("story_participants", story_id=story["id"], user_id=stranger["id"]) == []


def test_private_story_password_does_not_open_it(make_user):
    owner = make_user()
    stranger = make_user()
    story = directory.create_story(owner["id"], "Secret", is_public=False, password="opensesame")
    with pytest.raises(directory.NotAllowed):
        directory.join_with_password(story, stranger["id"], "opensesame")
    assert directory.resolve_access(story, stranger["id"]) is Access.DENIED
    assert store.select("story_participants", story_id=story["id"], user_id=stranger["id"]) == []
    assert directory.join_with_password(story, owner["id"], "") is Access.GRANT


def test_creator_is_participant_in_same_write(make_user, data_dir):
    owner = make_user()
    story = directory.create_story(owner["id"], "Mine")
    with open(os.path.join(str(data_dir), "story_participants_store.json"), encoding="utf-8") as handle:
        rows = list(json.load(handle).values())
    assert [(row["story_id"], row["user_id"]) for row in rows] == [(story["id"], owner["id"])]
    assert directory.resolve_access(story, owner["id"]) is Access.GRANT


def test_public_story_joins_implicitly_once(make_user):
    owner = make_user()
    visitor = make_user()
    story = directory.create_story(owner["id"], "Tavern", is_public=True)
    assert directory.resolve_access(story, visitor["id"]) is Access.GRANT
    assert directory.resolve_access(story, visitor["id"]) is Access.GRANT
    rows = store.select("story_participants", story_id=story["id"], user_id=visitor["id"])
    assert len(rows) == 1


def test_public_story_with_password_requires_it(make_user):
    owner = make_user()
    visitor = make_user()
    story = directory.create_story(owner["id"], "Vault", is_public=True, password="opensesame")
    assert directory.resolve_access(story, visitor["id"]) is Access.PASSWORD_REQUIRED


def test_wrong_password_leaves_no_record(make_user):
    owner = make_user()
    visitor = make_user()
    story = directory.create_story(owner["id"], "Vault", is_public=True, password="opensesame")
    with pytest.raises(directory.WrongPassword):
        directory.join_with_password(story, visitor["id"], "guess")
    assert not directory.is_participant(story, visitor["id"])


def test_right_password_records_participation_once(make_user):
    owner = make_user()
    visitor = make_user()
    story = directory.create_story(owner["id"], "Vault", is_public=True, password="opensesame")
    assert directory.join_with_password(story, visitor["id"], "opensesame") is Access.GRANT
    assert directory.join_with_password(story, visitor["id"], "opensesame") is Access.GRANT
    assert len(store.select("story_participants", story_id=story["id"], user_id=visitor["id"])) == 1
    assert directory.resolve_access(story, visitor["id"]) is Access.GRANT


def test_room_password_is_hashed(make_user):
    owner = make_user()
    story = directory.create_story(owner["id"], "Vault", password="opensesame")
    assert story["hashed_password"] != "opensesame"
    assert "hashed_password" not in directory.public_story(story)
    assert directory.public_story(story)["has_password"] is True


@pytest.mark.parametrize(
    "kwargs",
    [
        {"title": ""},
        {"title": "x" * 201},
        {"title": "ok", "description": "d" * 2001},
        {"title": "ok", "password": "p" * 101},
        {"title": "ok", "config_id": "no-such-theme"},
    ],
)
def test_create_story_validation(make_user, kwargs):
    owner = make_user()
    with pytest.raises(directory.InvalidStory):
        directory.create_story(owner["id"], **kwargs)
    assert store.tables["stories"] == {}


def test_list_stories_newest_first(make_user):
    owner = make_user()
    first = directory.create_story(owner["id"], "First")
    second = directory.create_story(owner["id"], "Second")
    first["created_at"] = "2020-01-01T00:00:00+00:00"
    assert [story["id"] for story in directory.list_stories()] == [second["id"], first["id"]]


def test_invite_rules(make_user):
    owner = make_user()
    friend = make_user()
    outsider = make_user()
    story = directory.create_story(owner["id"], "Party")
    with pytest.raises(directory.NotAllowed):
        directory.invite_participant(story, outsider["id"], friend["id"])
    with pytest.raises(directory.UserNotFound):
        directory.invite_participant(story, owner["id"], "missing-user")
    directory.invite_participant(story, owner["id"], friend["id"])
    assert directory.resolve_access(story, friend["id"]) is Access.GRANT
    with pytest.raises(directory.AlreadyParticipant):
        directory.invite_participant(story, owner["id"], friend["id"])


def test_config_fields_follow_display_order():
    fields = directory.get_config_fields("dark-fantasy")
    assert [field["field_name"] for field in fields] == ["name", "class", "age", "backstory"]
    assert [config_row["name"] for config_row in directory.list_configs()] == sorted(
        config_row["name"] for config_row in directory.list_configs()
    )
    assert config.STORY_CONFIGS_PATH.endswith("story_configs.json")
