import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Literal, Optional

from fastapi import (
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from . import auth, chat, config, dice, directory, gateway, sheets, store
from .auth import AuthError
from .directory import Access, DirectoryError
from .gateway import GatewayError
from .sheets import SheetError

logger = logging.getLogger("uvicorn.error")


@asynccontextmanager
async def lifespan(app: FastAPI):
    store.load_tables()
    yield
    logger.info("Chronicles shutting down")


app = FastAPI(title="Chronicles", lifespan=lifespan)

if config.CORS_ORIGINS == "*":
    allow_origins = ["*"]
else:
    allow_origins = [origin.strip() for origin in config.CORS_ORIGINS.split(",") if origin.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def domain_error_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


for error_type in (AuthError, DirectoryError, GatewayError, SheetError):
    app.add_exception_handler(error_type, domain_error_handler)


# --- Request / response models ---
class EmailAuthRequest(BaseModel):
    email: str
    password: str


class AuthResponse(BaseModel):
    id: str
    email: Optional[str] = None
    username: Optional[str] = None
    confirmed: bool = True
    token: Optional[str] = None
    confirmation_required: bool = False


class ConfirmRequest(BaseModel):
    email: str
    code: str


class AdminCodeRequest(BaseModel):
    email: str


class UpdateProfileRequest(BaseModel):
    username: str


class CreateStoryRequest(BaseModel):
    title: str
    description: Optional[str] = None
    config_id: Optional[str] = None
    is_public: bool = False
    password: Optional[str] = None


class JoinStoryRequest(BaseModel):
    password: str = ""


class InviteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")


class SendMessageRequest(BaseModel):
    content: str


class NarrationTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class NarrateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: List[NarrationTurn]
    story_id: str = Field(alias="storyId")


class SheetField(BaseModel):
    field_name: str
    field_label: str
    field_type: str = "text"
    is_required: bool = False
    field_options: Optional[Dict[str, Any]] = None


class CharacterAssistantRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    description: Optional[str] = None
    fields: Optional[List[SheetField]] = None
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")


class SceneImageRequest(BaseModel):
    prompt: Optional[str] = None


class SaveSheetRequest(BaseModel):
    field_values: Dict[str, Any]


class RollRequest(BaseModel):
    notation: Optional[str] = None
    count: int = 1
    sides: int = 20
    modifier: int = 0


def auth_response(user: Dict[str, Any]) -> AuthResponse:
    return AuthResponse(
        id=user["id"],
        email=user.get("email"),
        username=user.get("username"),
        confirmed=bool(user.get("confirmed")),
        token=user.get("token"),
        confirmation_required=not user.get("confirmed"),
    )


def mask_token(token: str) -> str:
    return token[-4:] if len(token) > 4 else token


async def require_auth(authorization: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    if not authorization or not authorization.lower().startswith("bearer "):
        logger.warning("Auth failure: Missing or malformed authorization header")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing auth token")
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        logger.warning("Auth failure: Empty token in authorization header")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing auth token")
    user = auth.get_user_by_token(token)
    if not user:
        logger.warning("Auth failure: Invalid token provided (token ends with ...%s)", mask_token(token))
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid auth token")
    return user


def require_admin(x_admin_key: Optional[str]) -> None:
    # Confirmation codes are never exposed while no admin key is configured.
    if not config.ADMIN_KEY or x_admin_key != config.ADMIN_KEY:
        raise HTTPException(status_code=403, detail="Admin key required")


def require_story_access(story_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    story = directory.require_story(story_id)
    access = directory.resolve_access(story, user["id"])
    if access is Access.PASSWORD_REQUIRED:
        raise HTTPException(status_code=403, detail="This story requires a password.")
    if access is not Access.GRANT:
        raise directory.NotAllowed()
    return story


# --- Health & identity ---
@app.get("/health")
async def health_check():
    return {"status": "ok"}


@app.post("/api/auth/signup", response_model=AuthResponse)
async def auth_signup(payload: EmailAuthRequest):
    user = auth.sign_up(payload.email, payload.password)
    return auth_response(user)


@app.post("/api/auth/login", response_model=AuthResponse)
async def auth_login(payload: EmailAuthRequest):
    user = auth.sign_in(payload.email, payload.password)
    return auth_response(user)


@app.post("/api/auth/logout")
async def auth_logout(user: Dict[str, Any] = Depends(require_auth)):
    auth.sign_out(user)
    return {"status": "ok"}


@app.post("/api/auth/confirm", response_model=AuthResponse)
async def auth_confirm(payload: ConfirmRequest):
    user = auth.confirm_email(payload.email, payload.code)
    return auth_response(user)


@app.post("/api/admin/confirmation-code")
async def admin_confirmation_code(
    payload: AdminCodeRequest, x_admin_key: Optional[str] = Header(default=None)
):
    require_admin(x_admin_key)
    code = auth.pending_confirmation_code(payload.email)
    if not code:
        raise HTTPException(status_code=404, detail="No pending confirmation for this e-mail")
    return {"code": code}


@app.get("/api/me")
async def get_me(user: Dict[str, Any] = Depends(require_auth)):
    return auth.public_user(user)


@app.patch("/api/me")
async def update_me(payload: UpdateProfileRequest, user: Dict[str, Any] = Depends(require_auth)):
    return auth.public_user(auth.update_username(user, payload.username))


# --- Themes ---
@app.get("/api/configs")
async def list_configs():
    return {"configs": directory.list_configs()}


@app.get("/api/configs/{config_id}/fields")
async def list_config_fields(config_id: str):
    if not directory.get_config(config_id):
        raise HTTPException(status_code=404, detail="Story config not found")
    return {"fields": directory.get_config_fields(config_id)}


# --- Story directory ---
@app.get("/api/stories")
async def list_stories(user: Dict[str, Any] = Depends(require_auth)):
    return {"stories": [directory.public_story(story) for story in directory.list_stories()]}


@app.post("/api/stories", status_code=201)
async def create_story(payload: CreateStoryRequest, user: Dict[str, Any] = Depends(require_auth)):
    story = directory.create_story(
        user["id"],
        payload.title,
        description=payload.description,
        config_id=payload.config_id,
        is_public=payload.is_public,
        password=payload.password,
    )
    return directory.public_story(story)


@app.get("/api/stories/{story_id}")
async def get_story(story_id: str, user: Dict[str, Any] = Depends(require_auth)):
    return directory.public_story(require_story_access(story_id, user))


@app.post("/api/stories/{story_id}/access")
async def story_access(story_id: str, user: Dict[str, Any] = Depends(require_auth)):
    story = directory.require_story(story_id)
    return {"access": directory.resolve_access(story, user["id"]).value}


@app.post("/api/stories/{story_id}/join")
async def join_story(
    story_id: str, payload: JoinStoryRequest, user: Dict[str, Any] = Depends(require_auth)
):
    story = directory.require_story(story_id)
    access = directory.join_with_password(story, user["id"], payload.password)
    return {"access": access.value}


@app.get("/api/stories/{story_id}/participants")
async def list_participants(story_id: str, user: Dict[str, Any] = Depends(require_auth)):
    story = require_story_access(story_id, user)
    rows = store.select("story_participants", story_id=story["id"])
    return {
        "participants": [
            {"user_id": row["user_id"], "username": auth.display_name(row["user_id"])}
            for row in rows
        ]
    }


@app.post("/api/stories/{story_id}/participants", status_code=201)
async def invite_participant(
    story_id: str, payload: InviteRequest, user: Dict[str, Any] = Depends(require_auth)
):
    story = directory.require_story(story_id)
    row = directory.invite_participant(story, user["id"], payload.user_id)
    return {"user_id": row["user_id"], "story_id": row["story_id"]}


# --- Messages ---
@app.get("/api/stories/{story_id}/messages")
async def list_messages(story_id: str, user: Dict[str, Any] = Depends(require_auth)):
    story = require_story_access(story_id, user)
    return {"messages": [chat.message_view(row) for row in chat.list_messages(story["id"])]}


@app.post("/api/stories/{story_id}/messages", status_code=201)
async def post_message(
    story_id: str, payload: SendMessageRequest, user: Dict[str, Any] = Depends(require_auth)
):
    story = require_story_access(story_id, user)
    content = payload.content
    if not content.strip():
        raise HTTPException(status_code=422, detail="Message cannot be empty.")
    if len(content) > config.MAX_MESSAGE_LENGTH:
        raise HTTPException(
            status_code=422,
            detail=f"Message must be at most {config.MAX_MESSAGE_LENGTH} characters.",
        )
    row = await chat.record_message(story["id"], content, user["id"])
    return chat.message_view(row)


# --- Character sheets ---
@app.get("/api/stories/{story_id}/character-sheet")
async def get_character_sheet(story_id: str, user: Dict[str, Any] = Depends(require_auth)):
    story = require_story_access(story_id, user)
    draft = sheets.load_draft(story, user["id"])
    return {"fields": draft.fields, "field_values": draft.values, "sheet_id": draft.sheet_id}


@app.put("/api/stories/{story_id}/character-sheet")
async def save_character_sheet(
    story_id: str, payload: SaveSheetRequest, user: Dict[str, Any] = Depends(require_auth)
):
    story = require_story_access(story_id, user)
    sheet = sheets.save_sheet(story, user["id"], payload.field_values)
    return {"sheet_id": sheet["id"], "field_values": sheet["field_values"]}


# --- AI endpoints ---
@app.post("/api/narrate")
async def narrate(payload: NarrateRequest, user: Dict[str, Any] = Depends(require_auth)):
    story = directory.require_story(payload.story_id)
    if not directory.is_participant(story, user["id"]):
        logger.warning("User %s is not a participant of story %s", user["id"], story["id"])
        raise HTTPException(status_code=403, detail="You are not a participant of this story.")
    content = await gateway.narrate(
        [turn.model_dump() for turn in payload.messages], chat.narration_prompt(story["id"])
    )
    return {"content": content}


@app.post("/api/character-assistant")
async def character_assistant(
    payload: CharacterAssistantRequest, user: Dict[str, Any] = Depends(require_auth)
):
    if not payload.description or not payload.fields:
        raise HTTPException(status_code=500, detail="Description and fields are required.")
    values = await sheets.suggest_field_values(
        payload.description,
        [field.model_dump() for field in payload.fields],
        payload.system_prompt,
    )
    return {"fieldValues": values}


@app.post("/api/scene-image")
async def scene_image(payload: SceneImageRequest, user: Dict[str, Any] = Depends(require_auth)):
    if not payload.prompt or not payload.prompt.strip():
        raise HTTPException(status_code=400, detail="Prompt is required.")
    image_url = await gateway.generate_image(payload.prompt.strip())
    return {"imageUrl": image_url}


@app.post("/api/dice/roll")
async def roll_dice(payload: RollRequest, user: Dict[str, Any] = Depends(require_auth)):
    try:
        if payload.notation:
            result = dice.roll_dice(payload.notation)
        else:
            result = dice.roll(payload.count, payload.sides, payload.modifier)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return {
        "notation": result.notation,
        "rolls": result.rolls,
        "modifier": result.modifier,
        "total": result.total,
        "summary": dice.format_roll(result),
    }


# --- Live chat ---
async def handle_frame(session: chat.ChatSession, frame: Dict[str, Any], send) -> None:
    kind = frame.get("type")
    if kind == "send":
        await session.send_message(str(frame.get("content") or ""))
    elif kind == "narrate":
        result = await session.invoke_narrator()
        if result.warning:
            await send({"type": "warning", "message": result.warning})
    elif kind == "auto_narrator":
        session.set_auto_narrator(bool(frame.get("enabled")))
    elif kind == "roll":
        try:
            count = int(frame.get("count", 1))
            sides = int(frame.get("sides", 20))
            modifier = int(frame.get("modifier", 0))
        except (TypeError, ValueError):
            await send({"type": "error", "message": "Invalid dice roll."})
            return

        async def on_frame(faces: List[int]) -> None:
            await send({"type": "dice_frame", "sides": sides, "faces": faces})

        try:
            await session.roll_dice(count, sides, modifier, on_frame=on_frame)
        except ValueError as exc:
            await send({"type": "error", "message": str(exc)})
    else:
        await send({"type": "error", "message": f"Unknown frame type: {kind}"})


@app.websocket("/api/stories/{story_id}/live")
async def story_live(websocket: WebSocket, story_id: str, token: Optional[str] = Query(default=None)):
    user = auth.get_user_by_token(token or "")
    if not user:
        logger.warning("Live chat refused: invalid token")
        await websocket.close(code=4401)
        return
    story = store.get("stories", story_id)
    if not story:
        await websocket.close(code=4404)
        return
    if directory.resolve_access(story, user["id"]) is not Access.GRANT:
        logger.warning("Live chat refused for user %s in story %s", user["id"], story_id)
        await websocket.close(code=4403)
        return

    await websocket.accept()
    send_lock = asyncio.Lock()

    async def send(frame: Dict[str, Any]) -> None:
        async with send_lock:
            await websocket.send_json(frame)

    async def forward(kind: str, payload: Dict[str, Any]) -> None:
        if kind == "message":
            await send({"type": "message", "message": payload})
        else:
            await send({"type": kind, **payload})

    session = chat.ChatSession(story_id, user, chat.LocalChatBackend())
    try:
        history = await session.open()
        await send(
            {
                "type": "history",
                "story": directory.public_story(story),
                "messages": [message.as_dict() for message in history],
            }
        )
        await send({"type": "presence", "users": session.present_list()})
        session.add_listener(forward)
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                await send({"type": "error", "message": "Frames must be JSON objects."})
                continue
            if not isinstance(frame, dict):
                await send({"type": "error", "message": "Frames must be JSON objects."})
                continue
            try:
                await handle_frame(session, frame, send)
            except chat.ChatError as exc:
                await send({"type": "error", "message": exc.message})
    except WebSocketDisconnect:
        logger.info("User %s left story %s", user["id"], story_id)
    finally:
        await session.close()
