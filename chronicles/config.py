import os

# --- App Configuration ---
DATA_DIR = os.getenv("DATA_DIR", os.path.join(os.getcwd(), "data"))
STORY_CONFIGS_PATH = os.getenv(
    "STORY_CONFIGS_PATH", os.path.join(os.path.dirname(__file__), "story_configs.json")
)

LLM_GATEWAY_URL = os.getenv("LLM_GATEWAY_URL", "https://openrouter.ai/api/v1")
LLM_API_KEY = os.getenv("LLM_API_KEY")
NARRATOR_MODEL = os.getenv("NARRATOR_MODEL", "google/gemini-2.5-flash")
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "google/gemini-2.5-flash-image")
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))
ASSISTANT_TEMPERATURE = float(os.getenv("ASSISTANT_TEMPERATURE", "0.8"))

CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
ADMIN_KEY = os.getenv("ADMIN_KEY")
REQUIRE_EMAIL_CONFIRMATION = os.getenv("REQUIRE_EMAIL_CONFIRMATION", "false").lower() in (
    "1",
    "true",
    "yes",
)

NARRATION_WINDOW = int(os.getenv("NARRATION_WINDOW", "10"))
AUTO_NARRATOR_DELAY_SECONDS = float(os.getenv("AUTO_NARRATOR_DELAY_SECONDS", "2"))
DICE_REVEAL_DELAY_SECONDS = float(os.getenv("DICE_REVEAL_DELAY_SECONDS", "1.5"))
DICE_ANIMATION_FRAMES = int(os.getenv("DICE_ANIMATION_FRAMES", "8"))

MAX_EMAIL_LENGTH = 255
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 100
MAX_USERNAME_LENGTH = 50
MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 2000
MAX_ROOM_PASSWORD_LENGTH = 100
MAX_MESSAGE_LENGTH = 5000

DEFAULT_NARRATOR_PROMPT = (
    "You are an experienced and creative role-playing game narrator. "
    "You continue stories in an immersive, captivating way. "
    "You adapt your style to the context of the story and to the players' actions. "
    "You create interesting twists and vivid descriptions. "
    "You stay consistent with the story so far.\n\n"
    "Answer concisely (2-4 sentences at most) so the players can react."
)
DEFAULT_THEME = "Generic fantasy"
