import logging
import re
import uuid
from typing import Any, Dict, Optional

import bcrypt

from . import config, store

logger = logging.getLogger("uvicorn.error")

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
BCRYPT_MAX_BYTES = 72


class AuthError(Exception):
    """Base class for identity failures; ``message`` is safe to show users."""

    status_code = 400
    message = "Something went wrong, please try again."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        if message:
            self.message = message


class InvalidInput(AuthError):
    status_code = 422
    message = "Invalid e-mail or password format."


class InvalidCredentials(AuthError):
    status_code = 401
    message = "Invalid e-mail or password."


class EmailAlreadyRegistered(AuthError):
    status_code = 409
    message = "This e-mail is already registered."


class EmailUnconfirmed(AuthError):
    status_code = 403
    message = "Please confirm your e-mail before signing in."


class InvalidConfirmationCode(AuthError):
    status_code = 401
    message = "Invalid confirmation code."


class UsernameTaken(AuthError):
    status_code = 409
    message = "This username is already taken."


def _password_bytes(password: Any) -> bytes:
    if not isinstance(password, bytes):
        password = password.encode("utf-8")
    # bcrypt only reads the first 72 bytes
    return password[:BCRYPT_MAX_BYTES]


def verify_password(plain_password, hashed_password) -> bool:
    if not isinstance(hashed_password, bytes):
        hashed_password = hashed_password.encode("utf-8")
    return bcrypt.checkpw(_password_bytes(plain_password), hashed_password)


def get_password_hash(password) -> str:
    return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt()).decode("utf-8")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def validate_email(email: str) -> Optional[str]:
    if not email or len(email) > config.MAX_EMAIL_LENGTH:
        return f"E-mail must be between 1 and {config.MAX_EMAIL_LENGTH} characters."
    if not EMAIL_PATTERN.match(email):
        return "E-mail address is not valid."
    return None


def validate_password(password: str) -> Optional[str]:
    if not (config.MIN_PASSWORD_LENGTH <= len(password or "") <= config.MAX_PASSWORD_LENGTH):
        return (
            f"Password must be between {config.MIN_PASSWORD_LENGTH} "
            f"and {config.MAX_PASSWORD_LENGTH} characters."
        )
    return None


def generate_code(prefix: str = "", length: int = 8) -> str:
    raw = uuid.uuid4().hex.upper()
    code = raw[:length]
    if prefix:
        return f"{prefix}-{code}"
    return code


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": user["id"],
        "email": user.get("email"),
        "username": user.get("username"),
        "confirmed": bool(user.get("confirmed")),
    }


def find_user_by_email(email: str) -> Optional[Dict[str, Any]]:
    return store.find_one("users", email=normalize_email(email))


def get_user_by_token(token: str) -> Optional[Dict[str, Any]]:
    if not token:
        return None
    return store.find_one("users", token=token)


def unique_username(base: str) -> str:
    base = re.sub(r"[^\w.-]", "", base)[: config.MAX_USERNAME_LENGTH - 4] or "player"
    taken = {(row.get("username") or "").lower() for row in store.tables["users"].values()}
    candidate = base
    suffix = 1
    while candidate.lower() in taken:
        suffix += 1
        candidate = f"{base}{suffix}"
    return candidate


def _check_credentials_format(email: str, password: str) -> None:
    problem = validate_email(email) or validate_password(password)
    if problem:
        raise InvalidInput(problem)


def sign_up(email: str, password: str) -> Dict[str, Any]:
    email = normalize_email(email)
    _check_credentials_format(email, password)
    if find_user_by_email(email):
        raise EmailAlreadyRegistered()
    confirmed = not config.REQUIRE_EMAIL_CONFIRMATION
    user = store.insert(
        "users",
        {
            "email": email,
            "username": unique_username(email.split("@", 1)[0]),
            "hashed_password": get_password_hash(password),
            "token": str(uuid.uuid4()) if confirmed else None,
            "confirmed": confirmed,
            "confirmation_code": None if confirmed else generate_code("CONF"),
        },
    )
    if not confirmed:
        logger.info("Confirmation code issued for user %s", user["id"])
    return user


def confirm_email(email: str, code: str) -> Dict[str, Any]:
    user = find_user_by_email(email)
    expected = user.get("confirmation_code") if user else None
    if not expected or expected != code.strip().upper():
        raise InvalidConfirmationCode()
    user["confirmed"] = True
    user["confirmation_code"] = None
    user["token"] = str(uuid.uuid4())
    store.persist("users")
    return user


def pending_confirmation_code(email: str) -> Optional[str]:
    user = find_user_by_email(email)
    if not user:
        return None
    return user.get("confirmation_code")


def sign_in(email: str, password: str) -> Dict[str, Any]:
    email = normalize_email(email)
    _check_credentials_format(email, password)
    user = find_user_by_email(email)
    if not user or not user.get("hashed_password"):
        raise InvalidCredentials()
    if not verify_password(password, user["hashed_password"]):
        raise InvalidCredentials()
    if not user.get("confirmed"):
        raise EmailUnconfirmed()
    # Create new session token on login
    user["token"] = str(uuid.uuid4())
    store.persist("users")
    return user


def sign_out(user: Dict[str, Any]) -> None:
    user["token"] = None
    store.persist("users")


def update_username(user: Dict[str, Any], username: str) -> Dict[str, Any]:
    username = (username or "").strip()
    if not username or len(username) > config.MAX_USERNAME_LENGTH:
        raise InvalidInput(
            f"Username must be between 1 and {config.MAX_USERNAME_LENGTH} characters."
        )
    for row in store.tables["users"].values():
        if row["id"] != user["id"] and (row.get("username") or "").lower() == username.lower():
            raise UsernameTaken()
    user["username"] = username
    store.persist("users")
    return user


def display_name(user_id: Optional[str]) -> Optional[str]:
    if not user_id:
        return None
    user = store.get("users", user_id)
    if not user:
        return None
    return user.get("username")
