"""HTTP client for the identity routes, holding the signed-in session.

Errors are reduced to a small set of exceptions whose ``message`` is meant to
be shown to users as-is; backend error text never leaks through.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from . import auth

logger = logging.getLogger("uvicorn.error")

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
USER_UPDATED = "USER_UPDATED"

SessionCallback = Callable[[str, Optional[Dict[str, Any]]], None]


class ClientError(Exception):
    message = "Something went wrong, please try again."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        if message:
            self.message = message


class ValidationFailed(ClientError):
    message = "Please check the e-mail and password you entered."


class InvalidCredentials(ClientError):
    message = "Incorrect e-mail or password."


class EmailAlreadyRegistered(ClientError):
    message = "This e-mail is already registered. Try signing in instead."


class EmailUnconfirmed(ClientError):
    message = "Please confirm your e-mail before signing in."


class RequestFailed(ClientError):
    pass


class SessionState:
    """Observable holder of the current user and token."""

    def __init__(self) -> None:
        self.user: Optional[Dict[str, Any]] = None
        self.token: Optional[str] = None
        self._callbacks: List[SessionCallback] = []
        self.closed = False

    def subscribe(self, callback: SessionCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def set(self, user: Optional[Dict[str, Any]], token: Optional[str]) -> None:
        previous = self.user
        self.user = user
        self.token = token
        if user and not previous:
            event = SIGNED_IN
        elif previous and not user:
            event = SIGNED_OUT
        elif user and previous and user != previous:
            event = USER_UPDATED
        else:
            return
        for callback in list(self._callbacks):
            callback(event, user)

    def close(self) -> None:
        self._callbacks = []
        self.closed = True


class SessionGateway:
    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 15.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.transport = transport
        self.timeout = timeout
        self.state = SessionState()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url, transport=self.transport, timeout=self.timeout
        )

    def _auth_headers(self) -> Dict[str, str]:
        if not self.state.token:
            return {}
        return {"Authorization": f"Bearer {self.state.token}"}

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("Request to %s failed: %s", path, exc)
            raise RequestFailed() from exc

    @staticmethod
    def _validate(email: str, password: str) -> str:
        email = auth.normalize_email(email or "")
        problem = auth.validate_email(email) or auth.validate_password(password)
        if problem:
            raise ValidationFailed(problem)
        return email

    @staticmethod
    def _raise_for_auth_status(response: httpx.Response) -> None:
        if response.is_success:
            return
        if response.status_code == 401:
            raise InvalidCredentials()
        if response.status_code == 403:
            raise EmailUnconfirmed()
        if response.status_code == 409:
            raise EmailAlreadyRegistered()
        logger.warning("Auth request failed with status %s", response.status_code)
        raise RequestFailed()

    @staticmethod
    def _user_from(payload: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": payload.get("id"),
            "email": payload.get("email"),
            "username": payload.get("username"),
            "confirmed": bool(payload.get("confirmed")),
        }

    def current_user(self) -> Optional[Dict[str, Any]]:
        return self.state.user

    def on_session_change(self, callback: SessionCallback) -> Callable[[], None]:
        return self.state.subscribe(callback)

    async def sign_in(self, email: str, password: str) -> Dict[str, Any]:
        email = self._validate(email, password)
        response = await self._request(
            "POST", "/api/auth/login", json={"email": email, "password": password}
        )
        self._raise_for_auth_status(response)
        payload = response.json()
        user = self._user_from(payload)
        self.state.set(user, payload.get("token"))
        return user

    async def sign_up(self, email: str, password: str) -> Dict[str, Any]:
        """Register an account.

        When the server asks for e-mail confirmation no token comes back and
        the session stays signed out; ``confirmation_required`` is set on the
        returned dict.
        """
        email = self._validate(email, password)
        response = await self._request(
            "POST", "/api/auth/signup", json={"email": email, "password": password}
        )
        self._raise_for_auth_status(response)
        payload = response.json()
        user = self._user_from(payload)
        if payload.get("token"):
            self.state.set(user, payload["token"])
        return {**user, "confirmation_required": bool(payload.get("confirmation_required"))}

    async def sign_out(self) -> None:
        if self.state.token:
            try:
                response = await self._request(
                    "POST", "/api/auth/logout", headers=self._auth_headers()
                )
                if not response.is_success:
                    logger.warning("Sign-out returned status %s", response.status_code)
            except RequestFailed:
                logger.warning("Sign-out request failed; clearing the local session anyway")
        self.state.set(None, None)

    async def refresh(self) -> Optional[Dict[str, Any]]:
        """Re-check the held token; an expired or revoked one signs the session out."""
        if not self.state.token:
            return None
        response = await self._request("GET", "/api/me", headers=self._auth_headers())
        if response.status_code == 401:
            self.state.set(None, None)
            return None
        if not response.is_success:
            raise RequestFailed()
        user = self._user_from(response.json())
        self.state.set(user, self.state.token)
        return user

    def close(self) -> None:
        self.state.close()
