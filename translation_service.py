"""Translation utilities for the TranslateSutra application."""

from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError


DEFAULT_BACKEND_URL = "http://localhost:3000"
DEFAULT_LIBRETRANSLATE_URL = "http://localhost:5000"
MAX_TEXT_LENGTH = 5000
KEYRING_SERVICE = "TranslateSutra"

FALLBACK_LANGUAGES = [
    {"code": "auto", "name": "Auto-detect"},
    {"code": "en", "name": "English", "nativeName": "English"},
    {"code": "es", "name": "Spanish", "nativeName": "Español"},
    {"code": "fr", "name": "French", "nativeName": "Français"},
    {"code": "de", "name": "German", "nativeName": "Deutsch"},
    {"code": "it", "name": "Italian", "nativeName": "Italiano"},
    {"code": "pt", "name": "Portuguese", "nativeName": "Português"},
    {"code": "ru", "name": "Russian", "nativeName": "Русский"},
    {"code": "ja", "name": "Japanese", "nativeName": "日本語"},
    {"code": "ko", "name": "Korean", "nativeName": "한국어"},
    {"code": "zh", "name": "Chinese (Simplified)", "nativeName": "中文 (简体)"},
    {"code": "zh-tw", "name": "Chinese (Traditional)", "nativeName": "中文 (繁體)"},
    {"code": "ar", "name": "Arabic", "nativeName": "العربية"},
    {"code": "hi", "name": "Hindi", "nativeName": "हिन्दी"},
    {"code": "th", "name": "Thai", "nativeName": "ไทย"},
    {"code": "vi", "name": "Vietnamese", "nativeName": "Tiếng Việt"},
    {"code": "nl", "name": "Dutch", "nativeName": "Nederlands"},
    {"code": "sv", "name": "Swedish", "nativeName": "Svenska"},
    {"code": "da", "name": "Danish", "nativeName": "Dansk"},
    {"code": "no", "name": "Norwegian", "nativeName": "Norsk"},
    {"code": "pl", "name": "Polish", "nativeName": "Polski"},
    {"code": "tr", "name": "Turkish", "nativeName": "Türkçe"},
]

logger = logging.getLogger("translatesutra.translation")


class TranslationError(RuntimeError):
    """Raised when the translation service cannot complete a request."""


class HttpStatusError(TranslationError):
    """The server answered with a non-success HTTP status."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status


class AuthError(TranslationError):
    """Raised when login or registration is refused."""


@dataclass
class TranslationResult:
    translated_text: str
    original_text: str
    from_language: str
    to_language: str
    service: str
    confidence: Optional[float] = None

    @property
    def text(self) -> str:
        return self.translated_text

    @property
    def detected_source(self) -> Optional[str]:
        return self.from_language


@dataclass
class AuthTokens:
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None


class KeyringTokenStore:
    """Keep the backend access and refresh tokens in the OS keyring."""

    def __init__(self, service_name: str = KEYRING_SERVICE, keyring_module=keyring) -> None:
        self._service_name = service_name
        self._keyring = keyring_module

    def load(self) -> AuthTokens:
        try:
            return AuthTokens(
                access_token=self._keyring.get_password(self._service_name, "accessToken"),
                refresh_token=self._keyring.get_password(self._service_name, "refreshToken"),
            )
        except KeyringError as exc:
            logger.error("Failed to get auth tokens: %s", exc)
            return AuthTokens()

    def save(self, tokens: AuthTokens) -> bool:
        try:
            self._keyring.set_password(self._service_name, "accessToken", tokens.access_token or "")
            self._keyring.set_password(self._service_name, "refreshToken", tokens.refresh_token or "")
        except KeyringError as exc:
            logger.error("Failed to save auth tokens: %s", exc)
            return False
        return True

    def clear(self) -> bool:
        for name in ("accessToken", "refreshToken"):
            try:
                self._keyring.delete_password(self._service_name, name)
            except PasswordDeleteError:
                pass
            except KeyringError as exc:
                logger.error("Failed to clear auth tokens: %s", exc)
                return False
        return True


def _request_json(
    url: str,
    *,
    method: str = "GET",
    payload: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: float,
    service: str,
) -> Any:
    request_headers = {"Content-Type": "application/json", "User-Agent": "TranslateSutra"}
    if headers:
        request_headers.update(headers)
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    request = urllib.request.Request(url, data=data, headers=request_headers, method=method)

    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            body = response.read()
    except urllib.error.HTTPError as exc:
        raise HttpStatusError(exc.code, _error_message(exc, service)) from exc
    except (socket.timeout, TimeoutError) as exc:
        raise TranslationError(f"Request to {service} timed out") from exc
    except urllib.error.URLError as exc:
        if isinstance(exc.reason, (socket.timeout, TimeoutError)):
            raise TranslationError(f"Request to {service} timed out") from exc
        raise TranslationError(f"Network error while contacting {service}") from exc

    if not body:
        return {}
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise TranslationError(f"Invalid response from {service}") from exc


def _error_message(exc: urllib.error.HTTPError, service: str) -> str:
    try:
        data = json.loads(exc.read().decode("utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, AttributeError):
        data = None
    if isinstance(data, dict) and isinstance(data.get("message"), str):
        return data["message"]
    return f"{service} responded with HTTP {exc.code}"


class BackendClient:
    """Client for the TranslateSutra REST backend with bearer authentication."""

    def __init__(
        self,
        base_url: str = DEFAULT_BACKEND_URL,
        token_store: Optional[KeyringTokenStore] = None,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token_store = token_store if token_store is not None else KeyringTokenStore()
        self.timeout = timeout

    def translate(self, text: str, src: Optional[str], dest: str) -> TranslationResult:
        src = src or "auto"
        try:
            result = self._authenticated_request(
                "/translate", method="POST", payload={"text": text, "fromLang": src, "toLang": dest}
            )
        except TranslationError as exc:
            logger.error("Backend translation failed: %s", exc)
            raise
        if not isinstance(result, dict) or not isinstance(result.get("translatedText"), str):
            raise TranslationError("Unexpected translation response structure")
        return TranslationResult(
            translated_text=result["translatedText"],
            original_text=text,
            from_language=result.get("fromLanguage") or src,
            to_language=result.get("toLanguage") or dest,
            service=result.get("service") or "backend",
            confidence=result.get("confidence"),
        )

    def login(self, email: str, password: str) -> Dict[str, Any]:
        return self._authenticate("/auth/login", {"email": email, "password": password}, "Login failed")

    def register(self, email: str, password: str, display_name: str) -> Dict[str, Any]:
        payload = {"email": email, "password": password, "displayName": display_name}
        return self._authenticate("/auth/register", payload, "Registration failed")

    def logout(self) -> None:
        tokens = self.token_store.load()
        try:
            if tokens.refresh_token:
                self._post("/auth/logout", {"refreshToken": tokens.refresh_token}, timeout=5.0)
        except TranslationError as exc:
            logger.error("Logout API call failed: %s", exc)
        finally:
            self.token_store.clear()

    def current_user(self) -> Dict[str, Any]:
        return self._authenticated_request("/auth/me")

    def _authenticate(self, endpoint: str, payload: Dict[str, Any], failure: str) -> Dict[str, Any]:
        try:
            data = self._post(endpoint, payload)
        except HttpStatusError as exc:
            raise AuthError(str(exc)) from exc
        except TranslationError as exc:
            raise AuthError(failure) from exc
        if not isinstance(data, dict) or "accessToken" not in data:
            raise AuthError(failure)
        self.token_store.save(AuthTokens(data.get("accessToken"), data.get("refreshToken")))
        return {"user": data.get("user"), "success": True}

    def _post(self, endpoint: str, payload: Dict[str, Any], *, timeout: Optional[float] = None) -> Any:
        return _request_json(
            f"{self.base_url}{endpoint}",
            method="POST",
            payload=payload,
            timeout=self.timeout if timeout is None else timeout,
            service="backend",
        )

    def _authenticated_request(
        self, endpoint: str, *, method: str = "GET", payload: Optional[Dict[str, Any]] = None
    ) -> Any:
        tokens = self.token_store.load()
        try:
            return self._send(endpoint, method, payload, tokens.access_token)
        except HttpStatusError as exc:
            if exc.status != 401 or not self._refresh():
                raise
        return self._send(endpoint, method, payload, self.token_store.load().access_token)

    def _send(
        self, endpoint: str, method: str, payload: Optional[Dict[str, Any]], access_token: Optional[str]
    ) -> Any:
        headers = {}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return _request_json(
            f"{self.base_url}{endpoint}",
            method=method,
            payload=payload,
            headers=headers,
            timeout=self.timeout,
            service="backend",
        )

    def _refresh(self) -> bool:
        """Exchange the refresh token for a new token pair."""

        refresh_token = self.token_store.load().refresh_token
        if not refresh_token:
            return False
        try:
            data = self._post("/auth/refresh", {"refreshToken": refresh_token})
            access_token = data["accessToken"]
        except (TranslationError, KeyError, TypeError) as exc:
            logger.error("Failed to refresh token: %s", exc)
            self.token_store.clear()
            return False
        self.token_store.save(AuthTokens(access_token, data.get("refreshToken") or refresh_token))
        return True


class LibreTranslateClient:
    """Client for a LibreTranslate server, used when the backend is unavailable."""

    def __init__(self, base_url: str = DEFAULT_LIBRETRANSLATE_URL, timeout: float = 15.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def translate(self, text: str, src: Optional[str], dest: str) -> TranslationResult:
        src = src or "auto"
        data = _request_json(
            f"{self.base_url}/translate",
            method="POST",
            payload={"q": text, "source": src, "target": dest, "format": "text"},
            timeout=self.timeout,
            service="LibreTranslate",
        )
        if not isinstance(data, dict) or not isinstance(data.get("translatedText"), str):
            raise TranslationError("Unexpected translation response structure")
        detected = data.get("detectedLanguage") or {}
        return TranslationResult(
            translated_text=data["translatedText"],
            original_text=text,
            from_language=detected.get("language") or src,
            to_language=dest,
            service="libretranslate",
            confidence=detected.get("confidence"),
        )

    def languages(self) -> List[Dict[str, str]]:
        """Return ``{"code", "name"}`` entries offered by the server.

        Falls back to :data:`FALLBACK_LANGUAGES` when the server cannot be
        reached or answers with something that is not a language list.
        """

        try:
            data = _request_json(
                f"{self.base_url}/languages", timeout=10.0, service="LibreTranslate"
            )
        except TranslationError as exc:
            logger.error("Failed to get available languages: %s", exc)
            return list(FALLBACK_LANGUAGES)
        if not isinstance(data, list):
            return list(FALLBACK_LANGUAGES)
        languages = [
            {"code": entry["code"], "name": entry["name"]}
            for entry in data
            if isinstance(entry, dict)
            and isinstance(entry.get("code"), str)
            and isinstance(entry.get("name"), str)
        ]
        return languages or list(FALLBACK_LANGUAGES)


class TranslationService:
    """Translate through the backend when signed in, else LibreTranslate."""

    def __init__(
        self,
        backend: Optional[BackendClient] = None,
        libretranslate: Optional[LibreTranslateClient] = None,
    ) -> None:
        self.backend = backend if backend is not None else BackendClient()
        self.libretranslate = libretranslate if libretranslate is not None else LibreTranslateClient()

    def translate(self, text: str, src: Optional[str] = "auto", dest: str = "en") -> TranslationResult:
        if not text or not text.strip():
            raise TranslationError("Text is required for translation")
        trimmed = text.strip()[:MAX_TEXT_LENGTH]

        if self.backend.token_store.load().access_token:
            try:
                return self.backend.translate(trimmed, src, dest)
            except TranslationError as exc:
                logger.warning("Backend translation failed, trying LibreTranslate fallback: %s", exc)

        try:
            return self.libretranslate.translate(trimmed, src, dest)
        except TranslationError as exc:
            logger.error("All translation services failed: %s", exc)
            raise TranslationError(
                "Translation service unavailable. Please check your internet connection and try again."
            ) from exc

    def languages(self) -> List[Dict[str, str]]:
        return self.libretranslate.languages()
