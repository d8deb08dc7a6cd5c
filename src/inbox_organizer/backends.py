import base64
import json
import logging
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

from .ai_log import append_ai_log, build_log_entry
from .util import normalize_store_path, sanitize_filename, strip_code_fences

logger = logging.getLogger(__name__)

FALLBACK_FOLDER = "/Unprocessed Files"

GEMINI_API_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
OPENAI_API_URL = "https://api.openai.com/v1/chat/completions"

_TEXT_MIME_PREFIXES = ("text/",)
_TEXT_MIME_TYPES = {"application/json", "application/xml", "application/csv"}
_OLLAMA_MAX_TEXT_CHARS = 20000


class BackendError(RuntimeError):
    pass


@dataclass(frozen=True)
class FileTask:
    id: str
    name: str
    size_bytes: int
    content: bytes
    mime_type: str


@dataclass(frozen=True)
class ClassificationResult:
    new_filename: str
    destination_folder: str


def fallback_result(original_name: str) -> ClassificationResult:
    return ClassificationResult(new_filename=original_name, destination_folder=FALLBACK_FOLDER)


def build_prompt(original_name: str, mime_type: str, folder_paths: Iterable[str]) -> str:
    folder_list = json.dumps(list(folder_paths), ensure_ascii=False)
    return (
        f"Analyze the content of the attached file (MIME type: {mime_type}). "
        f'The original filename is "{original_name}".\n\n'
        "TASKS:\n"
        "1. Suggest a concise, human-friendly filename. "
        "• Include a date only if the file itself clearly contains a meaningful date "
        "that will help users identify it. "
        "• If no useful date is present or it adds no value, omit the date. "
        "• Never invent a date.\n"
        "2. From the list of folders, pick the single most appropriate destination path.\n\n"
        f"Available Folders: {folder_list}\n\n"
        'Respond ONLY with a minified JSON object using exact keys "newFilename" '
        'and "destinationFolder".'
    )


def parse_classification(
    text: Optional[str], original_name: str
) -> Tuple[ClassificationResult, bool]:
    """Parse the model's reply; returns the result and whether the fallback was used."""
    if not text:
        logger.warning("Empty classification reply for %s; using fallback.", original_name)
        return fallback_result(original_name), True
    cleaned = strip_code_fences(text)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        parsed = None
    if not isinstance(parsed, dict):
        logger.warning(
            "Could not parse classification reply for %s: %s", original_name, cleaned[:200]
        )
        return fallback_result(original_name), True
    new_filename = parsed.get("newFilename")
    destination = parsed.get("destinationFolder")
    if not isinstance(new_filename, str) or not isinstance(destination, str):
        logger.warning(
            "Missing required fields in classification reply for %s: %s",
            original_name,
            cleaned[:100],
        )
        return fallback_result(original_name), True
    new_filename = sanitize_filename(new_filename)
    destination = destination.strip()
    if not new_filename or not destination:
        logger.warning("Blank fields in classification reply for %s.", original_name)
        return fallback_result(original_name), True
    return (
        ClassificationResult(
            new_filename=new_filename,
            destination_folder=normalize_store_path(destination),
        ),
        False,
    )


def _is_text_mime(mime_type: str) -> bool:
    return mime_type.startswith(_TEXT_MIME_PREFIXES) or mime_type in _TEXT_MIME_TYPES


class HttpBackend:
    platform = "http"
    requires_api_key = True

    def __init__(
        self,
        *,
        model: str,
        api_key: Optional[str] = None,
        timeout: float = 120,
        log_path: Optional[Path] = None,
    ) -> None:
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self.log_path = log_path

    def build_request(self, prompt: str, task: FileTask) -> Tuple[str, Dict[str, Any], Dict[str, str]]:
        raise NotImplementedError

    def extract_text(self, body: Dict[str, Any]) -> Optional[str]:
        raise NotImplementedError

    def call(self, prompt: str, task: FileTask) -> str:
        """POST the request; returns the response body or raises BackendError."""
        url, payload, headers = self.build_request(prompt, task)
        data = json.dumps(payload).encode("utf-8")
        req = urllib.request.Request(
            url,
            data=data,
            headers={"Content-Type": "application/json", **headers},
            method="POST",
        )
        start = time.perf_counter()
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            detail = _read_error_body(exc)
            logger.error("API error response (%s): %s...", exc.code, detail[:200])
            self._log_interaction(prompt, task, "", start, f"HTTP{exc.code}")
            raise BackendError(f"API call failed with status {exc.code}") from exc
        except (urllib.error.URLError, OSError) as exc:
            self._log_interaction(prompt, task, "", start, type(exc).__name__)
            raise BackendError(f"{self.platform} request failed: {exc}") from exc
        logger.debug("Response snippet: %s...", raw[:100])
        self._log_interaction(prompt, task, raw, start, None)
        return raw

    def extract_reply(self, raw: str) -> Optional[str]:
        """Pull the model's text out of the platform envelope, or None if malformed."""
        try:
            body = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("%s returned invalid JSON: %s...", self.platform, raw[:200])
            return None
        if not isinstance(body, dict):
            return None
        try:
            text = self.extract_text(body)
        except (KeyError, IndexError, TypeError):
            text = None
        if not text:
            logger.warning(
                "Invalid response structure from %s: %s...", self.platform, json.dumps(body)[:200]
            )
            return None
        return text

    def classify(
        self, task: FileTask, folder_paths: Iterable[str]
    ) -> Tuple[ClassificationResult, bool]:
        prompt = build_prompt(task.name, task.mime_type, folder_paths)
        raw = self.call(prompt, task)
        return parse_classification(self.extract_reply(raw), task.name)

    def _log_interaction(
        self,
        prompt: str,
        task: FileTask,
        response_text: str,
        start: float,
        error_type: Optional[str],
    ) -> None:
        if not self.log_path:
            return
        duration_ms = int((time.perf_counter() - start) * 1000)
        entry = build_log_entry(
            platform=self.platform,
            model=self.model,
            prompt_chars=len(prompt),
            content_bytes=len(task.content),
            response_chars=len(response_text),
            duration_ms=duration_ms,
            success=error_type is None,
            error_type=error_type,
            context={
                "operation": "classify",
                "file_id": task.id,
                "mime_type": task.mime_type,
                "size_bytes": task.size_bytes,
            },
        )
        append_ai_log(self.log_path, entry)


class GeminiBackend(HttpBackend):
    platform = "gemini"

    def build_request(self, prompt: str, task: FileTask) -> Tuple[str, Dict[str, Any], Dict[str, str]]:
        payload = {
            "contents": [
                {
                    "parts": [
                        {"text": prompt},
                        {
                            "inline_data": {
                                "mime_type": task.mime_type,
                                "data": base64.b64encode(task.content).decode("ascii"),
                            }
                        },
                    ]
                }
            ]
        }
        headers = {"x-goog-api-key": self.api_key or ""}
        return GEMINI_API_URL.format(model=self.model), payload, headers

    def extract_text(self, body: Dict[str, Any]) -> Optional[str]:
        return body["candidates"][0]["content"]["parts"][0]["text"]


class OpenAIBackend(HttpBackend):
    platform = "openai"

    def build_request(self, prompt: str, task: FileTask) -> Tuple[str, Dict[str, Any], Dict[str, str]]:
        encoded = base64.b64encode(task.content).decode("ascii")
        payload = {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": f"{prompt}\n\n[BASE64_ENCODED_FILE_CONTENT]\n{encoded}",
                }
            ],
        }
        headers = {"Authorization": f"Bearer {self.api_key or ''}"}
        return OPENAI_API_URL, payload, headers

    def extract_text(self, body: Dict[str, Any]) -> Optional[str]:
        return body["choices"][0]["message"]["content"]


class OllamaBackend(HttpBackend):
    platform = "ollama"
    requires_api_key = False

    def __init__(self, base_url: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.base_url = base_url.rstrip("/")

    def build_request(self, prompt: str, task: FileTask) -> Tuple[str, Dict[str, Any], Dict[str, str]]:
        payload: Dict[str, Any] = {"model": self.model, "stream": False, "format": "json"}
        if task.mime_type.startswith("image/"):
            payload["prompt"] = prompt
            payload["images"] = [base64.b64encode(task.content).decode("ascii")]
        elif _is_text_mime(task.mime_type):
            text = task.content.decode("utf-8", errors="replace")[:_OLLAMA_MAX_TEXT_CHARS]
            payload["prompt"] = f"{prompt}\n\n[FILE_CONTENT]\n{text}"
        else:
            encoded = base64.b64encode(task.content).decode("ascii")
            payload["prompt"] = f"{prompt}\n\n[BASE64_ENCODED_FILE_CONTENT]\n{encoded}"
        return f"{self.base_url}/api/generate", payload, {}

    def extract_text(self, body: Dict[str, Any]) -> Optional[str]:
        return body["response"]


def create_backend(
    platform: str,
    *,
    model: str,
    api_key: Optional[str] = None,
    ollama_base_url: str = "http://localhost:11434",
    timeout: float = 120,
    log_path: Optional[Path] = None,
) -> HttpBackend:
    if platform == "gemini":
        return GeminiBackend(model=model, api_key=api_key, timeout=timeout, log_path=log_path)
    if platform == "openai":
        return OpenAIBackend(model=model, api_key=api_key, timeout=timeout, log_path=log_path)
    if platform == "ollama":
        return OllamaBackend(
            ollama_base_url, model=model, api_key=api_key, timeout=timeout, log_path=log_path
        )
    raise BackendError(f"Unsupported AI platform: {platform}")


def _read_error_body(exc: urllib.error.HTTPError) -> str:
    try:
        return exc.read().decode("utf-8", errors="replace")
    except OSError:
        return ""
