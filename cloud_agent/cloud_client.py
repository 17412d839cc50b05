#!/usr/bin/env python3
from __future__ import annotations
import os, json, time, re, logging
from typing import Any, Dict, List, Optional, Sequence, Protocol

import openai

from config import GEMINI_OPENAI_BASE_URL

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "termpilot"
KEYRING_USER = "api_key"
KEY_FILE = "~/.config/termpilot/api_key"

ROLE_USER = "user"
ROLE_MODEL = "model"


class ModelService(Protocol):
    """Anything that turns prior turns plus a new input into generated text.

    Implementations report transport and format problems as empty text, not
    as exceptions.
    """

    def generate(self, turns: Sequence[Any], new_input: str) -> str: ...


# ---- API key -----------------------------------------------------------------
def _load_api_key(prefer_keyring: bool = True) -> str:
    """
    Load the model API key with priority:
    1. Environment variable TERMPILOT_API_KEY
    2. Environment variable GEMINI_API_KEY
    3. System keyring (if available and prefer_keyring)
    4. Config file (~/.config/termpilot/api_key)

    Raises RuntimeError if no key found.
    """
    # 1./2. Environment variables
    for var in ("TERMPILOT_API_KEY", "GEMINI_API_KEY"):
        key = os.getenv(var, "").strip()
        if key:
            logger.info(f"Using API key from environment variable {var}")
            return key

    # 3. System keyring
    if prefer_keyring:
        try:
            import keyring
            key = keyring.get_password(KEYRING_SERVICE, KEYRING_USER) or ""
            if key:
                logger.info("Using API key from system keyring")
                return key
        except Exception as e:
            logger.warning(f"Failed to access keyring: {e}")

    # 4. Config file
    cfg_path = os.path.expanduser(KEY_FILE)
    if os.path.isfile(cfg_path):
        try:
            with open(cfg_path, "r", encoding="utf-8") as f:
                key = f.read().strip()
            if key:
                logger.info(f"Using API key from config file: {cfg_path}")
                return key
        except OSError as e:
            logger.warning(f"Failed to read config file {cfg_path}: {e}")

    raise RuntimeError(
        "No model API key found. Set it using one of these methods:\n"
        "1. APIKey: line in the stage's section of the model config\n"
        "2. Environment variable: export TERMPILOT_API_KEY='your-key-here'\n"
        "3. System keyring: /set-key in the terminal, or keyring.set_password('termpilot','api_key','your-key')\n"
        f"4. Config file: echo 'your-key-here' > {KEY_FILE}\n"
    )


def store_api_key(key: str) -> None:
    """Save *key* to the system keyring."""
    import keyring
    keyring.set_password(KEYRING_SERVICE, KEYRING_USER, key)


# ---- Fence stripping + JSON extraction --------------------------------------
_FENCE_OPEN = re.compile(r"```json", re.IGNORECASE)


def strip_fences(raw: str) -> str:
    """Drop markdown code-fence markers and surrounding whitespace."""
    return _FENCE_OPEN.sub("", raw or "").replace("```", "").strip()


def extract_json(raw: str) -> Optional[str]:
    """Return the first complete JSON object/array in *raw*, or None.

    Anything before the first ``{``/``[`` and after the decoded value is dropped.
    """
    text = strip_fences(raw)
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if not starts:
        return None
    candidate = text[min(starts):]
    try:
        _value, end = json.JSONDecoder().raw_decode(candidate)
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse JSON candidate: {e}")
        return None
    return candidate[:end]


# ---- Chat call ---------------------------------------------------------------
class OpenAIModelService:
    """Model service backed by any OpenAI-compatible chat endpoint.

    Defaults to Gemini's OpenAI-compatible API. The client is built lazily so
    that a missing key only surfaces (as an empty reply) when a stage talks.
    """

    def __init__(
        self,
        model: str,
        *,
        api_key: str = "",
        base_url: Optional[str] = GEMINI_OPENAI_BASE_URL,
        temperature: float = 1.0,
        timeout: Optional[float] = 120.0,
        client: Any = None,
        prefer_keyring: bool = True,
    ):
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.temperature = temperature
        self.timeout = timeout
        self._client = client
        self.prefer_keyring = prefer_keyring

    def _get_client(self):
        if self._client is None:
            self._client = openai.OpenAI(
                api_key=self.api_key or _load_api_key(self.prefer_keyring),
                base_url=self.base_url or None,
                timeout=self.timeout,
            )
        return self._client

    @staticmethod
    def build_messages(turns: Sequence[Any], new_input: str) -> List[Dict[str, str]]:
        messages = [
            {"role": "assistant" if t.role == ROLE_MODEL else "user", "content": t.content}
            for t in turns
        ]
        messages.append({"role": "user", "content": new_input})
        return messages

    def generate(self, turns: Sequence[Any], new_input: str) -> str:
        logger.info(f"Sending prompt to model {self.model}")
        t0 = time.time()
        try:
            resp = self._get_client().chat.completions.create(
                model=self.model,
                messages=self.build_messages(turns, new_input),
                temperature=self.temperature,
            )
            raw = (resp.choices[0].message.content or "").strip()
        except Exception as e:
            logger.error(f"Model request to {self.model} failed: {e}")
            return ""
        logger.info(f"Model reply received in {time.time() - t0:.2f}s ({len(raw)} chars)")
        return raw
