import math
import json
import dataclasses
from typing import Any, Tuple

from .config import ProxyConfig


MAX_MESSAGE_CHARS = 12_000
MAX_SYSTEM_CHARS = 4_000

TEMPERATURE_RANGE = (0.0, 1.0)
MAX_TOKENS_RANGE = (64, 1500)

ROLES = ("user", "assistant")


class InvalidRequest(Exception):
    """No usable message survived normalization."""


@dataclasses.dataclass(frozen=True)
class ChatMessage:
    role: str
    text: str

    def to_upstream_json(self) -> dict:
        return {
            "role": self.role,
            "content": [{"type": "text", "text": self.text}],
        }


@dataclasses.dataclass(frozen=True)
class NormalizedRequest:
    messages: Tuple[ChatMessage, ...]
    model: str
    system: str
    temperature: float
    max_tokens: int

    def to_upstream_json(self) -> dict:
        return {
            "model": self.model,
            "system": self.system,
            "messages": [message.to_upstream_json() for message in self.messages],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "stream": True,
        }


def safe_string(value: Any, max_chars: int) -> str:
    """
    Coerce an arbitrary JSON value to text and cut it to max_chars.

    Lengths count UTF-16 code units so limits match what browsers count.
    """
    if value is None:
        text = ""
    elif isinstance(value, str):
        text = value
    elif isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, float) and value.is_integer():
        text = str(int(value))
    elif isinstance(value, (int, float)):
        text = str(value)
    else:
        text = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    if len(text) <= max_chars // 2:
        return text
    # Counted by hand, text from JSON may hold lone surrogates that no codec
    # will encode. An astral character straddling the cut is dropped whole.
    units = 0
    for index, char in enumerate(text):
        units += 2 if ord(char) > 0xFFFF else 1
        if units > max_chars:
            return text[:index]
    return text


def normalize_messages(messages: Any) -> Tuple[ChatMessage, ...]:
    if not isinstance(messages, list):
        return ()
    out = []
    for message in messages:
        if not isinstance(message, dict):
            continue
        role = message.get("role")
        if role not in ROLES:
            continue
        text = safe_string(message.get("content"), MAX_MESSAGE_CHARS).strip()
        if not text:
            continue
        out.append(ChatMessage(role=role, text=text))
    return tuple(out)


def clamp_number(value: Any, low: float, high: float, fallback: float) -> float:
    # bool is an int subclass but is not a number in JSON
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return fallback
    if math.isnan(value):
        return fallback
    return min(high, max(low, value))


def normalize_request(body: Any, config: ProxyConfig) -> NormalizedRequest:
    if not isinstance(body, dict):
        body = {}

    messages = normalize_messages(body.get("messages"))
    if not messages:
        raise InvalidRequest("Invalid messages format")

    model = body.get("model")
    if not isinstance(model, str) or model not in config.allowed_models:
        model = config.default_model

    system = safe_string(body.get("system"), MAX_SYSTEM_CHARS) or config.default_system

    temperature = clamp_number(
        body.get("temperature"), *TEMPERATURE_RANGE, config.default_temperature
    )
    max_tokens = math.floor(
        clamp_number(body.get("max_tokens"), *MAX_TOKENS_RANGE, config.default_max_tokens)
    )

    return NormalizedRequest(
        messages=messages,
        model=model,
        system=system,
        temperature=float(temperature),
        max_tokens=max_tokens,
    )
