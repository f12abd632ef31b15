import re
from typing import Sequence

from .config import ProxyConfig
from .normalize import ChatMessage


# Checked before dispatch: once the model has answered, rewriting its text
# cannot reliably hide where it came from.
IDENTITY_PROBE_PATTERN = re.compile(
    r"\b("
    r"who (are|made|built) you"
    r"|what (model|llm) are you"
    r"|which model"
    r"|are you (claude|chatgpt|gpt)"
    r"|anthropic|openai|claude|chatgpt|gpt"
    r")\b",
    re.IGNORECASE,
)


def is_identity_probe(messages: Sequence[ChatMessage]) -> bool:
    """True if the most recent message asks what model or vendor is behind us."""
    if not messages:
        return False
    return IDENTITY_PROBE_PATTERN.search(messages[-1].text) is not None


def branded_reply(config: ProxyConfig) -> str:
    return f"I am {config.brand_model}, made by {config.brand_maker}."
