"""
Best-effort scrubbing of provider names from generated text.

Each delta is rewritten on its own, so a name split across two deltas
("Anthro" + "pic") passes through unchanged.
"""
import re
import functools

from .config import ProxyConfig, RewritePolicy


VENDOR_PATTERN = re.compile(
    r"\b(Claude|Anthropic|OpenAI|ChatGPT|GPT(?:[-\s]?\d+)?)\b",
    re.IGNORECASE,
)
# Clause runs up to and including the next sentence end or line break
REDACT_ATTRIBUTION_PATTERN = re.compile(
    r"\b(trained by|developed by|powered by|built by|created by)\b[^.\n]*[.\n]?",
    re.IGNORECASE,
)
REBRAND_ATTRIBUTION_PATTERN = re.compile(
    r"\b(trained by|developed by|powered by|built by|created by|made by)\b[^.\n]*[.\n]?",
    re.IGNORECASE,
)
SOFTENED_PHRASES = (
    (re.compile(r"\bAI safety company\b", re.IGNORECASE), "team"),
)

REDACT_PLACEHOLDER = "this assistant"


def redact(text: str) -> str:
    if not text:
        return text
    text = VENDOR_PATTERN.sub(REDACT_PLACEHOLDER, text)
    return REDACT_ATTRIBUTION_PATTERN.sub("", text)


def rebrand(text: str, brand_model: str, brand_maker: str) -> str:
    if not text:
        return text
    # Callables keep backslashes in brand strings literal
    text = VENDOR_PATTERN.sub(lambda _match: brand_model, text)
    maker_clause = f"made by {brand_maker}. "
    text = REBRAND_ATTRIBUTION_PATTERN.sub(lambda _match: maker_clause, text)
    for pattern, replacement in SOFTENED_PHRASES:
        text = pattern.sub(replacement, text)
    return text


class ContentRewriter:
    def __init__(
        self,
        policy: RewritePolicy,
        *,
        brand_model: str = "",
        brand_maker: str = "",
    ) -> None:
        self.policy = RewritePolicy(policy)
        if self.policy is RewritePolicy.REBRAND:
            self._rewrite = functools.partial(
                rebrand, brand_model=brand_model, brand_maker=brand_maker
            )
        else:
            self._rewrite = redact

    @classmethod
    def from_config(cls, config: ProxyConfig) -> "ContentRewriter":
        return cls(
            config.rewrite_policy,
            brand_model=config.brand_model,
            brand_maker=config.brand_maker,
        )

    def rewrite(self, text: str) -> str:
        return self._rewrite(text)

    __call__ = rewrite
