"""Institution name normalization.

The same normalization feeds the FRN lookup cache, FRN resolution and
deduplication business keys, so "Santander UK plc" and "santander uk PLC "
collapse to the same string everywhere.

Steps, always in this order and always recorded (even when a step leaves
the name unchanged):
    1. uppercase
    2. expand_abbreviations -- "&" -> "AND", "BS" -> "BUILDING SOCIETY", ...
    3. strip_punctuation -- drop apostrophes, other punctuation becomes a space
    4. remove_prefix -- at most one configured prefix ("THE")
    5. strip_suffixes -- configured legal-entity suffixes, repeatedly
    6. trim
"""

import re
from dataclasses import dataclass, field

from savings_pipeline.config.pipeline import NormalizationConfig

_APOSTROPHES = re.compile(r"['’`]")
_PUNCTUATION = re.compile(r"[^A-Z0-9 ]")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class NormalizationStep:
    action: str
    before: str
    after: str

    def to_dict(self) -> dict:
        return {"action": self.action, "before": self.before, "after": self.after}


@dataclass
class NormalizedName:
    original: str
    normalized: str
    steps: list[NormalizationStep] = field(default_factory=list)


def _tokens(text: str) -> list[str]:
    return [token for token in _WHITESPACE.split(text) if token]


def _expand_abbreviations(text: str, abbreviations: dict[str, str]) -> str:
    spaced = text.replace("&", " & ")
    expanded = [abbreviations.get(token, token) for token in _tokens(spaced)]
    return " ".join(expanded)


def _strip_punctuation(text: str) -> str:
    text = _APOSTROPHES.sub("", text)
    return " ".join(_tokens(_PUNCTUATION.sub(" ", text)))


def _remove_prefix(text: str, prefixes: list[str]) -> str:
    tokens = _tokens(text)
    for prefix in prefixes:
        prefix_tokens = _tokens(prefix.upper())
        if len(tokens) > len(prefix_tokens) and tokens[: len(prefix_tokens)] == prefix_tokens:
            return " ".join(tokens[len(prefix_tokens):])
    return text


def _strip_suffixes(text: str, suffixes: list[str]) -> str:
    tokens = _tokens(text)
    # Longest suffix first so "BUILDING SOCIETY" wins over "SOCIETY"
    candidates = sorted((_tokens(s.upper()) for s in suffixes), key=len, reverse=True)
    stripped = True
    while stripped:
        stripped = False
        for suffix in candidates:
            if suffix and len(tokens) > len(suffix) and tokens[-len(suffix):] == suffix:
                tokens = tokens[: -len(suffix)]
                stripped = True
                break
    return " ".join(tokens)


def normalize_institution_name(name: str, config: NormalizationConfig) -> NormalizedName:
    """Normalize an institution name, recording every step.

    A name is never stripped down to nothing: prefixes and suffixes are
    only removed while at least one other token remains.

    >>> normalize_institution_name("Santander UK plc", NormalizationConfig()).normalized
    'SANTANDER'
    """
    abbreviations = {key.upper(): value.upper() for key, value in config.abbreviations.items()}
    operations = (
        ("uppercase", lambda text: text.upper()),
        ("expand_abbreviations", lambda text: _expand_abbreviations(text, abbreviations)),
        ("strip_punctuation", _strip_punctuation),
        ("remove_prefix", lambda text: _remove_prefix(text, config.prefixes)),
        ("strip_suffixes", lambda text: _strip_suffixes(text, config.suffixes)),
        ("trim", lambda text: text.strip()),
    )

    current = name or ""
    steps = []
    for action, operation in operations:
        after = operation(current)
        steps.append(NormalizationStep(action, current, after))
        current = after
    return NormalizedName(original=name, normalized=current, steps=steps)


def normalize_name(name: str, config: NormalizationConfig) -> str:
    """Shorthand returning only the normalized string."""
    return normalize_institution_name(name, config).normalized
