"""Canonical forms for free-text names, locations and registrations.

Billing exports and telematics feeds spell the same place in many ways
("AU TERM KEWDALE", "Kewdale Terminal", "KEWDALE"), so every text comparison
goes through ``normalize_text`` first.
"""
import re
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Optional

_NON_ALNUM = re.compile(r"[^A-Z0-9 ]+")
_SPACES = re.compile(r"\s+")
_PREFIXES = re.compile(r"^(AU|AUSTRALIA) ")
_TERMINAL_WORDS = re.compile(r"\b(TERM|THDPTY)\b")
_SUFFIXES = re.compile(
    r"( PTY LTD| PTY| LTD| LIMITED| CORPORATION| CORP| INC| CO| GARAGE| SERVICE STATION)$"
)

# Identifier -> phrases that embed it
BUSINESS_IDENTIFIERS = [
    ("BGC_PRECAST", ("PRECAST",)),
    ("BGC_NAVAL_BASE", ("NAVAL BASE",)),
    ("BGC_KWINANA", ("KWINANA BEACH",)),
    ("KCGM", ("KCGM", "KALGOORLIE CONSOLIDATED GOLD")),
    ("SOUTH32_WORSLEY", ("SOUTH32", "WORSLEY")),
    ("WESTERN_POWER", ("WESTERN POWER",)),
    ("JUNDEE_MINE", ("JUNDEE MINE",)),
    ("AWR_FORRESTFIELD", ("AWR FORRESTFIELD",)),
    ("AIRPORT", ("AIRPORT", "AIRPT")),
    ("BGC", ("BGC",)),
]

TEXT_EXACT = 100
TEXT_BUSINESS_ID = 85
TEXT_CONTAINMENT = 60

MIN_CONTAINMENT_LENGTH = 3


@dataclass(frozen=True)
class TextMatch:
    score: int
    method: str
    normalized_a: str
    normalized_b: str


def _clean(text: Optional[str]) -> str:
    if not text:
        return ""
    cleaned = _NON_ALNUM.sub(" ", text.upper())
    return _SPACES.sub(" ", cleaned).strip()


def normalize_text(text: Optional[str]) -> str:
    """Normalize a business or location name for comparison."""
    normalized = _clean(text)
    if not normalized:
        return ""
    normalized = _PREFIXES.sub("", normalized)
    normalized = _TERMINAL_WORDS.sub("TERMINAL", normalized)
    # Suffixes can stack ("XYZ CO PTY LTD")
    previous = None
    while previous != normalized:
        previous = normalized
        normalized = _SUFFIXES.sub("", normalized).strip()
    return normalized


def normalize_name(name: Optional[str]) -> str:
    """Case and whitespace insensitive key for a person's name."""
    if not name:
        return ""
    return _SPACES.sub(" ", name.strip()).upper()


def normalize_registration(registration: Optional[str]) -> str:
    """Uppercase alphanumerics only, so 'abc-123 ' and 'ABC 123' compare equal."""
    if not registration:
        return ""
    return re.sub(r"[^A-Z0-9]", "", registration.upper())


def extract_business_identifier(text: Optional[str]) -> Optional[str]:
    """Return the known business identifier embedded in ``text``, if any."""
    cleaned = f" {_clean(text)} "
    if not cleaned.strip():
        return None
    for identifier, phrases in BUSINESS_IDENTIFIERS:
        for phrase in phrases:
            if f" {phrase} " in cleaned:
                return identifier
    return None


def _contains(haystack: str, needle: str) -> bool:
    if len(needle) < MIN_CONTAINMENT_LENGTH:
        return False
    return f" {needle} " in f" {haystack} "


def compare_text(a: Optional[str], b: Optional[str]) -> TextMatch:
    """Score two free-text values 0-100 and report which rule matched."""
    norm_a = normalize_text(a)
    norm_b = normalize_text(b)
    if not norm_a or not norm_b:
        return TextMatch(0, "null_input", norm_a, norm_b)

    if norm_a == norm_b:
        return TextMatch(TEXT_EXACT, "normalized_exact", norm_a, norm_b)

    biz_a = extract_business_identifier(a)
    if biz_a is not None and biz_a == extract_business_identifier(b):
        return TextMatch(TEXT_BUSINESS_ID, "business_identifier", norm_a, norm_b)

    if _contains(norm_a, norm_b) or _contains(norm_b, norm_a):
        return TextMatch(TEXT_CONTAINMENT, "containment", norm_a, norm_b)

    return TextMatch(0, "no_match", norm_a, norm_b)


def similarity(a: Optional[str], b: Optional[str]) -> float:
    """Similarity of the normalized strings on a 0-1 scale."""
    norm_a = normalize_text(a)
    norm_b = normalize_text(b)
    if not norm_a or not norm_b:
        return 0.0
    return SequenceMatcher(None, norm_a, norm_b).ratio()
