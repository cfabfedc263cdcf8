"""
Language detection and the per-call language lock.

Streaming recognition is unreliable on the first few words of a call in an
unknown language, so the lock votes over several final transcripts instead of
trusting a single one:

- a non-default language (asserted by the recognizer, or inferred from the
  text) confirms that language immediately
- the default language needs several votes before it is confirmed
- repeated transcripts that cannot be classified escalate to a keypad menu

Once confirmed the lock never changes for the lifetime of the call session.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import re
import unicodedata
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

KNOWN_LANGUAGES: Tuple[str, ...] = ("en", "es", "fr", "de", "pt", "it", "hi", "ar", "ru", "ja", "ko", "zh")

LANGUAGE_NAMES: Dict[str, str] = {
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "pt": "Portuguese",
    "it": "Italian",
    "hi": "Hindi",
    "ar": "Arabic",
    "ru": "Russian",
    "ja": "Japanese",
    "ko": "Korean",
    "zh": "Chinese",
}


def _normalize_for_matching(text: str) -> str:
    text = (text or "").strip().lower()
    text = text.replace("’", "'")
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = re.sub(r"\s+", " ", text)
    return text


def normalize_language_code(code: Optional[str]) -> Optional[str]:
    """
    Reduce a recognizer language tag to its base code ("es-419" -> "es").
    """
    if not code or not isinstance(code, str):
        return None
    base = re.split(r"[-_]", code.strip().lower(), maxsplit=1)[0]
    if len(base) not in (2, 3) or not base.isalpha():
        return None
    return base


# (language, ranges) checked in order; kana before Han so Japanese text with
# kanji is not read as Chinese.
_SCRIPT_RANGES: Tuple[Tuple[str, Tuple[Tuple[int, int], ...]], ...] = (
    ("hi", ((0x0900, 0x097F),)),
    ("ar", ((0x0600, 0x06FF), (0x0750, 0x077F), (0x08A0, 0x08FF))),
    ("ru", ((0x0400, 0x04FF),)),
    ("ko", ((0xAC00, 0xD7AF), (0x1100, 0x11FF), (0x3130, 0x318F))),
    ("ja", ((0x3040, 0x309F), (0x30A0, 0x30FF))),
    ("zh", ((0x4E00, 0x9FFF), (0x3400, 0x4DBF))),
)

_SCRIPT_SHARE = 0.5


def detect_script_language(text: str) -> Optional[str]:
    """Detect a language from non-Latin script usage (None for Latin text)."""
    letters = [ch for ch in (text or "") if ch.isalpha()]
    if not letters:
        return None

    counts: Dict[str, int] = {}
    for ch in letters:
        cp = ord(ch)
        for language, ranges in _SCRIPT_RANGES:
            if any(lo <= cp <= hi for lo, hi in ranges):
                counts[language] = counts.get(language, 0) + 1
                break

    non_latin = sum(counts.values())
    if non_latin == 0 or non_latin / len(letters) < _SCRIPT_SHARE:
        return None

    # Any kana means Japanese, even when kanji dominate.
    if counts.get("ja"):
        return "ja"
    return max(counts, key=lambda k: counts[k])


def _lexicon(words: str) -> FrozenSet[str]:
    return frozenset(words.split())


_LEXICONS: Dict[str, FrozenSet[str]] = {
    "en": _lexicon(
        "the and is are i you my what want need would like please with this have can "
        "yes hello hi thanks thank for your how do i'm it's that to of"
    ),
    "es": _lexicon(
        "hola gracias quiero necesito por favor usted como esta estoy para una pero tengo "
        "buenos buenas dias si mi es y con donde cuando puedo hablar espanol el los las que"
    ),
    "fr": _lexicon(
        "bonjour merci je voudrais vous est c'est le les une avec pour oui mon ma suis pas "
        "ne nous ai francais s'il plait parler bien et qui au aux du"
    ),
    "de": _lexicon(
        "hallo danke ich bitte nicht und ist das der die ein eine mit mochte guten tag ja "
        "nein sie wir haben deutsch sprechen auf zu mein wie was"
    ),
    "pt": _lexicon(
        "ola obrigado obrigada voce eu nao sim quero preciso uma para com tudo bem bom dia "
        "estou meu minha falar portugues por favor do da isso tenho"
    ),
    "it": _lexicon(
        "ciao grazie buongiorno vorrei sono io non per il della sei voglio parlare italiano "
        "mi come sta bene prego si ho questo che gli anche"
    ),
}

MIN_LEXICON_HITS = 2


def _tokens(text: str) -> FrozenSet[str]:
    normalized = _normalize_for_matching(text)
    words = re.findall(r"[a-z]+(?:'[a-z]+)?", normalized)
    tokens = set(words)
    for word in words:
        if "'" in word:
            tokens.update(part for part in word.split("'") if part)
    return frozenset(tokens)


def detect_lexicon_language(text: str, candidates: Optional[Iterable[str]] = None) -> Optional[str]:
    """
    Pick the Latin-script language with the most distinct function-word hits.

    Requires at least MIN_LEXICON_HITS hits and a unique best score.
    """
    tokens = _tokens(text)
    if not tokens:
        return None

    allowed = set(candidates) if candidates is not None else set(_LEXICONS)
    scores = {
        language: len(tokens & lexicon)
        for language, lexicon in _LEXICONS.items()
        if language in allowed
    }
    if not scores:
        return None

    best = max(scores.values())
    if best < MIN_LEXICON_HITS:
        return None
    leaders = [language for language, score in scores.items() if score == best]
    if len(leaders) != 1:
        return None
    return leaders[0]


def classify_language(
    asserted_code: Optional[str],
    text: str,
    supported: Iterable[str] = KNOWN_LANGUAGES,
) -> Optional[str]:
    """
    Decide which language a transcript is in.

    The recognizer-asserted code wins when present; otherwise script ranges are
    checked for non-Latin text, then lexicon matching for Latin text.

    Returns None when the transcript cannot be classified into a supported language.
    """
    supported_set = set(supported)

    asserted = normalize_language_code(asserted_code)
    if asserted:
        return asserted if asserted in supported_set else None

    script_language = detect_script_language(text)
    if script_language:
        return script_language if script_language in supported_set else None

    return detect_lexicon_language(text, candidates=supported_set)


class LockState(str, Enum):
    UNDETERMINED = "undetermined"
    CONFIRMED = "confirmed"


class LockOutcome(str, Enum):
    """What a single observation did to the lock."""
    IGNORED = "ignored"  # lock already settled (confirmed or escalated)
    PENDING = "pending"  # still undetermined
    CONFIRMED_DEFAULT = "confirmed_default"
    CONFIRMED_OTHER = "confirmed_other"
    ESCALATED = "escalated"


@dataclass
class LanguageLock:
    """
    Per-call language lock.

    Rules:
    - non-default language evidence confirms at once
    - `default_votes_required` default-language finals confirm the default
    - `unclassified_limit` unclassifiable finals without confirmation escalate
    """

    default_language: str = "en"
    supported: Tuple[str, ...] = KNOWN_LANGUAGES
    default_votes_required: int = 3
    unclassified_limit: int = 2

    state: LockState = LockState.UNDETERMINED
    language: Optional[str] = None
    default_votes: int = 0
    unclassified: int = 0
    escalated: bool = False
    history: List[Optional[str]] = field(default_factory=list)

    @property
    def is_confirmed(self) -> bool:
        return self.state == LockState.CONFIRMED

    @property
    def is_settled(self) -> bool:
        return self.is_confirmed or self.escalated

    def confirm(self, language: str) -> None:
        """Commit to a language (used for caller-selected languages)."""
        self.state = LockState.CONFIRMED
        self.language = language

    def observe(self, asserted_code: Optional[str], text: str) -> LockOutcome:
        """
        Feed one final transcript into the lock.
        """
        if self.is_settled:
            return LockOutcome.IGNORED

        detected = classify_language(asserted_code, text, self.supported)
        self.history.append(detected)

        if detected is None:
            self.unclassified += 1
            if self.unclassified >= self.unclassified_limit:
                self.escalated = True
                return LockOutcome.ESCALATED
            return LockOutcome.PENDING

        if detected != self.default_language:
            self.confirm(detected)
            return LockOutcome.CONFIRMED_OTHER

        self.default_votes += 1
        if self.default_votes >= self.default_votes_required:
            self.confirm(self.default_language)
            return LockOutcome.CONFIRMED_DEFAULT
        return LockOutcome.PENDING
