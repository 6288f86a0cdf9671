"""
Answer grading.

Meaning answers are compared case-insensitively with surrounding whitespace
trimmed and inner whitespace collapsed. Reading answers are compared after
script normalization: NFKC, romaji to hiragana and katakana to hiragana.

Besides correct/incorrect, an answer can be refused without grading:
- kana (or romaji spelling a reading) typed for a meaning prompt
- a registered answer that is not accepted for this subject
- characters that cannot be part of any answer
A refused answer re-presents the same prompt with no penalty.
"""

from __future__ import annotations

import re
import unicodedata
from enum import Enum

import jaconv

from wani.core.models import PromptType, Subject

_WHITESPACE = re.compile(r"\s+")


class Verdict(str, Enum):
    """Result of checking one answer."""

    CORRECT = "correct"
    INCORRECT = "incorrect"
    MATCHES_NON_ACCEPTED = "matches_non_accepted"
    KANA_WHEN_MEANING = "kana_when_meaning"
    BAD_FORMATTING = "bad_formatting"

    @property
    def is_graded(self) -> bool:
        """Whether the answer counts towards the item's score."""
        return self in (Verdict.CORRECT, Verdict.INCORRECT)

    @property
    def is_correct(self) -> bool:
        return self is Verdict.CORRECT


def is_kana(ch: str) -> bool:
    # Hiragana and katakana blocks, including the prolonged sound mark.
    return "\u3040" <= ch <= "\u30ff"


def normalize_meaning(text: str) -> str:
    return _WHITESPACE.sub(" ", text.strip()).lower()


def normalize_reading(text: str) -> str:
    """Fold a reading answer to hiragana."""
    text = unicodedata.normalize("NFKC", text.strip()).lower()
    text = _WHITESPACE.sub("", text)
    if any(ch.isascii() and ch.isalpha() for ch in text):
        text = jaconv.alphabet2kana(text)
    return jaconv.kata2hira(text)


def _legal_characters(subject: Subject) -> set[str]:
    chars: set[str] = set()
    for m in subject.meanings:
        chars.update(normalize_meaning(m.meaning))
    for aux in subject.auxiliary_meanings:
        chars.update(normalize_meaning(aux.meaning))
    if any(ch.isdigit() for ch in chars):
        chars.update("0123456789")
    return chars


def _is_badly_formatted(text: str, legal: set[str]) -> bool:
    return any(not (ch.isalpha() or ch.isspace() or is_kana(ch) or ch in legal) for ch in text)


def grade_meaning(subject: Subject, answer: str) -> Verdict:
    guess = normalize_meaning(answer)
    if not guess:
        return Verdict.BAD_FORMATTING

    best = Verdict.INCORRECT
    for m in subject.meanings:
        if guess == normalize_meaning(m.meaning):
            if m.accepted_answer:
                return Verdict.CORRECT
            best = Verdict.MATCHES_NON_ACCEPTED
    for aux in subject.auxiliary_meanings:
        if guess == normalize_meaning(aux.meaning) and aux.is_whitelisted:
            return Verdict.CORRECT
    if best is not Verdict.INCORRECT:
        return best

    # Blacklisted auxiliary meanings fall through and are graded incorrect.
    if subject.readings and grade_reading(subject, answer) is Verdict.CORRECT:
        return Verdict.KANA_WHEN_MEANING
    if _is_badly_formatted(guess, _legal_characters(subject)):
        return Verdict.BAD_FORMATTING
    return Verdict.INCORRECT


def grade_reading(subject: Subject, answer: str) -> Verdict:
    raw = answer.strip()
    if not raw:
        return Verdict.BAD_FORMATTING
    if any(not (ch.isalpha() or ch.isspace() or is_kana(ch)) for ch in unicodedata.normalize("NFKC", raw)):
        return Verdict.BAD_FORMATTING

    guess = normalize_reading(raw)
    best = Verdict.INCORRECT
    for r in subject.readings:
        if guess == normalize_reading(r.reading):
            if r.accepted_answer:
                return Verdict.CORRECT
            best = Verdict.MATCHES_NON_ACCEPTED
    return best


def grade(subject: Subject, prompt: PromptType, answer: str) -> Verdict:
    """
    Check an answer to one prompt about subject.

    Subjects without readings are always asked for their meaning.
    """
    if prompt is PromptType.READING and subject.required_prompts & PromptType.READING:
        return grade_reading(subject, answer)
    return grade_meaning(subject, answer)


def accepted_answers(subject: Subject, prompt: PromptType) -> list[str]:
    """Answers to show after a wrong guess."""
    if prompt is PromptType.READING:
        return [r.reading for r in subject.readings if r.accepted_answer]
    return [m.meaning for m in subject.meanings if m.accepted_answer]
