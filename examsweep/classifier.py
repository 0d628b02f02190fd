"""Filename/path heuristics for study category and course code."""

from __future__ import annotations

import json
import os
import re
from pathlib import Path

from .models import Category, ClassificationResult, FileRecord

# Order matters: the first matching rule wins.
NAME_RULES: list[tuple[Category, set[str]]] = [
    (Category.LECTURE, {
        "lecture", "lectures", "lec", "slide", "slides", "presentation", "notes", "note",
        "transcript", "recording", "handout",
    }),
    (Category.ASSIGNMENT, {
        "assignment", "assignments", "homework", "hw", "pset", "problemset", "lab", "labs",
        "worksheet", "project", "submission", "solution", "solutions", "quiz", "exercise",
        "exercises", "tutorial", "practice",
    }),
    (Category.REFERENCE, {
        "textbook", "book", "books", "reference", "references", "ref", "handbook", "manual",
        "syllabus", "reading", "readings", "chapter", "paper", "papers", "cheatsheet", "guide",
    }),
]

EXTENSION_RULES: list[tuple[Category, set[str]]] = [
    (Category.LECTURE, {".ppt", ".pptx", ".key", ".odp"}),
    (Category.ASSIGNMENT, {".ipynb"}),
    (Category.REFERENCE, {".epub", ".mobi", ".djvu", ".bib"}),
]

COURSE_CODE_RE = re.compile(r"(?<![A-Za-z])([A-Za-z]{2,4})[ _-]?(\d{3,4}[A-Za-z]?)(?![A-Za-z0-9])")

# Letter prefixes that look like course codes but are counters or camera names.
COURSE_STOP_PREFIXES = {
    "img", "dsc", "dscn", "dcim", "pxl", "vid", "mov", "mvi", "scan", "page", "pg",
    "week", "wk", "ch", "chap", "lec", "hw", "ver", "rev", "copy", "file", "doc",
    "pic", "part", "no", "num", "fall", "spr", "sum", "win", "term", "sem", "year", "yr",
    "jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec",
}

_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")
_ALPHA_DIGIT = re.compile(r"[a-z]+|\d+")


def tokenize(text: str) -> set[str]:
    """Lower-case word tokens, splitting both separators and letter/digit runs."""
    tokens: set[str] = set()
    for chunk in _TOKEN_SPLIT.split(text.lower()):
        if not chunk:
            continue
        tokens.add(chunk)
        tokens.update(_ALPHA_DIGIT.findall(chunk))
    return tokens


def detect_course_code(text: str) -> str | None:
    for m in COURSE_CODE_RE.finditer(text):
        prefix, number = m.group(1), m.group(2)
        if prefix.lower() in COURSE_STOP_PREFIXES:
            continue
        return f"{prefix.upper()}{number.upper()}"
    return None


def is_valid_utf8(path: str) -> bool:
    try:
        path.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


class Classifier:
    """Deterministic first-match-wins classifier. No I/O after construction."""

    def __init__(self, custom_rule_file: str | None = None):
        self.name_rules = [(cat, set(words)) for cat, words in NAME_RULES]
        self.extension_rules = [(cat, set(exts)) for cat, exts in EXTENSION_RULES]
        if custom_rule_file:
            self._merge_custom_rules(custom_rule_file)

    def _merge_custom_rules(self, rule_file: str) -> None:
        path = Path(rule_file)
        if not path.exists():
            raise FileNotFoundError(f"Custom rule file not found: {rule_file}")
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("Custom classification rules must be a JSON object")
        by_category = {cat: words for cat, words in self.name_rules}
        for category, words in data.items():
            if not isinstance(words, list):
                continue
            try:
                cat = Category(category)
            except ValueError:
                continue
            if cat in by_category:
                by_category[cat].update(str(w).lower() for w in words)

    def classify(self, record: FileRecord) -> ClassificationResult:
        return self.classify_path(record.path, record.extension)

    def classify_path(self, path: str, extension: str | None = None) -> ClassificationResult:
        if not is_valid_utf8(path):
            return ClassificationResult(Category.OTHER, None)

        name = os.path.basename(path)
        stem, ext = os.path.splitext(name)
        ext = (extension if extension is not None else ext).lower()
        parents = [p for p in Path(os.path.dirname(path)).parts if p not in (os.sep, "")]

        return ClassificationResult(
            category=self._category(stem, ext, parents[-1] if parents else ""),
            course_code=self._course(stem, parents),
        )

    def _category(self, stem: str, ext: str, parent: str) -> Category:
        name_tokens = tokenize(stem)
        for cat, words in self.name_rules:
            if name_tokens & words:
                return cat

        for cat, exts in self.extension_rules:
            if ext in exts:
                return cat

        parent_tokens = tokenize(parent)
        for cat, words in self.name_rules:
            if parent_tokens & words:
                return cat

        return Category.OTHER

    @staticmethod
    def _course(stem: str, parents: list[str]) -> str | None:
        code = detect_course_code(stem)
        if code:
            return code
        for part in reversed(parents):
            code = detect_course_code(part)
            if code:
                return code
        return None
