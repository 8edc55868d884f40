"""Parsing helpers for free-form model output and user instructions.

Grammar summary
---------------

Retouch strength
    ``<key> <sep> <number>`` anywhere in the text, where ``<key>`` is
    ``重绘幅度``, ``retouch_strength`` or ``strength`` (case-insensitive),
    ``<sep>`` is an ASCII or full-width colon, and ``<number>`` is a decimal
    in ``[0, 1]`` (``0``, ``0.65``, ``1``, ``1.0``).  The first match wins
    and is clamped to ``[0, 1]``.

AI section
    A heading ``【给AI看的】`` (inner whitespace allowed) or ``[For AI]``;
    everything after it is the AI-facing instruction.  Lines that only carry
    a strength setting are dropped.  Without a heading the whole text is used.

Understanding sections
    Lines consisting solely of a bracketed title (``【Title】`` or
    ``[Title]``, optionally numbered ``3. [Title]``) open a section; the
    following non-heading lines are its body.  Titles are mapped to
    knowledge-base categories by keyword.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional, Tuple

from models import KnowledgeBaseAnalysis, KnowledgeBaseCategory

_STRENGTH_RE = re.compile(
    r"(?:重绘幅度|retouch_strength|strength)\s*[:：]\s*(0(?:\.\d+)?|1(?:\.0+)?)(?!\.?\d)",
    re.IGNORECASE,
)
_STRENGTH_LINE_RE = re.compile(r"(?:重绘幅度|retouch_strength|strength)\s*[:：]", re.IGNORECASE)
_AI_SECTION_RE = re.compile(
    r"(?:【\s*给\s*AI\s*看\s*的\s*】|\[\s*for\s+ai\s*\])([\s\S]*)$",
    re.IGNORECASE,
)
_HEADER_RE = re.compile(r"^(?:\d+\.\s*)?[【\[]\s*(.+?)\s*[】\]]\s*$")

# Order matters: the first matching rule claims the section.
_SECTION_RULES: List[Tuple[re.Pattern, KnowledgeBaseCategory]] = [
    (re.compile(r"姿势|动作|pose", re.IGNORECASE), KnowledgeBaseCategory.POSE),
    (re.compile(r"场景|环境|scene|environment", re.IGNORECASE), KnowledgeBaseCategory.SCENE),
    (re.compile(r"构图|镜头|composition|camera", re.IGNORECASE), KnowledgeBaseCategory.COMPOSITION),
    (re.compile(r"光照|氛围|lighting|atmosphere", re.IGNORECASE), KnowledgeBaseCategory.LIGHTING),
    (re.compile(r"服装|造型|clothing|apparel|styling", re.IGNORECASE), KnowledgeBaseCategory.CLOTHING),
    (re.compile(r"风格|后期|style|post", re.IGNORECASE), KnowledgeBaseCategory.STYLE),
]


def parse_strength(text: Optional[str], default: Optional[float] = None) -> Optional[float]:
    """Return the retouch strength embedded in *text*, or *default*."""
    if not text:
        return default
    m = _STRENGTH_RE.search(text)
    if not m:
        return default
    return min(1.0, max(0.0, float(m.group(1))))


def extract_ai_instructions(text: Optional[str]) -> str:
    """Return the AI-facing part of an instruction block."""
    raw = (text or "").strip()
    if not raw:
        return ""
    m = _AI_SECTION_RE.search(raw)
    if not m:
        return raw
    lines = [ln for ln in m.group(1).splitlines() if not _STRENGTH_LINE_RE.search(ln)]
    section = "\n".join(lines).strip()
    return section or raw


def parse_understanding_sections(text: Optional[str]) -> List[Tuple[str, str]]:
    """Split a sectioned description into ``(title, body)`` pairs.

    Text before the first heading and sections with empty bodies are skipped.
    """
    sections: List[Tuple[str, str]] = []
    title: Optional[str] = None
    body: List[str] = []

    def commit() -> None:
        if title is None:
            return
        content = "\n".join(body).strip()
        if title.strip() and content:
            sections.append((title.strip(), content))

    for raw_line in (text or "").splitlines():
        m = _HEADER_RE.match(raw_line.strip())
        if m:
            commit()
            title, body = m.group(1), []
            continue
        if title is not None:
            body.append(raw_line.rstrip())
    commit()
    return sections


def fragments_from_understanding(text: Optional[str]) -> KnowledgeBaseAnalysis:
    """Map a sectioned description onto knowledge-base categories.

    The full text becomes the holistic description; later sections with the
    same category overwrite earlier ones.
    """
    fragments: Dict[KnowledgeBaseCategory, str] = {}
    for title, content in parse_understanding_sections(text):
        for pattern, category in _SECTION_RULES:
            if pattern.search(title):
                fragments[category] = content
                break
    return KnowledgeBaseAnalysis(holistic_description=(text or "").strip(), fragments=fragments)


def parse_json_response(text: str) -> Any:
    """Decode a JSON object from model output, tolerating markdown fences."""
    text = (text or "").strip()
    # Strip markdown fences if present
    if text.startswith("```"):
        lines = text.splitlines()
        text = "\n".join(lines[1:-1] if lines[-1].strip() == "```" else lines[1:])
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start != -1 and end != -1:
            return json.loads(text[start : end + 1])
        raise
