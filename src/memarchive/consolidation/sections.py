"""Markdown section model used for merging, contradiction repair and splitting."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable

HEADING_RE = re.compile(r"^##\s+(.+?)\s*$")


@dataclass
class Section:
    heading: str  # "" for the preamble before the first heading
    text: str

    @property
    def key(self) -> str:
        return normalize_heading(self.heading)

    def render(self) -> str:
        if not self.heading:
            return self.text.strip()
        text = self.text.strip()
        return f"## {self.heading}\n\n{text}" if text else f"## {self.heading}"


@dataclass
class Conflict:
    heading: str
    old_text: str
    new_text: str


@dataclass
class MergeOutcome:
    sections: list[Section]
    changed: bool = False
    conflicts: list[Conflict] = field(default_factory=list)


def normalize_heading(heading: str) -> str:
    return " ".join(heading.lower().split())


def parse_sections(body: str) -> list[Section]:
    sections: list[Section] = []
    heading = ""
    lines: list[str] = []
    for line in (body or "").splitlines():
        m = HEADING_RE.match(line)
        if m:
            if heading or "\n".join(lines).strip():
                sections.append(Section(heading=heading, text="\n".join(lines).strip()))
            heading = m.group(1).strip()
            lines = []
        else:
            lines.append(line)
    if heading or "\n".join(lines).strip():
        sections.append(Section(heading=heading, text="\n".join(lines).strip()))
    return sections


def render_sections(sections: list[Section]) -> str:
    parts = [s.render() for s in sections]
    return "\n\n".join(p for p in parts if p).strip()


def find_section(sections: list[Section], heading: str) -> Section | None:
    key = normalize_heading(heading)
    for s in sections:
        if s.key == key:
            return s
    return None


def _lines(text: str) -> list[str]:
    return [ln.strip() for ln in text.splitlines() if ln.strip()]


def merge_sections(
    existing: list[Section],
    incoming: list[Section],
    replaces: bool = False,
    conflict_fn: Callable[[str, str], bool] | None = None,
) -> MergeOutcome:
    """Fold incoming sections into existing ones without repeating any line.

    A differing section is reported as a conflict (and left untouched) when
    ``replaces`` is set or ``conflict_fn`` says the two texts disagree.
    """
    merged = [Section(heading=s.heading, text=s.text) for s in existing]
    outcome = MergeOutcome(sections=merged)
    for new in incoming:
        if not new.text.strip() and not new.heading:
            continue
        current = find_section(merged, new.heading)
        if current is None:
            merged.append(Section(heading=new.heading, text=new.text.strip()))
            outcome.changed = True
            continue
        old_lines = _lines(current.text)
        new_lines = _lines(new.text)
        if old_lines == new_lines or set(new_lines) <= set(old_lines):
            continue
        if set(old_lines) <= set(new_lines):
            current.text = new.text.strip()
            outcome.changed = True
            continue
        if replaces or (conflict_fn is not None and conflict_fn(current.text, new.text)):
            outcome.conflicts.append(
                Conflict(heading=current.heading, old_text=current.text, new_text=new.text.strip())
            )
            continue
        additions = [ln for ln in new_lines if ln not in set(old_lines)]
        current.text = "\n".join([current.text.strip(), *additions]).strip()
        outcome.changed = True
    return outcome
