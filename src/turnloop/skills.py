"""Skill matching — trigger phrases that rewrite a user message."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass
class SkillMatch:
    skill_id: str
    prompt: str
    matched_trigger: str = ""


class SkillMatcher(Protocol):
    """Anything that can map user text to a skill."""

    async def match(self, text: str) -> SkillMatch | None: ...


@dataclass
class Skill:
    id: str
    name: str
    prompt: str
    description: str = ""
    triggers: list[str] = field(default_factory=list)


class StaticSkillMatcher:
    """In-memory skills matched by case-insensitive trigger prefix.

    Skills are tried in registration order; the first trigger that prefixes
    the trimmed input wins.
    """

    def __init__(self, skills: list[Skill] | None = None) -> None:
        self._skills: dict[str, Skill] = {}
        for skill in skills or []:
            self.register(skill)

    def register(self, skill: Skill) -> None:
        self._skills[skill.id] = skill

    def list(self) -> list[Skill]:
        return list(self._skills.values())

    async def match(self, text: str) -> SkillMatch | None:
        lower = text.strip().lower()
        for skill in self._skills.values():
            for trigger in skill.triggers:
                if trigger and lower.startswith(trigger.lower()):
                    return SkillMatch(skill_id=skill.id, prompt=skill.prompt, matched_trigger=trigger)
        return None

    def build_skills_prompt(self) -> str:
        """Markdown section listing the skills, or "" when none are registered."""
        if not self._skills:
            return ""
        lines = []
        for s in self._skills.values():
            triggers = f" ({', '.join(s.triggers)})" if s.triggers else ""
            lines.append(f"- **{s.name}**{triggers}: {s.description}")
        return "\n\n## Skills\n\n" + "\n".join(lines)


def apply_skill(message: str, match: SkillMatch) -> str:
    """Rewrite *message* as ``<skill prompt>\\n\\nUser request: <rest>``.

    ``rest`` is the message with the trigger removed; the whole message is
    used when nothing remains.
    """
    stripped = message.strip()
    rest = stripped[len(match.matched_trigger) :].strip() or message
    return f"{match.prompt}\n\nUser request: {rest}"
