"""
Entity linking for chat messages.

Finds the user's books, projects, goals and skills mentioned in a message
and spots simple intents ("add task: ...", "finished reading ...").
Matches annotate the prompt and the response metadata; they never change
domain data.

The matching policy sits behind the EntityMatcher protocol. The default
SubstringEntityMatcher does case-insensitive containment plus a fixed set
of intent regexes.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from ..storage.domain_records import DomainRecordSource
from .base import BaseService, ServiceResult


logger = logging.getLogger(__name__)

ENTITY_MATCH_CONFIDENCE = 0.9
INTENT_CONFIDENCE = 0.8

ENTITY_COLLECTIONS = ("books", "projects", "goals", "skills")


@dataclass
class EntityMatch:
    """A domain record mentioned in a message."""
    entity_type: str  # 'book', 'project', 'goal', 'skill'
    id: str
    display_name: str
    confidence: float = ENTITY_MATCH_CONFIDENCE
    attributes: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        name_field = "name" if self.entity_type == "skill" else "title"
        return {
            "id": self.id,
            name_field: self.display_name,
            **self.attributes,
            "confidence": self.confidence,
        }


@dataclass
class ActionSuggestion:
    """An intent spotted in a message, with the text it applies to."""
    action: str
    text: str
    confidence: float = INTENT_CONFIDENCE

    def to_dict(self) -> Dict[str, Any]:
        return {"text": self.text, "confidence": self.confidence, "action": self.action}


@dataclass
class DomainCollections:
    """The records a matcher looks through."""
    books: List[Dict[str, Any]] = field(default_factory=list)
    projects: List[Dict[str, Any]] = field(default_factory=list)
    goals: List[Dict[str, Any]] = field(default_factory=list)
    skills: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class EntityLinks:
    """Entities and suggestions detected in one message."""
    entities: Dict[str, List[EntityMatch]] = field(
        default_factory=lambda: {name: [] for name in ENTITY_COLLECTIONS}
    )
    suggestions: Dict[str, ActionSuggestion] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.suggestions and not any(self.entities.values())

    def entities_as_dicts(self) -> Dict[str, List[Dict[str, Any]]]:
        return {k: [m.to_dict() for m in v] for k, v in self.entities.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entities": self.entities_as_dicts(),
            "suggestions": {k: s.to_dict() for k, s in self.suggestions.items()},
        }


class EntityMatcher(Protocol):
    """Matching policy used by the EntityLinker."""

    def match_entities(
        self,
        message: str,
        collections: DomainCollections,
    ) -> Dict[str, List[EntityMatch]]:
        ...

    def detect_intents(self, message: str) -> Dict[str, ActionSuggestion]:
        ...


class SubstringEntityMatcher:
    """Case-insensitive containment of names plus regex intents."""

    INTENT_PATTERNS: Dict[str, re.Pattern] = {
        "create_task": re.compile(
            r"(?:add task|create task|need to|should|todo|task:)\s*([^.!?]+)", re.IGNORECASE
        ),
        "finish_reading": re.compile(
            r"(?:finish|complete|done with|finished)\s*reading\s*([^.!?]+)", re.IGNORECASE
        ),
        "start_learning": re.compile(
            r"(?:learn|study|practice|improve)\s*([^.!?]+)", re.IGNORECASE
        ),
        "set_goal": re.compile(
            r"(?:goal|want to|aim to|target)\s*([^.!?]+)", re.IGNORECASE
        ),
    }

    def match_entities(
        self,
        message: str,
        collections: DomainCollections,
    ) -> Dict[str, List[EntityMatch]]:
        text = message.lower()
        matches: Dict[str, List[EntityMatch]] = {name: [] for name in ENTITY_COLLECTIONS}

        for book in collections.books:
            title = book.get("title") or ""
            author = book.get("author") or ""
            if _contains(text, title) or _contains(text, author):
                matches["books"].append(EntityMatch(
                    entity_type="book",
                    id=str(book.get("id")),
                    display_name=title,
                    attributes={"author": author, "status": book.get("status")},
                ))

        for project in collections.projects:
            title = project.get("title") or ""
            if _contains(text, title):
                matches["projects"].append(EntityMatch(
                    entity_type="project",
                    id=str(project.get("id")),
                    display_name=title,
                    attributes={
                        "status": project.get("status"),
                        "completion": project.get("completionPercentage"),
                    },
                ))

        for goal in collections.goals:
            title = goal.get("title") or ""
            if _contains(text, title):
                matches["goals"].append(EntityMatch(
                    entity_type="goal",
                    id=str(goal.get("id")),
                    display_name=title,
                    attributes={"status": goal.get("status"), "category": goal.get("category")},
                ))

        for skill in collections.skills:
            name = skill.get("name") or ""
            if _contains(text, name):
                matches["skills"].append(EntityMatch(
                    entity_type="skill",
                    id=str(skill.get("id")),
                    display_name=name,
                    attributes={"level": skill.get("currentLevel"), "status": skill.get("status")},
                ))

        return matches

    def detect_intents(self, message: str) -> Dict[str, ActionSuggestion]:
        suggestions = {}
        for action, pattern in self.INTENT_PATTERNS.items():
            match = pattern.search(message)
            if match and match.group(1).strip():
                suggestions[action] = ActionSuggestion(action=action, text=match.group(1).strip())
        return suggestions


def _contains(text: str, needle: str) -> bool:
    """Lower-cased containment; empty needles never match."""
    needle = needle.strip().lower()
    return bool(needle) and needle in text


class EntityLinker(BaseService):
    """Loads the user's records and runs the matcher over a message."""

    def __init__(
        self,
        records: DomainRecordSource,
        matcher: Optional[EntityMatcher] = None,
    ) -> None:
        super().__init__()
        self.records = records
        self.matcher = matcher or SubstringEntityMatcher()

    async def _load_collections(self, user_id: str) -> DomainCollections:
        books, projects, goals, skills = await asyncio.gather(
            asyncio.to_thread(self.records.get_readings, user_id),
            asyncio.to_thread(self.records.get_projects, user_id),
            asyncio.to_thread(self.records.get_goals, user_id),
            asyncio.to_thread(self.records.get_skills, user_id),
        )
        return DomainCollections(books=books, projects=projects, goals=goals, skills=skills)

    async def link(self, message: str, user_id: str) -> ServiceResult[EntityLinks]:
        """Detect entities and intents; failures come back as a failed result."""
        try:
            collections = await self._load_collections(user_id)
            links = EntityLinks(
                entities=self.matcher.match_entities(message, collections),
                suggestions=self.matcher.detect_intents(message),
            )
        except Exception as e:
            self.logger.warning(f"Entity linking failed for user {user_id}: {e}")
            return ServiceResult.fail(str(e), error_code="ENTITY_LINKING_FAILED")

        found = sum(len(v) for v in links.entities.values())
        if found or links.suggestions:
            self.logger.debug(
                f"Linked {found} entities and {len(links.suggestions)} suggestions for user {user_id}"
            )
        return ServiceResult.ok(links)

    async def detect_entities(self, message: str, user_id: str) -> EntityLinks:
        """Entity links for a message; empty links when linking fails."""
        return (await self.link(message, user_id)).unwrap_or(EntityLinks())
