"""Tests for entity linking and intent detection."""

from unittest.mock import MagicMock

import pytest

from personal_os_ai.services.entity_linker import (
    DomainCollections,
    EntityLinker,
    EntityLinks,
    SubstringEntityMatcher,
)


@pytest.fixture
def matcher():
    return SubstringEntityMatcher()


@pytest.fixture
def collections():
    return DomainCollections(
        books=[{"id": "b1", "title": "Atomic Habits", "author": "James Clear", "status": "reading"}],
        projects=[{"id": "p1", "title": "Website Redesign", "status": "active", "completionPercentage": 40}],
        goals=[{"id": "g1", "title": "Run a marathon", "status": "in_progress", "category": "health"}],
        skills=[{"id": "s1", "name": "Python", "currentLevel": "intermediate", "status": "learning"}],
    )


class TestSubstringEntityMatcher:
    def test_matches_book_case_insensitively(self, matcher, collections):
        matches = matcher.match_entities("I finished reading Atomic habits", collections)

        assert len(matches["books"]) == 1
        book = matches["books"][0]
        assert book.id == "b1"
        assert book.display_name == "Atomic Habits"
        assert book.confidence == 0.9

    def test_matches_book_by_author(self, matcher, collections):
        matches = matcher.match_entities("anything else by james clear?", collections)
        assert [b.id for b in matches["books"]] == ["b1"]

    def test_matches_each_collection(self, matcher, collections):
        message = "Website redesign is slow, my python is rusty and I want to run a marathon"
        matches = matcher.match_entities(message, collections)

        assert [p.id for p in matches["projects"]] == ["p1"]
        assert [s.id for s in matches["skills"]] == ["s1"]
        assert [g.id for g in matches["goals"]] == ["g1"]

    def test_empty_names_never_match(self, matcher):
        collections = DomainCollections(projects=[{"id": "p1", "title": ""}])
        assert matcher.match_entities("anything", collections)["projects"] == []

    def test_detects_finish_reading_intent(self, matcher):
        suggestions = matcher.detect_intents("I finished reading Atomic habits")

        assert "finish_reading" in suggestions
        assert suggestions["finish_reading"].text == "Atomic habits"
        assert suggestions["finish_reading"].confidence == 0.8

    def test_detects_create_task_intent(self, matcher):
        suggestions = matcher.detect_intents("I need to call the bank today. Then relax")
        assert suggestions["create_task"].text == "call the bank today"

    def test_no_intents_in_plain_message(self, matcher):
        assert matcher.detect_intents("Hello there") == {}

    def test_skill_serializes_with_name(self, matcher, collections):
        matches = matcher.match_entities("python", collections)
        data = matches["skills"][0].to_dict()
        assert data["name"] == "Python"
        assert "title" not in data


class TestEntityLinker:
    @pytest.mark.asyncio
    async def test_links_stored_records(self, records):
        records.add_record("user-1", "reading", {"id": "b1", "title": "Atomic Habits", "author": "James Clear"})

        links = await EntityLinker(records).detect_entities("I finished reading Atomic habits", "user-1")

        assert [b.id for b in links.entities["books"]] == ["b1"]
        assert "finish_reading" in links.suggestions

    @pytest.mark.asyncio
    async def test_only_reads_the_users_records(self, records):
        records.add_record("user-2", "reading", {"title": "Atomic Habits"})

        links = await EntityLinker(records).detect_entities("Atomic Habits", "user-1")

        assert links.entities["books"] == []

    @pytest.mark.asyncio
    async def test_failure_returns_empty_links(self):
        broken = MagicMock()
        broken.get_readings.side_effect = RuntimeError("db gone")

        linker = EntityLinker(broken)
        result = await linker.link("Atomic Habits", "user-1")
        links = await linker.detect_entities("Atomic Habits", "user-1")

        assert not result.success
        assert result.error_code == "ENTITY_LINKING_FAILED"
        assert links.is_empty

    def test_empty_links_serialize(self):
        data = EntityLinks().to_dict()
        assert data == {
            "entities": {"books": [], "projects": [], "goals": [], "skills": []},
            "suggestions": {},
        }
