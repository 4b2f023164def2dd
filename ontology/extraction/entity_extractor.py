"""
Entity Extractor - rule-based entity recognition
=================================================

Finds known entities, technology terms, ISO dates, relative time
expressions and phase/version markers in free text. No models, no
network: every match comes from a dictionary or a regular expression.

Usage:
    from ontology.extraction import EntityExtractor

    extractor = EntityExtractor()
    extractor.add_known_entity("acme", name="Acme Corp", entity_type="organization")
    for entity in extractor.extract("Acme moved to PostgreSQL on 2024-03-01"):
        print(entity.name, entity.entity_type)
"""

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

TECH_PATTERN = r"\b(?:Python|JavaScript|TypeScript|React|PostgreSQL|SQLite|Docker|Kubernetes|AWS|API|ML|AI)\b"
DATE_PATTERN = r"\b(\d{4}-\d{2}-\d{2})\b"
TIME_PATTERN = r"\b(today|yesterday|tomorrow|last week|next week|this month|last month)\b"
PHASE_PATTERN = r"\b(phase\s*\d+|version\s*[\d.]*\d|v\d[\d.]*)\b"


def normalize_name(name: str) -> str:
    return re.sub(r"\s+", "-", name.strip().lower())


@dataclass
class ExtractedEntity:
    name: str
    entity_type: str
    normalized_name: str
    confidence: float
    start_char: int = 0
    end_char: int = 0
    context: str = ""

    @property
    def entity_id(self) -> str:
        return f"{self.entity_type}-{self.normalized_name}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ExtractorConfig:
    known_entities: dict[str, dict[str, str]] = field(default_factory=dict)
    extract_tech_terms: bool = True
    context_window: int = 40
    max_entities_per_text: int = 50


class EntityExtractor:
    """Rules-only extractor; results are unique by (type, normalized name)."""

    def __init__(self, config: ExtractorConfig | None = None):
        self.config = config or ExtractorConfig()
        self._known: dict[str, dict[str, str]] = {}
        for pattern, entity in self.config.known_entities.items():
            self.add_known_entity(pattern, **entity)

    def add_known_entity(
        self,
        pattern: str,
        name: str | None = None,
        entity_type: str = "concept",
        normalized_name: str | None = None,
    ) -> None:
        """Register a phrase that always maps to the given entity."""
        name = name or pattern
        self._known[pattern.lower()] = {
            "name": name,
            "entity_type": entity_type,
            "normalized_name": normalized_name or normalize_name(name),
        }

    @property
    def known_entities(self) -> dict[str, dict[str, str]]:
        return dict(self._known)

    def extract(self, text: str) -> list[ExtractedEntity]:
        if not text:
            return []

        entities: list[ExtractedEntity] = []

        for pattern, entity in self._known.items():
            for m in re.finditer(rf"\b{re.escape(pattern)}\b", text, re.IGNORECASE):
                entities.append(self._make(m, text, entity["name"], entity["entity_type"],
                                           entity["normalized_name"], confidence=1.0))

        if self.config.extract_tech_terms:
            for m in re.finditer(TECH_PATTERN, text, re.IGNORECASE):
                entities.append(self._make(m, text, m.group(), "technology",
                                           normalize_name(m.group()), confidence=0.7))

        for m in re.finditer(DATE_PATTERN, text):
            entities.append(self._make(m, text, m.group(1), "time", m.group(1), confidence=0.9))

        for m in re.finditer(TIME_PATTERN, text, re.IGNORECASE):
            entities.append(self._make(m, text, m.group(1), "time",
                                       normalize_name(m.group(1)), confidence=0.8))

        for m in re.finditer(PHASE_PATTERN, text, re.IGNORECASE):
            entities.append(self._make(m, text, m.group(1), "event",
                                       normalize_name(m.group(1)), confidence=0.8))

        return self._deduplicate(entities)[: self.config.max_entities_per_text]

    def _make(self, match: re.Match, text: str, name: str, entity_type: str,
              normalized_name: str, confidence: float) -> ExtractedEntity:
        start, end = match.span()
        window = self.config.context_window
        context = re.sub(r"\s+", " ", text[max(0, start - window): end + window]).strip()
        return ExtractedEntity(
            name=name,
            entity_type=entity_type,
            normalized_name=normalized_name,
            confidence=confidence,
            start_char=start,
            end_char=end,
            context=context,
        )

    def _deduplicate(self, entities: list[ExtractedEntity]) -> list[ExtractedEntity]:
        seen: dict[tuple[str, str], ExtractedEntity] = {}
        for ent in entities:
            key = (ent.entity_type, ent.normalized_name)
            if key not in seen or ent.confidence > seen[key].confidence:
                seen[key] = ent
        return sorted(seen.values(), key=lambda e: e.start_char)
