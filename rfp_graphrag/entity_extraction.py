from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional, Pattern, Tuple

from .exceptions import CollaboratorError
from .llm_output import parse_llm_records
from .models import Entity, EntityType, Relationship


logger = logging.getLogger(__name__)

MAX_FALLBACK_ENTITIES = 25
PATTERN_CONFIDENCE = 0.7
QUOTED_TERM_CONFIDENCE = 0.6
DEFAULT_LLM_CONFIDENCE = 0.8
MAX_EXTRACTION_CHARS = 8000

ENTITY_SYSTEM_PROMPT = (
    "You are an assistant that extracts named entities from RFP and proposal "
    "documents.\n"
    "Return ONLY a valid JSON array in this exact format:\n"
    '[{"name": "Entity Name", "type": "organization", "confidence": 0.95}]\n'
    "Entity types must be one of: person, organization, location, technology, "
    "concept.\n"
    "Cover companies and government bodies, technologies and platforms, "
    "standards and regulations, key concepts and requirements, roles and "
    "locations. Extract 15-30 entities. Do not output any text before or after "
    "the JSON array."
)

RELATIONSHIP_SYSTEM_PROMPT = (
    "You identify relationships between entities found in an RFP document.\n"
    "Return ONLY a valid JSON array in this exact format:\n"
    '[{"source": "entity1", "target": "entity2", "type": "USES", "confidence": 0.8}]\n'
    "Use relationship types such as WORKS_WITH, PART_OF, USES, REQUIRES or "
    "RELATED_TO. Only use entity names from the provided list."
)


_IGNORECASE = re.IGNORECASE

# (pattern, entity type) families for the rule-based fallback, most specific first.
_PATTERN_FAMILIES: List[Tuple[Pattern[str], EntityType]] = [
    (
        re.compile(
            r"\b[A-Z][a-z]+ (?:Corporation|Corp|Company|Co|Inc|Ltd|Limited|LLC|"
            r"Organization|Org|Agency|Department|Ministry|Government|Authority|"
            r"Commission|Board|Council|Institute|Foundation|Association|Society|"
            r"Group|Systems|Solutions|Technologies|Services|Consulting|Partners|"
            r"Holdings)\b"
        ),
        EntityType.ORGANIZATION,
    ),
    (
        re.compile(r"\b(?:Government of|Ministry of|Department of) [A-Z][a-z]+\b"),
        EntityType.ORGANIZATION,
    ),
    (
        re.compile(
            r"\b(?:AWS|Azure|Google Cloud|Microsoft|Oracle|IBM|SAP|Salesforce|"
            r"ServiceNow|Workday|Adobe|Cisco|VMware|Dell|Intel|NVIDIA|Red Hat|"
            r"MongoDB|PostgreSQL|MySQL|Docker|Kubernetes|Jenkins|GitHub|GitLab|"
            r"Jira|Confluence|Slack|Zoom|Office 365|SharePoint|Active Directory)\b",
            _IGNORECASE,
        ),
        EntityType.TECHNOLOGY,
    ),
    (
        re.compile(
            r"\b(?:API|REST|SOAP|GraphQL|JSON|XML|HTTPS?|SSL|TLS|OAuth|SAML|LDAP|"
            r"SQL|NoSQL|database|cloud|platform|software|hardware|network|"
            r"infrastructure|SDK|CRM|ERP|CMS|LMS|ETL|IoT|blockchain|microservices|"
            r"containerization|virtualization|automation|DevOps|CI/CD)\b",
            _IGNORECASE,
        ),
        EntityType.TECHNOLOGY,
    ),
    (
        re.compile(
            r"\b(?:ISO ?\d+|NIST|GDPR|HIPAA|SOX|PCI DSS|FISMA|FedRAMP|SOC \d|"
            r"SSAE \d+|COBIT|ITIL|TOGAF|PMBOK|PRINCE2|Six Sigma|Agile|Scrum|Kanban)\b",
            _IGNORECASE,
        ),
        EntityType.CONCEPT,
    ),
    (
        re.compile(
            r"\b(?:compliance|security|performance|scalability|availability|"
            r"reliability|maintainability|usability|accessibility|"
            r"interoperability|architecture|deployment|testing|validation|"
            r"monitoring|backup|disaster recovery|business continuity|"
            r"risk management|change management|project management)\b",
            _IGNORECASE,
        ),
        EntityType.CONCEPT,
    ),
    (
        re.compile(
            r"\b[A-Z][a-z]+ (?:City|State|Province|Country|Region|District|County|"
            r"Municipality|Territory|Republic|Kingdom|Federation|Union|Emirates|"
            r"Islands)\b"
        ),
        EntityType.LOCATION,
    ),
    (
        re.compile(
            r"\b(?:United States|USA|Canada|United Kingdom|Australia|Germany|"
            r"France|Italy|Spain|Japan|China|India|Brazil|Mexico|South Africa|"
            r"New York|California|Texas|Florida|London|Paris|Tokyo|Sydney|"
            r"Toronto|Mumbai|Delhi|Bangalore|Singapore|Hong Kong)\b",
            _IGNORECASE,
        ),
        EntityType.LOCATION,
    ),
    (
        re.compile(
            r"\b(?:CEO|CTO|CIO|CFO|COO|Vice President|President|Director|"
            r"Project Manager|Manager|Architect|Engineer|Developer|Analyst|"
            r"Consultant|Specialist|Administrator|Coordinator|Supervisor|Officer)\b",
            _IGNORECASE,
        ),
        EntityType.PERSON,
    ),
    # Project names and acronyms.
    (re.compile(r"\b[A-Z][A-Z0-9_-]*[A-Z0-9]\b"), EntityType.CONCEPT),
]

_QUOTED_TERM = re.compile(r'"([^"]+)"')


def extract_entities_by_rules(content: str) -> List[Entity]:
    """
    Deterministic keyword/regex entity extraction.

    Pattern matches get confidence 0.7, quoted terms 0.6 (typed as concept).
    Names are deduplicated case-insensitively and the result is capped at 25.
    """
    entities: List[Entity] = []
    seen = set()

    for pattern, entity_type in _PATTERN_FAMILIES:
        for match in pattern.finditer(content or ""):
            name = match.group(0).strip()
            if len(name) <= 2 or name.lower() in seen:
                continue
            seen.add(name.lower())
            entities.append(Entity(name=name, type=entity_type, confidence=PATTERN_CONFIDENCE))

    for match in _QUOTED_TERM.finditer(content or ""):
        name = match.group(1).strip()
        if len(name) <= 3 or name.lower() in seen:
            continue
        seen.add(name.lower())
        entities.append(
            Entity(name=name, type=EntityType.CONCEPT, confidence=QUOTED_TERM_CONFIDENCE)
        )

    logger.info("Rule-based extraction found %d entities", len(entities))
    return entities[:MAX_FALLBACK_ENTITIES]


def _clamp_confidence(value: Any, default: float) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return default


def _entities_from_records(records: List[Dict[str, Any]]) -> List[Entity]:
    entities: List[Entity] = []
    seen = set()
    for record in records:
        name = str(record.get("name") or "").strip()
        if not name:
            continue
        entity_type = EntityType.coerce(record.get("type"))
        key = (name.lower(), entity_type)
        if key in seen:
            continue
        seen.add(key)
        entities.append(
            Entity(
                name=name,
                type=entity_type,
                confidence=_clamp_confidence(record.get("confidence"), DEFAULT_LLM_CONFIDENCE),
            )
        )
    return entities


class EntityExtractor:
    """
    Entity and relationship extraction backed by an LLM, with a rule-based
    fallback for entities and an empty fallback for relationships.

    ``llm`` only needs a ``complete(prompt, system_prompt=..., max_tokens=...)``
    method; None means rules only.
    """

    def __init__(self, llm: Optional[Any] = None, max_chars: int = MAX_EXTRACTION_CHARS):
        self.llm = llm
        self.max_chars = max_chars

    def extract_entities(self, text: str) -> List[Entity]:
        content = (text or "")[: self.max_chars]
        if not content.strip():
            return []
        if self.llm is None:
            return extract_entities_by_rules(content)

        try:
            response = self.llm.complete(
                f"Text to analyze:\n{content}",
                system_prompt=ENTITY_SYSTEM_PROMPT,
                max_tokens=1024,
            )
        except CollaboratorError as e:
            logger.warning("LLM entity extraction failed, using pattern matching: %s", e)
            return extract_entities_by_rules(content)

        entities = _entities_from_records(parse_llm_records(response, ("name", "type"), "entities"))
        if not entities:
            logger.warning("LLM entity extraction returned nothing usable, using pattern matching")
            return extract_entities_by_rules(content)

        logger.info("LLM extracted %d entities", len(entities))
        return entities

    def extract_relationships(self, entities: List[Entity]) -> List[Relationship]:
        if self.llm is None or len(entities) < 2:
            return []

        by_lower = {e.name.lower(): e.name for e in entities}
        names = json.dumps([e.name for e in entities], ensure_ascii=False)
        try:
            response = self.llm.complete(
                f"Entities: {names}",
                system_prompt=RELATIONSHIP_SYSTEM_PROMPT,
                max_tokens=1024,
            )
        except CollaboratorError as e:
            logger.warning("LLM relationship extraction failed: %s", e)
            return []

        relationships: List[Relationship] = []
        seen = set()
        for record in parse_llm_records(response, ("source", "target"), "relationships"):
            source = by_lower.get(str(record.get("source", "")).strip().lower())
            target = by_lower.get(str(record.get("target", "")).strip().lower())
            if not source or not target or source == target:
                continue
            rel_type = re.sub(r"[^A-Z0-9_]", "_", str(record.get("type") or "RELATED_TO").upper())
            key = (source, target, rel_type)
            if key in seen:
                continue
            seen.add(key)
            relationships.append(
                Relationship(
                    source=source,
                    target=target,
                    type=rel_type or "RELATED_TO",
                    confidence=_clamp_confidence(record.get("confidence"), DEFAULT_LLM_CONFIDENCE),
                )
            )
        logger.info("LLM extracted %d relationships", len(relationships))
        return relationships


__all__ = [
    "ENTITY_SYSTEM_PROMPT",
    "RELATIONSHIP_SYSTEM_PROMPT",
    "EntityExtractor",
    "extract_entities_by_rules",
]
