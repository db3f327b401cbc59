"""Concept categorization for raw observations.

The concept label is the question of an observation and decides the record
type; the value is the answer. For conditions the label is the diagnosis name
and the value is the treatment text, which is how the source schema records
diagnoses.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from passport_sync.config import settings
from passport_sync.exceptions import ClassificationAmbiguous
from passport_sync.services.sync.types import (
    ClassifiedObservation,
    RawObservation,
    RecordType,
)

logger = logging.getLogger("passport_sync.categorizer")

NO_VALUE = "No value recorded"
UNKNOWN_DOCTOR = "Unknown Doctor"
UNKNOWN_LOCATION = "Unknown Location"


@dataclass(frozen=True)
class ConceptRule:
    record_type: RecordType
    keywords: tuple[str, ...]

    def matches(self, label: str) -> bool:
        return any(keyword in label for keyword in self.keywords)


DEFAULT_RULES: tuple[ConceptRule, ...] = (
    ConceptRule(RecordType.visit, ("VISIT", "ENCOUNTER", "ADMISSION")),
    ConceptRule(RecordType.test, ("LAB", "TEST", "INVESTIGATION", "RESULT")),
    ConceptRule(RecordType.medication, ("MEDICATION", "DRUG")),
    ConceptRule(RecordType.condition, ("DIAGNOSIS", "CONDITION")),
)


def build_rules(
    overrides: Mapping[str, Iterable[str]] | None = None,
    base: tuple[ConceptRule, ...] = DEFAULT_RULES,
) -> tuple[ConceptRule, ...]:
    """Append configured keywords to each rule without changing rule order."""
    if not overrides:
        return base
    rules = []
    for rule in base:
        extra = tuple(
            keyword.strip().upper()
            for keyword in overrides.get(rule.record_type.value, ())
            if keyword and keyword.strip()
        )
        rules.append(ConceptRule(rule.record_type, rule.keywords + extra))
    return tuple(rules)


def clean_doctor_name(name: str | None) -> str:
    value = " ".join((name or "").split())
    if value.lower().startswith("dr. "):
        value = value[4:].strip()
    return value or UNKNOWN_DOCTOR


def extract_value(raw: RawObservation) -> tuple[str, str]:
    """Return ``(normalized_value, value_type)`` preferring coded, text, numeric."""
    if raw.coded_value is not None and str(raw.coded_value).strip():
        return str(raw.coded_value).strip(), "coded"
    if raw.text_value is not None and str(raw.text_value).strip():
        return str(raw.text_value).strip(), "text"
    if raw.numeric_value is not None:
        number = float(raw.numeric_value)
        text = str(int(number)) if number.is_integer() else str(number)
        return text, "numeric"
    return NO_VALUE, "text"


class ConceptCategorizer:
    """Classify observations with an ordered keyword rule table."""

    def __init__(self, rules: tuple[ConceptRule, ...] | None = None):
        if rules is None:
            rules = build_rules(settings.concept_keyword_overrides)
        self.rules = rules

    def classify_label(self, concept_label: str) -> RecordType:
        label = (concept_label or "").upper()
        for rule in self.rules:
            if rule.matches(label):
                return rule.record_type
        raise ClassificationAmbiguous(concept_label)

    def categorize(self, raw: RawObservation) -> ClassifiedObservation:
        try:
            record_type = self.classify_label(raw.concept_label)
        except ClassificationAmbiguous:
            logger.debug(
                "No concept rule matched '%s'; defaulting to condition",
                raw.concept_label,
            )
            record_type = RecordType.condition

        value, value_type = extract_value(raw)
        return ClassifiedObservation(
            raw=raw,
            record_type=record_type,
            normalized_value=value,
            value_type=value_type,
            provider_name=clean_doctor_name(raw.provider_name or raw.creator_name),
            location_name=(raw.location_name or "").strip() or UNKNOWN_LOCATION,
        )


def categorize(raw: RawObservation) -> ClassifiedObservation:
    """Classify with the default rule table plus configured overrides."""
    return ConceptCategorizer().categorize(raw)
