"""Narrative helpers: key insights, recommended programs, basic message."""
from __future__ import annotations

from .corpus import CurrentMember, StaffMember
from .pipelines.normalization import IntakeAnswers, MatchingProfile
from .vocabulary import LabelSet, Vocabulary


def _apply_labels(labels: LabelSet, interests: set[str], traits: set[str] | None = None) -> list[str]:
    result = list(labels.base)
    for rule in labels.rules:
        if rule.applies(interests, traits) and rule.label not in result:
            result.append(rule.label)
    return result[:labels.limit]


def key_insights(answers: IntakeAnswers, vocabulary: Vocabulary) -> list[str]:
    """Insight labels driven by the family's raw interests."""
    return _apply_labels(vocabulary.key_insights, set(answers.interests))


def recommended_programs(answers: IntakeAnswers, profile: MatchingProfile, vocabulary: Vocabulary) -> list[str]:
    """Program labels driven by raw interests and extracted traits."""
    return _apply_labels(vocabulary.recommended_programs, set(answers.interests), set(profile.traits))


def basic_message(
    answers: IntakeAnswers,
    student: CurrentMember | None,
    staff: StaffMember | None,
    institution: str,
) -> str:
    """Template message used whenever no generated message is available."""
    description = answers.description or "your child"
    student_name = student.first_name if student and student.first_name else "our students"
    staff_name = staff.salutation if staff else "our faculty"
    return (
        f'Based on "{description}", we think {student_name} and {staff_name} would be wonderful '
        f"connections for your family to explore at {institution}. We'd love to arrange a visit "
        "where you can meet them and see our campus firsthand."
    )
