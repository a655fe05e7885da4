"""
Questionnaire flattening.

The questionnaire tree is walked depth first with an explicit accumulator so
child questions always follow the question (and answer) that unlocks them.
Markup questions and questions without a variable or text are skipped, along
with their subtree.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from dataexport.registry.loader import (
    ANSWER_TYPE_MARKUP,
    ANSWER_TYPE_MULTIPLE,
    Question,
)


@dataclass
class FlatQuestion:
    variable: str
    text: str
    answer_type: Optional[str]
    multi_answer: bool
    answer_labels: Dict[str, str] = field(default_factory=dict)
    children: List["FlatQuestion"] = field(default_factory=list)

    @property
    def is_multiple_choice(self) -> bool:
        return self.answer_type == ANSWER_TYPE_MULTIPLE

    @property
    def answers_counter(self) -> str:
        return f"answers:{self.variable}"

    @property
    def selections_counter(self) -> str:
        return f"selections:{self.variable}"


@dataclass
class QuestionnaireLayout:
    flat: List[FlatQuestion] = field(default_factory=list)
    roots: List[FlatQuestion] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.flat)

    def tokens(self) -> List[str]:
        """Every label token the questionnaire can render."""
        tokens = []
        for question in self.flat:
            tokens.append(question.text)
            tokens.extend(label for label in question.answer_labels.values() if label)
        return tokens


def flatten_questionnaire(questions: Iterable[Question]) -> QuestionnaireLayout:
    layout = QuestionnaireLayout()
    for question in questions or []:
        _add_question(layout.flat, layout.roots, question, None)
    return layout


def _add_question(
    flat: List[FlatQuestion],
    siblings: List[FlatQuestion],
    question: Question,
    inherited_multi_answer: Optional[bool],
) -> None:
    if not question.text or not question.variable or question.answer_type == ANSWER_TYPE_MARKUP:
        return

    node = FlatQuestion(
        variable=question.variable,
        text=question.text,
        answer_type=question.answer_type,
        multi_answer=(
            question.multi_answer if inherited_multi_answer is None else inherited_multi_answer
        ),
    )
    flat.append(node)
    siblings.append(node)

    for answer in question.answers:
        node.answer_labels[answer.value] = answer.label
        for child in answer.additional_questions:
            _add_question(flat, node.children, child, node.multi_answer)


def count_answers(answers: Any, variable: str) -> int:
    """Number of answer entries recorded for one variable."""
    if not isinstance(answers, dict):
        return 0
    entries = answers.get(variable)
    return len(entries) if isinstance(entries, list) else 0


def count_selections(answers: Any, variable: str) -> int:
    """Largest number of simultaneous selections across a variable's answers."""
    if not isinstance(answers, dict) or not isinstance(answers.get(variable), list):
        return 0
    return max(
        (
            len(entry["value"])
            for entry in answers[variable]
            if isinstance(entry, dict) and isinstance(entry.get("value"), list)
        ),
        default=0,
    )


def as_day(value: Any) -> Optional[date]:
    """Calendar day of an answer date (ISO string, date or datetime)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
        except ValueError:
            return None
    return None


def find_answer_for_day(entries: Any, day: Any) -> Optional[dict]:
    """First answer entry recorded on the same day as ``day``."""
    target = as_day(day)
    if target is None or not isinstance(entries, list):
        return None
    for entry in entries:
        if isinstance(entry, dict) and entry.get("date") and as_day(entry["date"]) == target:
            return entry
    return None
