"""
AIGate - Operation Prompts

Per-operation input shape, function schema and message templates. Every
operation asks the model for structured output through a single function.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Mapping

from ..core.models import ChatMessage, FunctionSpec, Operation, Role


@dataclass(frozen=True)
class OperationSpec:
    """
    How one operation is requested and validated.

    source_field names the free-text parameter (a topic or a document);
    count bounds apply to the number of generated items.
    """
    operation: Operation
    function: FunctionSpec
    result_key: str
    instructions: str
    source_field: str = "topic"
    max_source_length: int = 200
    min_count: int = 1
    max_count: int = 50
    default_count: int = 10
    uses_difficulty: bool = True
    uses_count: bool = True


def _array_of(item: Dict[str, Any], key: str) -> Dict[str, Any]:
    required = list(item["properties"])
    return {
        "type": "object",
        "properties": {
            key: {
                "type": "array",
                "items": {**item, "required": required},
            },
        },
        "required": [key],
    }


_STRING = {"type": "string"}
_STRINGS = {"type": "array", "items": {"type": "string"}}

_MCQ_ITEM = {
    "type": "object",
    "properties": {
        "question": _STRING,
        "options": _STRINGS,
        "correct_answer": _STRING,
        "explanation": _STRING,
    },
}

_BLANK_ITEM = {
    "type": "object",
    "properties": {
        "question": _STRING,
        "answer": _STRING,
        "hint": _STRING,
    },
}


OPERATION_SPECS: Mapping[Operation, OperationSpec] = MappingProxyType({
    Operation.QUIZ_MCQ: OperationSpec(
        operation=Operation.QUIZ_MCQ,
        function=FunctionSpec(
            "create_mcq_quiz",
            "Create multiple choice questions",
            _array_of(_MCQ_ITEM, "questions"),
        ),
        result_key="questions",
        instructions=(
            "Write {count} {difficulty} multiple choice questions about {source}. "
            "Each question has four options and exactly one correct answer."
        ),
    ),
    Operation.QUIZ_BLANKS: OperationSpec(
        operation=Operation.QUIZ_BLANKS,
        function=FunctionSpec(
            "create_blanks_quiz",
            "Create fill-in-the-blank questions",
            _array_of(_BLANK_ITEM, "questions"),
        ),
        result_key="questions",
        instructions=(
            "Write {count} {difficulty} fill-in-the-blank sentences about {source}. "
            "Mark the blank with ________ and give the missing word as the answer."
        ),
        max_count=30,
    ),
    Operation.QUIZ_OPENENDED: OperationSpec(
        operation=Operation.QUIZ_OPENENDED,
        function=FunctionSpec(
            "create_openended_quiz",
            "Create open-ended questions",
            _array_of({
                "type": "object",
                "properties": {
                    "question": _STRING,
                    "model_answer": _STRING,
                    "keywords": _STRINGS,
                },
            }, "questions"),
        ),
        result_key="questions",
        instructions=(
            "Write {count} {difficulty} open-ended questions about {source} "
            "with a model answer and the keywords a good answer mentions."
        ),
        max_count=20,
    ),
    Operation.QUIZ_CODE: OperationSpec(
        operation=Operation.QUIZ_CODE,
        function=FunctionSpec(
            "create_code_quiz",
            "Create programming questions",
            _array_of({
                "type": "object",
                "properties": {
                    "question": _STRING,
                    "code_snippet": _STRING,
                    "options": _STRINGS,
                    "correct_answer": _STRING,
                },
            }, "questions"),
        ),
        result_key="questions",
        instructions=(
            "Write {count} {difficulty} {language} programming questions about "
            "{source}. Each includes a short code snippet."
        ),
        max_count=20,
    ),
    Operation.QUIZ_VIDEO: OperationSpec(
        operation=Operation.QUIZ_VIDEO,
        function=FunctionSpec(
            "create_video_quiz",
            "Create questions from a video transcript",
            _array_of(_MCQ_ITEM, "questions"),
        ),
        result_key="questions",
        instructions=(
            "Write {count} {difficulty} multiple choice questions that test "
            "understanding of this transcript:\n\n{source}"
        ),
        source_field="transcript",
        max_source_length=20000,
        max_count=20,
        default_count=5,
    ),
    Operation.QUIZ_FLASHCARD: OperationSpec(
        operation=Operation.QUIZ_FLASHCARD,
        function=FunctionSpec(
            "create_flashcards",
            "Create study flashcards",
            _array_of({
                "type": "object",
                "properties": {"front": _STRING, "back": _STRING},
            }, "flashcards"),
        ),
        result_key="flashcards",
        instructions="Write {count} {difficulty} flashcards about {source}.",
    ),
    Operation.QUIZ_ORDERING: OperationSpec(
        operation=Operation.QUIZ_ORDERING,
        function=FunctionSpec(
            "create_ordering_quiz",
            "Create step-ordering questions",
            _array_of({
                "type": "object",
                "properties": {"question": _STRING, "steps": _STRINGS},
            }, "questions"),
        ),
        result_key="questions",
        instructions=(
            "Write {count} {difficulty} ordering questions about {source}. "
            "List the steps of each in their correct order."
        ),
        max_count=20,
        default_count=5,
    ),
    Operation.COURSE_CREATION: OperationSpec(
        operation=Operation.COURSE_CREATION,
        function=FunctionSpec(
            "create_course",
            "Create a course outline",
            _array_of({
                "type": "object",
                "properties": {"title": _STRING, "chapters": _STRINGS},
            }, "units"),
        ),
        result_key="units",
        instructions=(
            "Outline a course on {source} with {count} chapters in total, "
            "grouped into units."
        ),
        max_count=100,
        default_count=10,
        uses_difficulty=False,
    ),
    Operation.CONTENT_CREATION: OperationSpec(
        operation=Operation.CONTENT_CREATION,
        function=FunctionSpec(
            "create_content",
            "Write study content",
            {
                "type": "object",
                "properties": {
                    "title": _STRING,
                    "body": _STRING,
                    "key_points": _STRINGS,
                },
                "required": ["title", "body", "key_points"],
            },
        ),
        result_key="",
        instructions="Write {difficulty} study notes about {source}.",
        max_source_length=1000,
        uses_count=False,
    ),
    Operation.DOCUMENT_QUIZ: OperationSpec(
        operation=Operation.DOCUMENT_QUIZ,
        function=FunctionSpec(
            "create_document_quiz",
            "Create fill-in-the-blank questions from a document",
            _array_of(_BLANK_ITEM, "questions"),
        ),
        result_key="questions",
        instructions=(
            "Write {count} {difficulty} fill-in-the-blank questions taken from "
            "this document:\n\n{source}"
        ),
        source_field="text",
        max_source_length=20000,
        max_count=30,
    ),
})

BASIC_SYSTEM_PROMPT = (
    "You are an educational content generator. Respond only by calling the "
    "provided function with accurate, concise material."
)

PREMIUM_SYSTEM_PROMPT = (
    "You are an expert instructional designer. Respond only by calling the "
    "provided function. Prefer questions that test understanding over recall "
    "and keep explanations precise."
)


def build_messages(
    spec: OperationSpec,
    source: str,
    count: int,
    difficulty: str,
    language: str = "python",
    premium: bool = False,
) -> List[ChatMessage]:
    return [
        ChatMessage(Role.SYSTEM, PREMIUM_SYSTEM_PROMPT if premium else BASIC_SYSTEM_PROMPT),
        ChatMessage(
            Role.USER,
            spec.instructions.format(
                source=source,
                count=count,
                difficulty=difficulty,
                language=language,
            ),
        ),
    ]
