"""
AIGate - Operation Input Validation

Sanitises operation parameters before any credits are debited.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .prompts import OperationSpec

DIFFICULTIES = ("easy", "medium", "hard")
DEFAULT_DIFFICULTY = "medium"
DEFAULT_LANGUAGE = "python"
MAX_LANGUAGE_LENGTH = 40

SCRIPT_TAG_PATTERN = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
JAVASCRIPT_URL_PATTERN = re.compile(r"javascript:", re.IGNORECASE)
INLINE_HANDLER_PATTERN = re.compile(r"on\w+\s*=", re.IGNORECASE)


@dataclass
class ValidationError:
    """Represents a single validation error."""
    path: str
    message: str
    code: str


@dataclass
class OperationRequest:
    """Sanitised parameters for one operation."""
    source: str
    count: int
    difficulty: str = DEFAULT_DIFFICULTY
    language: str = DEFAULT_LANGUAGE


@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    request: Optional[OperationRequest] = None
    errors: List[ValidationError] = field(default_factory=list)

    def add_error(self, path: str, message: str, code: str = "invalid_input"):
        self.errors.append(ValidationError(path=path, message=message, code=code))
        self.is_valid = False

    @property
    def message(self) -> str:
        return "; ".join(f"{e.path}: {e.message}" for e in self.errors)


def sanitize_text(value: Any, max_length: int) -> str:
    """
    Trim and strip script content from free text.

    Raises:
        ValueError: value is not a string, is empty, or exceeds max_length.
    """
    if not isinstance(value, str):
        raise ValueError("must be a string")
    text = value.strip()
    if not text:
        raise ValueError("cannot be empty")
    if len(text) > max_length:
        raise ValueError(f"exceeds {max_length} characters")

    text = SCRIPT_TAG_PATTERN.sub("", text)
    text = JAVASCRIPT_URL_PATTERN.sub("", text)
    text = INLINE_HANDLER_PATTERN.sub("", text)
    text = text.strip()
    if not text:
        raise ValueError("cannot be empty")
    return text


def validate_params(spec: OperationSpec, params: Dict[str, Any]) -> ValidationResult:
    """Validate raw operation parameters against the operation's spec."""
    result = ValidationResult(is_valid=True)

    source = ""
    try:
        source = sanitize_text(params.get(spec.source_field), spec.max_source_length)
    except ValueError as e:
        result.add_error(spec.source_field, str(e))

    count = 1
    if spec.uses_count:
        raw = params.get("count", spec.default_count)
        if raw is None:
            raw = spec.default_count
        if isinstance(raw, bool):
            result.add_error("count", "must be a number")
        else:
            try:
                count = int(float(raw))
            except (TypeError, ValueError):
                result.add_error("count", "must be a number")
            else:
                if not spec.min_count <= count <= spec.max_count:
                    result.add_error(
                        "count",
                        f"must be between {spec.min_count} and {spec.max_count}",
                    )

    difficulty = str(params.get("difficulty") or DEFAULT_DIFFICULTY).strip().lower()
    if spec.uses_difficulty and difficulty not in DIFFICULTIES:
        result.add_error("difficulty", f"must be one of: {', '.join(DIFFICULTIES)}")

    language = DEFAULT_LANGUAGE
    if params.get("language") is not None:
        try:
            language = sanitize_text(params["language"], MAX_LANGUAGE_LENGTH)
        except ValueError as e:
            result.add_error("language", str(e))

    if result.is_valid:
        result.request = OperationRequest(
            source=source,
            count=count,
            difficulty=difficulty,
            language=language,
        )
    return result
