"""Input validation for individuals, marriages and relationships.

Each ``validate_*`` function returns a ``ValidationResult`` rather than
raising, so callers decide how to surface the reasons. Field-level checks
come from the pydantic input models; cross-field and date rules are applied
afterwards against the merged record.
"""

import logging
from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from models import Individual, Record

logger = logging.getLogger("familytree.validation")

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

MAX_AGE_YEARS = 120
MIN_PARENT_AGE = 10
MAX_PARENT_AGE = 80


# ============================================================================
# Input Models
# ============================================================================

class InputModel(BaseModel):
    """Accepts camelCase (API) or snake_case (internal) keys."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )


class IndividualInput(InputModel):
    """A person record as submitted by a client."""
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    middle_name: str | None = Field(default=None, max_length=100)
    photo_url: str | None = Field(default=None, max_length=2048)
    birth_date: date | None = None
    death_date: date | None = None
    birth_place: str | None = Field(default=None, max_length=255)
    death_place: str | None = Field(default=None, max_length=255)
    is_living: bool = True
    gender: Literal["male", "female", "other", "unknown"] | None = None
    email: str | None = Field(default=None, max_length=255, pattern=EMAIL_PATTERN)
    phone: str | None = Field(default=None, max_length=50)
    address: str | None = None
    notes: str | None = Field(default=None, max_length=1000)
    privacy_level: int = Field(default=1, ge=1, le=3)


class MarriageInput(InputModel):
    spouse1_id: int = Field(gt=0)
    spouse2_id: int = Field(gt=0)
    marriage_date: date | None = None
    marriage_place: str | None = Field(default=None, max_length=255)
    divorce_date: date | None = None
    divorce_place: str | None = Field(default=None, max_length=255)
    is_active: bool = True
    notes: str | None = Field(default=None, max_length=1000)


class ParentChildInput(InputModel):
    parent_id: int = Field(gt=0)
    child_id: int = Field(gt=0)
    relationship_type: Literal["biological", "adopted", "step", "foster"] = "biological"
    is_primary: bool = True
    notes: str | None = Field(default=None, max_length=1000)


class EventInput(InputModel):
    event_type: str = Field(min_length=1, max_length=100)
    event_date: date | None = None
    event_place: str | None = Field(default=None, max_length=255)
    description: str | None = None
    notes: str | None = None


class SourceInput(InputModel):
    title: str = Field(min_length=1, max_length=255)
    author: str | None = Field(default=None, max_length=255)
    publication: str | None = Field(default=None, max_length=255)
    publication_date: date | None = None
    url: str | None = None
    notes: str | None = None
    source_type: Literal["document", "photo", "video", "audio", "website"] = "document"


class CitationInput(InputModel):
    source_id: int = Field(gt=0)
    citation: str | None = None
    page_number: str | None = Field(default=None, max_length=50)
    notes: str | None = None


class MediaInput(InputModel):
    title: str = Field(min_length=1, max_length=255)
    file_url: str = Field(min_length=1)
    file_type: Literal["image", "video", "audio", "document"]
    individual_id: int | None = Field(default=None, gt=0)
    description: str | None = None
    file_size: int | None = Field(default=None, ge=0)
    notes: str | None = None


class MediaLinkInput(InputModel):
    media_id: int = Field(gt=0)
    relationship: Literal["subject", "related", "mentioned"] = "subject"
    notes: str | None = None


class ValidationResult(BaseModel):
    """Outcome of validating one input record."""
    valid: bool
    errors: list[str] = []
    warnings: list[str] = []
    data: dict[str, Any] | None = None  # snake_case values ready for storage


# ============================================================================
# Helpers
# ============================================================================

def _field_names(model: type[InputModel], data: dict[str, Any]) -> set[str]:
    """Map the supplied keys (either spelling) onto model field names."""
    names = set()
    for name in model.model_fields:
        if name in data or to_camel(name) in data:
            names.add(name)
    return names


def _format_errors(exc: ValidationError) -> list[str]:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        messages.append(f"{location}: {error['msg']}" if location else error["msg"])
    return messages


def _parse(
    model: type[InputModel], data: dict[str, Any], existing: Record | None = None
) -> tuple[InputModel | None, list[str], set[str] | None]:
    """
    Validate ``data`` against ``model``.

    With ``existing`` the input is a partial update: it is merged over the
    stored record so cross-field rules see the full picture, and only the
    supplied fields are returned for writing.
    """
    supplied = None
    payload = dict(data)
    if existing is not None:
        supplied = _field_names(model, data)
        payload = {**existing.to_dict(), **data}
        # The stored spelling would shadow a snake_case key in the patch
        for name in supplied:
            if name in data and to_camel(name) != name:
                payload.pop(to_camel(name), None)
    try:
        return model.model_validate(payload), [], supplied
    except ValidationError as exc:
        return None, _format_errors(exc), supplied


def _result(
    instance: InputModel | None,
    errors: list[str],
    warnings: list[str],
    supplied: set[str] | None,
    kind: str,
) -> ValidationResult:
    if errors:
        logger.warning(f"Rejected {kind}: {errors}")
        return ValidationResult(valid=False, errors=errors, warnings=warnings)
    data = instance.model_dump(mode="json", include=supplied)
    return ValidationResult(valid=True, warnings=warnings, data=data)


def _stored_date(value: str | None) -> date | None:
    """Parse an ISO date read back from storage; anything else counts as unknown."""
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def _years_between(start: date, end: date) -> int:
    years = end.year - start.year
    if (end.month, end.day) < (start.month, start.day):
        years -= 1
    return years


# ============================================================================
# Validators
# ============================================================================

def validate_individual(data: dict[str, Any], existing: Individual | None = None) -> ValidationResult:
    """Validate a new individual, or a partial update of ``existing``."""
    instance, errors, supplied = _parse(IndividualInput, data, existing)
    warnings: list[str] = []

    if instance is not None:
        today = date.today()
        birth, death = instance.birth_date, instance.death_date

        if birth and death:
            if death <= birth:
                errors.append("Death date must be after birth date")
            elif _years_between(birth, death) > MAX_AGE_YEARS:
                warnings.append(
                    f"Age at death ({_years_between(birth, death)}) exceeds {MAX_AGE_YEARS} years"
                )
        if birth and birth > today:
            errors.append("Birth date cannot be in the future")
        if death and death > today:
            errors.append("Death date cannot be in the future")
        if death and instance.is_living:
            errors.append("Deceased person cannot be marked as living")

    return _result(instance, errors, warnings, supplied, "individual")


def validate_marriage(data: dict[str, Any], existing: Record | None = None) -> ValidationResult:
    """Validate a new marriage, or a partial update of ``existing``."""
    instance, errors, supplied = _parse(MarriageInput, data, existing)

    if instance is not None:
        today = date.today()
        if instance.spouse1_id == instance.spouse2_id:
            errors.append("A person cannot marry themselves")
        married, divorced = instance.marriage_date, instance.divorce_date
        if married and divorced and divorced <= married:
            errors.append("Divorce date must be after marriage date")
        if married and married > today:
            errors.append("Marriage date cannot be in the future")
        if divorced and divorced > today:
            errors.append("Divorce date cannot be in the future")

    return _result(instance, errors, [], supplied, "marriage")


def validate_parent_child(
    data: dict[str, Any],
    parent: Individual | None = None,
    child: Individual | None = None,
    existing: Record | None = None,
) -> ValidationResult:
    """
    Validate a parent-child relationship.

    When the parent and child records are supplied their birth dates are
    compared: a parent born after the child, or younger than
    ``MIN_PARENT_AGE``, is an error; older than ``MAX_PARENT_AGE`` a warning.
    """
    instance, errors, supplied = _parse(ParentChildInput, data, existing)
    warnings: list[str] = []

    if instance is not None:
        if instance.parent_id == instance.child_id:
            errors.append("A person cannot be their own parent")

        parent_birth = _stored_date(parent.birth_date) if parent else None
        child_birth = _stored_date(child.birth_date) if child else None
        if parent_birth and child_birth:
            if child_birth <= parent_birth:
                errors.append("Parent must be born before the child")
            else:
                parent_age = _years_between(parent_birth, child_birth)
                if parent_age < MIN_PARENT_AGE:
                    errors.append(
                        f"Parent age at child's birth ({parent_age}) is too young (< {MIN_PARENT_AGE})"
                    )
                elif parent_age > MAX_PARENT_AGE:
                    warnings.append(
                        f"Parent age at child's birth ({parent_age}) exceeds {MAX_PARENT_AGE} years"
                    )

    return _result(instance, errors, warnings, supplied, "relationship")


def validate_record(
    model: type[InputModel], data: dict[str, Any], existing: Record | None = None
) -> ValidationResult:
    """Field-level validation only (events, sources, media, citations)."""
    instance, errors, supplied = _parse(model, data, existing)
    return _result(instance, errors, [], supplied, model.__name__)
