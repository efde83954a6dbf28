"""Évaluation des critères de maintenance.

Deux formes de critères sont acceptées:

- le sac de champs optionnels (``RuleCriteria``: ``neverWatched``,
  ``maxPlayCount``... + ``operator``), transformé en conditions par
  ``build_conditions``;
- un arbre de groupes AND/OR (``ConditionGroup``) dont les feuilles nomment
  un champ, un opérateur et une valeur, chaque feuille passant par
  ``make_condition``.

Les deux sont compilées en ``CompiledCriteria`` puis évaluées contre un
``MediaItem``. ``FIELDS`` et ``OPERATORS`` sont les seules définitions de la
lecture d'un champ et de la comparaison. Le scan et la prévisualisation
passent tous deux par ``evaluate``.
"""
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from maintainarr.core.errors import CriteriaValidationError
from maintainarr.core.models import MediaItem, utcnow

DURATION_UNITS: Dict[str, timedelta] = {
    "days": timedelta(days=1),
    "months": timedelta(days=30),
    "years": timedelta(days=365),
}

SIZE_UNITS: Dict[str, int] = {
    "MB": 1024 ** 2,
    "GB": 1024 ** 3,
    "TB": 1024 ** 4,
}

QUALITY_RANKS: Dict[str, int] = {"SD": 0, "HD": 1, "FHD": 2, "4K": 3}

# Résolutions Plex -> rang de qualité
QUALITY_ALIASES: Dict[str, str] = {
    "sd": "SD",
    "480": "SD",
    "576": "SD",
    "hd": "HD",
    "720": "HD",
    "fhd": "FHD",
    "1080": "FHD",
    "4k": "4K",
    "2160": "4K",
    "uhd": "4K",
}

_DATETIME = TypeAdapter(datetime)


def normalize_quality(value: Any) -> Optional[str]:
    """Résolution brute ("1080p", "4k", "sd"...) -> clé de rang de qualité."""
    if value is None:
        return None
    key = str(value).strip().lower()
    if key.endswith("p"):
        key = key[:-1]
    return QUALITY_ALIASES.get(key)


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _validation_errors(e: ValidationError) -> List[Dict[str, str]]:
    return [
        {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
        for err in e.errors()
    ]


# --- Validated criteria ---------------------------------------------------


class _CriteriaModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    def to_json(self) -> Dict[str, Any]:
        """Forme stockée dans la colonne ``criteria`` de la règle."""
        return self.model_dump(by_alias=True, exclude_none=True)


class RelativeDuration(_CriteriaModel):
    value: int = Field(ge=1)
    unit: Literal["days", "months", "years"]


class FileSizeThreshold(_CriteriaModel):
    value: float = Field(ge=0)
    unit: Literal["MB", "GB", "TB"]


class RuleCriteria(_CriteriaModel):
    """Critères d'une règle (champs optionnels + combinateur)."""
    never_watched: Optional[bool] = None
    last_watched_before: Optional[RelativeDuration] = None
    max_play_count: Optional[int] = Field(default=None, ge=0)
    added_before: Optional[RelativeDuration] = None
    min_file_size: Optional[FileSizeThreshold] = None
    max_quality: Optional[str] = None
    max_rating: Optional[float] = Field(default=None, ge=0, le=10)
    library_ids: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    operator: Literal["AND", "OR"] = "AND"

    @field_validator("max_quality")
    @classmethod
    def _check_quality(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        normalized = value.strip().upper()
        if normalized not in QUALITY_RANKS:
            raise ValueError(f"must be one of {', '.join(QUALITY_RANKS)}")
        return normalized

    @field_validator("library_ids", "tags")
    @classmethod
    def _drop_blank(cls, values: Optional[List[str]]) -> Optional[List[str]]:
        if values is None:
            return None
        cleaned = [v.strip() for v in values if v and v.strip()]
        return cleaned or None


class ConditionNode(_CriteriaModel):
    """Feuille d'un arbre de critères: champ, opérateur, valeur (+ unité)."""
    type: Literal["condition"] = "condition"
    id: Optional[str] = None
    field: str
    operator: str
    value: Any = None
    value_unit: Optional[Literal["days", "months", "years", "MB", "GB", "TB"]] = None


class ConditionGroup(_CriteriaModel):
    """Groupe AND/OR de conditions ou de sous-groupes."""
    type: Literal["group"] = "group"
    id: Optional[str] = None
    operator: Literal["AND", "OR"] = "AND"
    conditions: List[Annotated[Union[ConditionNode, "ConditionGroup"], Field(discriminator="type")]] = Field(
        min_length=1
    )


ConditionGroup.model_rebuild()

ParsedCriteria = Union[RuleCriteria, ConditionGroup]


def parse_criteria(raw: Union[RuleCriteria, ConditionGroup, Dict[str, Any], None]) -> ParsedCriteria:
    """Valide des critères bruts; CriteriaValidationError s'ils sont mal formés.

    Un dict avec une clé ``type`` est un arbre de conditions, sinon c'est le
    sac de champs optionnels. Les arbres sont aussi vérifiés feuille par
    feuille contre les tables de champs et d'opérateurs.
    """
    if isinstance(raw, (RuleCriteria, ConditionGroup)):
        parsed = raw
    elif raw is None:
        raise CriteriaValidationError("Criteria are required")
    elif not isinstance(raw, dict):
        raise CriteriaValidationError("Criteria must be an object")
    elif "type" in raw:
        if raw.get("type") != "group":
            raise CriteriaValidationError(
                "Criteria tree root must be a group", [{"loc": "type", "msg": "must be 'group'"}]
            )
        parsed = _validate_model(ConditionGroup, raw)
    else:
        parsed = _validate_model(RuleCriteria, raw)

    if isinstance(parsed, ConditionGroup):
        build_tree(parsed)
    return parsed


def _validate_model(model, raw: Dict[str, Any]):
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        errors = _validation_errors(e)
        detail = "; ".join(f"{err['loc']}: {err['msg']}" for err in errors)
        raise CriteriaValidationError(f"Invalid criteria: {detail}", errors) from e


def library_scope(criteria: ParsedCriteria) -> Optional[List[str]]:
    """Bibliothèques auxquelles les critères restreignent forcément le scan.

    Seul un groupe racine AND peut restreindre la lecture du catalogue;
    sinon toutes les bibliothèques sont lues et la condition filtre.
    """
    if isinstance(criteria, RuleCriteria):
        return criteria.library_ids
    if criteria.operator != "AND":
        return None
    for node in criteria.conditions:
        if isinstance(node, ConditionNode) and node.field == "libraryId":
            condition = make_condition(node.field, node.operator, node.value, node.value_unit)
            if condition.operator == "in":
                return list(condition.value)
            if condition.operator == "equals":
                return [condition.value]
    return None


# --- Field and operator tables --------------------------------------------


@dataclass(frozen=True)
class Condition:
    """Une condition atomique, construite uniquement par make_condition."""
    field: str
    operator: str
    value: Any
    unit: Optional[str] = None

    @property
    def expected_value(self) -> Any:
        if self.unit is not None:
            return {"value": self.value, "unit": self.unit}
        if isinstance(self.value, tuple):
            return list(self.value)
        return self.value


@dataclass(frozen=True)
class FieldSpec:
    label: str
    accessor: Callable[[MediaItem], Any]
    kind: str
    operators: Tuple[str, ...]
    # Opérateurs pour lesquels une valeur absente passe (lastWatchedAt: jamais vu = ancien)
    null_passes: Tuple[str, ...] = ()


def _never_watched(item: MediaItem) -> Optional[bool]:
    if item.play_count is None:
        return None
    return item.play_count == 0


NUMBER_OPERATORS = (
    "equals", "notEquals", "greaterThan", "greaterThanOrEqual", "lessThan", "lessThanOrEqual", "between",
)
DATE_OPERATORS = ("olderThan", "newerThan", "before", "after", "between", "null", "notNull")

FIELDS: Dict[str, FieldSpec] = {
    "neverWatched": FieldSpec("Never Watched", _never_watched, "boolean", ("equals", "notEquals")),
    "lastWatchedAt": FieldSpec(
        "Last Watched", lambda item: item.last_watched_at, "date", DATE_OPERATORS, null_passes=("olderThan",),
    ),
    "playCount": FieldSpec("Play Count", lambda item: item.play_count, "number", NUMBER_OPERATORS),
    "addedAt": FieldSpec("Date Added", lambda item: item.added_at, "date", DATE_OPERATORS),
    "fileSize": FieldSpec(
        "File Size", lambda item: item.file_size, "size",
        ("greaterThan", "greaterThanOrEqual", "lessThan", "lessThanOrEqual", "between", "null", "notNull"),
    ),
    "quality": FieldSpec(
        "Quality", lambda item: normalize_quality(item.quality), "quality",
        ("atMostQuality", "equals", "notEquals", "in", "notIn", "null", "notNull"),
    ),
    "rating": FieldSpec("Rating", lambda item: item.rating, "number", NUMBER_OPERATORS + ("null", "notNull")),
    "year": FieldSpec("Year", lambda item: item.year, "number", NUMBER_OPERATORS + ("null", "notNull")),
    "title": FieldSpec(
        "Title", lambda item: item.title, "string",
        ("equals", "notEquals", "contains", "notContains", "startsWith", "regex"),
    ),
    "libraryId": FieldSpec("Library", lambda item: item.library_id, "string", ("equals", "notEquals", "in", "notIn")),
    "tags": FieldSpec(
        "Tags", lambda item: item.tags, "array",
        ("contains", "notContains", "containsAny", "containsAll", "isEmpty", "isNotEmpty"),
    ),
}


def _older_than(actual: datetime, condition: Condition, now: datetime) -> bool:
    threshold = now - condition.value * DURATION_UNITS[condition.unit]
    return _as_naive_utc(actual) < threshold


def _newer_than(actual: datetime, condition: Condition, now: datetime) -> bool:
    threshold = now - condition.value * DURATION_UNITS[condition.unit]
    return _as_naive_utc(actual) > threshold


def _comparable(actual: Any) -> Any:
    if isinstance(actual, datetime):
        return _as_naive_utc(actual)
    return actual


def _between(actual: Any, condition: Condition, now: datetime) -> bool:
    low, high = condition.value
    return low <= _comparable(actual) <= high


def _folded(values) -> set:
    return {str(value).casefold() for value in values}


def _contains(actual: Union[str, List[str]], condition: Condition, now: datetime) -> bool:
    if isinstance(actual, str):
        return condition.value.casefold() in actual.casefold()
    return condition.value.casefold() in _folded(actual)


def _contains_any(actual: List[str], condition: Condition, now: datetime) -> bool:
    return bool(_folded(condition.value) & _folded(actual))


def _contains_all(actual: List[str], condition: Condition, now: datetime) -> bool:
    return _folded(condition.value) <= _folded(actual)


OPERATORS: Dict[str, Callable[[Any, Condition, datetime], bool]] = {
    "equals": lambda actual, condition, now: actual == condition.value,
    "notEquals": lambda actual, condition, now: actual != condition.value,
    "lessThan": lambda actual, condition, now: actual < condition.value,
    "lessThanOrEqual": lambda actual, condition, now: actual <= condition.value,
    "greaterThan": lambda actual, condition, now: actual > condition.value,
    "greaterThanOrEqual": lambda actual, condition, now: actual >= condition.value,
    "between": _between,
    "olderThan": _older_than,
    "newerThan": _newer_than,
    "before": lambda actual, condition, now: _as_naive_utc(actual) < condition.value,
    "after": lambda actual, condition, now: _as_naive_utc(actual) > condition.value,
    "atMostQuality": lambda actual, condition, now: QUALITY_RANKS[actual] <= QUALITY_RANKS[condition.value],
    "in": lambda actual, condition, now: str(actual) in condition.value,
    "notIn": lambda actual, condition, now: str(actual) not in condition.value,
    "contains": _contains,
    "notContains": lambda actual, condition, now: not _contains(actual, condition, now),
    "startsWith": lambda actual, condition, now: actual.casefold().startswith(condition.value.casefold()),
    "regex": lambda actual, condition, now: re.search(condition.value, actual, re.IGNORECASE) is not None,
    "containsAny": _contains_any,
    "containsAll": _contains_all,
    "isEmpty": lambda actual, condition, now: len(actual) == 0,
    "isNotEmpty": lambda actual, condition, now: len(actual) > 0,
    "null": lambda actual, condition, now: actual is None,
    "notNull": lambda actual, condition, now: actual is not None,
}

# Opérateurs sans valeur, évalués même quand le champ est absent
VALUELESS_OPERATORS = ("null", "notNull", "isEmpty", "isNotEmpty")
NULL_CHECKS = ("null", "notNull")
LIST_OPERATORS = ("in", "notIn", "containsAny", "containsAll")
RELATIVE_OPERATORS = ("olderThan", "newerThan")
TEXT_OPERATORS = ("contains", "notContains", "startsWith", "regex")


def field_registry() -> List[Dict[str, Any]]:
    """Champs disponibles, pour l'UI de construction de règles."""
    return [
        {"key": key, "label": spec.label, "type": spec.kind, "operators": list(spec.operators)}
        for key, spec in FIELDS.items()
    ]


# --- Validated construction -----------------------------------------------


# Éléments de liste et motifs texte, quel que soit le champ
_TEXT = FieldSpec("", lambda item: None, "string", ())


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _scalar(spec: FieldSpec, value: Any, unit: Optional[str]) -> Any:
    """Valeur d'un champ, normalisée selon son type. ValueError si invalide."""
    if spec.kind == "boolean":
        if not isinstance(value, bool):
            raise ValueError("must be a boolean")
        return value
    if spec.kind == "number":
        if not _is_number(value):
            raise ValueError("must be a number")
        return value
    if spec.kind == "size":
        if not _is_number(value) or value < 0:
            raise ValueError("must be a non-negative number")
        return int(value * SIZE_UNITS[unit]) if unit else int(value)
    if spec.kind == "date":
        try:
            return _as_naive_utc(_DATETIME.validate_python(value))
        except ValidationError:
            raise ValueError("must be an ISO 8601 date") from None
    if spec.kind == "quality":
        normalized = str(value).strip().upper() if isinstance(value, str) else None
        if normalized not in QUALITY_RANKS:
            raise ValueError(f"must be one of {', '.join(QUALITY_RANKS)}")
        return normalized
    if _is_number(value):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        raise ValueError("must be a non-empty string")
    return value.strip()


def _check_unit(spec: FieldSpec, operator: str, unit: Optional[str]) -> None:
    if operator in RELATIVE_OPERATORS:
        if unit not in DURATION_UNITS:
            raise ValueError(f"unit must be one of {', '.join(DURATION_UNITS)}")
    elif unit is not None and not (spec.kind == "size" and unit in SIZE_UNITS):
        raise ValueError(f"unit {unit} not allowed here")


def _coerce(spec: FieldSpec, operator: str, value: Any, unit: Optional[str]) -> Any:
    if operator in VALUELESS_OPERATORS:
        if value is not None:
            raise ValueError("takes no value")
        return None
    if operator in RELATIVE_OPERATORS:
        if not isinstance(value, int) or isinstance(value, bool) or value < 1:
            raise ValueError("must be an integer >= 1")
        return value
    if operator == "between":
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise ValueError("must be a [min, max] pair")
        low, high = (_scalar(spec, bound, unit) for bound in value)
        if low > high:
            raise ValueError("min must not exceed max")
        return (low, high)
    if operator in LIST_OPERATORS:
        if not isinstance(value, (list, tuple)):
            raise ValueError("must be a list")
        items = tuple(_scalar(spec if spec.kind == "quality" else _TEXT, v, None) for v in value if v != "")
        if not items:
            raise ValueError("must not be empty")
        return items
    if operator in TEXT_OPERATORS:
        text = _scalar(_TEXT, value, None)
        if operator == "regex":
            try:
                re.compile(text)
            except re.error as e:
                raise ValueError(f"invalid regular expression: {e}") from None
        return text
    if operator == "atMostQuality":
        return _scalar(spec, value, None)
    return _scalar(spec, value, unit)


def make_condition(field_key: str, operator: str, value: Any = None, unit: Optional[str] = None,
                   loc: str = "") -> Condition:
    """Construit une condition validée; CriteriaValidationError sinon.

    Une valeur ``fileSize`` avec unité est convertie en octets, les dates en
    UTC naïf. Seules les durées relatives gardent leur unité.
    """
    prefix = f"{loc}." if loc else ""
    spec = FIELDS.get(field_key)
    if spec is None:
        raise CriteriaValidationError(
            f"Unknown field {field_key}", [{"loc": f"{prefix}field", "msg": f"unknown field {field_key}"}]
        )
    if operator not in spec.operators:
        raise CriteriaValidationError(
            f"Operator {operator} not allowed for field {field_key}",
            [{"loc": f"{prefix}operator", "msg": f"must be one of {', '.join(spec.operators)}"}],
        )
    try:
        _check_unit(spec, operator, unit)
        coerced = _coerce(spec, operator, value, unit)
    except ValueError as e:
        raise CriteriaValidationError(
            f"Invalid value for {field_key} {operator}: {e}", [{"loc": f"{prefix}value", "msg": str(e)}]
        ) from None
    return Condition(field_key, operator, coerced, unit if operator in RELATIVE_OPERATORS else None)


def build_conditions(criteria: Union[RuleCriteria, Dict[str, Any]]) -> List[Condition]:
    """Construit la liste des conditions à partir d'un sac de critères."""
    criteria = parse_criteria(criteria)
    if not isinstance(criteria, RuleCriteria):
        raise CriteriaValidationError("Condition trees are built with build_tree")
    conditions: List[Condition] = []

    if criteria.never_watched is not None:
        conditions.append(make_condition("neverWatched", "equals", criteria.never_watched))
    if criteria.last_watched_before is not None:
        conditions.append(make_condition(
            "lastWatchedAt", "olderThan",
            criteria.last_watched_before.value, criteria.last_watched_before.unit,
        ))
    if criteria.max_play_count is not None:
        conditions.append(make_condition("playCount", "lessThanOrEqual", criteria.max_play_count))
    if criteria.added_before is not None:
        conditions.append(make_condition(
            "addedAt", "olderThan",
            criteria.added_before.value, criteria.added_before.unit,
        ))
    if criteria.min_file_size is not None:
        conditions.append(make_condition(
            "fileSize", "greaterThanOrEqual",
            criteria.min_file_size.value, criteria.min_file_size.unit,
        ))
    if criteria.max_quality is not None:
        conditions.append(make_condition("quality", "atMostQuality", criteria.max_quality))
    if criteria.max_rating is not None:
        conditions.append(make_condition("rating", "lessThanOrEqual", criteria.max_rating))
    if criteria.library_ids:
        conditions.append(make_condition("libraryId", "in", criteria.library_ids))
    if criteria.tags:
        conditions.append(make_condition("tags", "containsAny", criteria.tags))
    return conditions


@dataclass(frozen=True)
class CompiledGroup:
    operator: str
    children: Tuple[Union[Condition, "CompiledGroup"], ...]


def build_tree(group: ConditionGroup, loc: str = "") -> CompiledGroup:
    """Compile un groupe validé, chaque feuille passant par make_condition."""
    children: List[Union[Condition, CompiledGroup]] = []
    for index, node in enumerate(group.conditions):
        node_loc = f"{loc}conditions.{index}"
        if isinstance(node, ConditionGroup):
            children.append(build_tree(node, f"{node_loc}."))
        else:
            children.append(make_condition(node.field, node.operator, node.value, node.value_unit, node_loc))
    return CompiledGroup(group.operator, tuple(children))


# --- Evaluation -----------------------------------------------------------


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, tuple):
        return [_jsonable(v) for v in value]
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


@dataclass
class ConditionResult:
    field: str
    field_label: str
    operator: str
    expected_value: Any
    actual_value: Any
    passed: bool
    # Position dans l'arbre ("0.1"), absente pour un sac de critères
    path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "field": self.field,
            "fieldLabel": self.field_label,
            "operator": self.operator,
            "expectedValue": _jsonable(self.expected_value),
            "actualValue": _jsonable(self.actual_value),
            "passed": self.passed,
        }
        if self.path is not None:
            data["path"] = self.path
        return data


@dataclass
class EvaluationResult:
    matches: bool
    operator: str
    condition_results: List[ConditionResult] = field(default_factory=list)


@dataclass(frozen=True)
class CompiledCriteria:
    """Critères validés, prêts à être évalués sur tout un catalogue."""
    root: CompiledGroup
    nested: bool = False

    @classmethod
    def from_criteria(cls, criteria: Union[RuleCriteria, ConditionGroup, Dict[str, Any]]) -> "CompiledCriteria":
        parsed = parse_criteria(criteria)
        if isinstance(parsed, ConditionGroup):
            return cls(build_tree(parsed), nested=True)
        return cls(CompiledGroup(parsed.operator, tuple(build_conditions(parsed))))

    @property
    def operator(self) -> str:
        return self.root.operator

    @property
    def conditions(self) -> Tuple[Condition, ...]:
        return tuple(_leaves(self.root))

    def evaluate(self, item: MediaItem, now: Optional[datetime] = None) -> EvaluationResult:
        now = _as_naive_utc(now) if now is not None else utcnow()
        results: List[ConditionResult] = []
        if not self.root.children:
            # Aucun critère: ne jamais matcher
            matches = False
        else:
            matches = _evaluate_group(item, self.root, now, results, "" if self.nested else None)
        return EvaluationResult(matches=matches, operator=self.operator, condition_results=results)


def _leaves(group: CompiledGroup):
    for child in group.children:
        if isinstance(child, CompiledGroup):
            yield from _leaves(child)
        else:
            yield child


def _evaluate_group(
    item: MediaItem,
    group: CompiledGroup,
    now: datetime,
    results: List[ConditionResult],
    path: Optional[str],
) -> bool:
    # tous les enfants sont évalués pour garder la justification complète
    outcomes = []
    for index, child in enumerate(group.children):
        child_path = None if path is None else f"{path}{index}"
        if isinstance(child, CompiledGroup):
            group_path = None if child_path is None else f"{child_path}."
            outcomes.append(_evaluate_group(item, child, now, results, group_path))
        else:
            result = evaluate_condition(item, child, now)
            result.path = child_path
            results.append(result)
            outcomes.append(result.passed)
    if group.operator == "AND":
        return all(outcomes)
    return any(outcomes)


def evaluate_condition(item: MediaItem, condition: Condition, now: datetime) -> ConditionResult:
    spec = FIELDS[condition.field]
    actual = spec.accessor(item)
    if condition.operator in NULL_CHECKS:
        passed = OPERATORS[condition.operator](actual, condition, now)
    elif actual is None:
        passed = condition.operator in spec.null_passes
    else:
        passed = bool(OPERATORS[condition.operator](actual, condition, now))
    return ConditionResult(
        field=condition.field,
        field_label=spec.label,
        operator=condition.operator,
        expected_value=condition.expected_value,
        actual_value=actual,
        passed=passed,
    )


def evaluate(
    item: MediaItem,
    criteria: Union[CompiledCriteria, RuleCriteria, ConditionGroup, Dict[str, Any]],
    now: Optional[datetime] = None,
) -> EvaluationResult:
    """Évalue un item contre des critères. Pur, sans I/O."""
    if not isinstance(criteria, CompiledCriteria):
        criteria = CompiledCriteria.from_criteria(criteria)
    return criteria.evaluate(item, now)
