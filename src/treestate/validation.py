"""
Validation findings and built-in field checks.

Findings are values, never exceptions. They come from two places:

- @error_check methods, run by the resolver after dependency resolution
  (results collected in ResolvedDependencies.validation)
- field checks attached with ``xs_field(checks=[...])``, run by validate()

    @dataclass
    class Sample(Serializable):
        name: str = xs_field(default="", checks=[ErrorIfBlank()])
        count: int = xs_field(default=0, checks=[ErrorIfNegative(Severity.WARNING)])
"""

import logging
import re
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class Severity(Enum):
    """How severe a finding is. ERROR is the most severe."""
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def level(self) -> int:
        """0 for ERROR, 1 for WARNING, 2 for INFO (lower is more severe)."""
        return _LEVELS[self]

    @staticmethod
    def combine(a: Optional['Severity'], b: Optional['Severity']) -> Optional['Severity']:
        """The more severe of a and b; None means no finding."""
        if a is None:
            return b
        if b is None:
            return a
        return a if a.level <= b.level else b


_LEVELS = {Severity.ERROR: 0, Severity.WARNING: 1, Severity.INFO: 2}


@dataclass(frozen=True)
class ValidationResult:
    severity: Severity
    message: str
    field: Optional[str] = None
    source: Optional[str] = None  # check or provider name

    def __str__(self) -> str:
        where = f"{self.field}: " if self.field else ""
        return f"[{self.severity.name}] {where}{self.message}"


def worst_severity(results: Iterable[ValidationResult]) -> Optional[Severity]:
    worst = None
    for result in results:
        worst = Severity.combine(worst, result.severity)
    return worst


def normalize_findings(result: Any, field: Optional[str], source: Optional[str]) -> List[ValidationResult]:
    """
    Flatten what an @error_check method returned.

    Accepts None, a ValidationResult, a message string (reported as ERROR),
    or an iterable of those. Results without a field get the method's
    declared field.

    Raises:
        TypeError: for any other return value
    """
    if result is None:
        return []
    if isinstance(result, ValidationResult):
        if result.field is None and field is not None:
            result = replace(result, field=field)
        if result.source is None:
            result = replace(result, source=source)
        return [result]
    if isinstance(result, str):
        return [ValidationResult(Severity.ERROR, result, field, source)]
    try:
        items = iter(result)
    except TypeError:
        raise TypeError(f"error check {source} returned {type(result).__name__}") from None
    findings: List[ValidationResult] = []
    for item in items:
        findings.extend(normalize_findings(item, field, source))
    return findings


# =============================================================================
# FIELD CHECKS
# =============================================================================

def _elements(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == '')


@dataclass(frozen=True)
class FieldCheck:
    """Base class of checks attached to a field."""
    severity: Severity = Severity.ERROR

    def findings(self, field_name: str, value: Any) -> List[ValidationResult]:
        """Findings for one field value (the whole collection for collection fields)."""
        messages = []
        for element in _elements(value):
            message = self.check_element(element)
            if message is not None:
                messages.append(message)
        return [ValidationResult(self.severity, m, field_name, type(self).__name__) for m in messages]

    def check_element(self, value: Any) -> Optional[str]:
        return None


@dataclass(frozen=True)
class ErrorIfBlank(FieldCheck):
    """None or a blank string is a finding; for collections, any blank element is."""

    def findings(self, field_name: str, value: Any) -> List[ValidationResult]:
        if value is None:
            return [ValidationResult(self.severity, "must not be blank", field_name, type(self).__name__)]
        return super().findings(field_name, value)

    def check_element(self, value: Any) -> Optional[str]:
        return "must not be blank" if _is_blank(value) else None


@dataclass(frozen=True)
class ErrorIfEmptyCollection(FieldCheck):

    def findings(self, field_name: str, value: Any) -> List[ValidationResult]:
        if not value:
            return [ValidationResult(self.severity, "must not be empty", field_name, type(self).__name__)]
        return []


@dataclass(frozen=True)
class ErrorIfNegative(FieldCheck):

    def check_element(self, value: Any) -> Optional[str]:
        if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool) and value < 0:
            return f"{value} is negative"
        return None


@dataclass(frozen=True)
class ErrorIfNotNumber(FieldCheck):
    """
    Text that is not a number is a finding. Blank is not.

    Args:
        integer: Require an integer
        minimum, maximum: Inclusive bounds, if given
    """
    integer: bool = False
    minimum: Optional[float] = None
    maximum: Optional[float] = None

    def check_element(self, value: Any) -> Optional[str]:
        if _is_blank(value):
            return None
        try:
            number = Decimal(str(value).strip())
        except InvalidOperation:
            return f"'{value}' is not a number"
        if not number.is_finite():
            return f"'{value}' is not a number"
        if self.integer and number != number.to_integral_value():
            return f"'{value}' is not an integer"
        if self.minimum is not None and number < Decimal(str(self.minimum)):
            return f"{value} is less than {self.minimum}"
        if self.maximum is not None and number > Decimal(str(self.maximum)):
            return f"{value} is greater than {self.maximum}"
        return None


@dataclass(frozen=True)
class ErrorIfNotRegex(FieldCheck):
    """Text not fully matching pattern is a finding. Blank is not."""
    pattern: str = ".*"

    def check_element(self, value: Any) -> Optional[str]:
        if _is_blank(value):
            return None
        if re.fullmatch(self.pattern, str(value)) is None:
            return f"'{value}' does not match {self.pattern}"
        return None


@dataclass(frozen=True)
class ErrorIfNotUniqueInObject(FieldCheck):
    """
    Values must be unique among the fields of one object sharing the same key.

    An empty key means the field itself, so for a collection field every
    element must be distinct.
    """
    key: str = ""


@dataclass(frozen=True)
class ErrorIfNotUniqueInParent(FieldCheck):
    """
    Values must be unique across the siblings of this object (all structured
    values held by its parent) sharing the same key.
    """
    key: str = ""


_UNIQUENESS_CHECKS = (ErrorIfNotUniqueInObject, ErrorIfNotUniqueInParent)


def _duplicates(
    entries: List[Tuple[str, str, Any, FieldCheck]],
) -> List[Tuple[str, ValidationResult]]:
    """entries: (location, field, value, check) -> (location, finding) per repeated value."""
    counts: Dict[Any, int] = {}
    for _, _, value, _ in entries:
        if not _is_blank(value):
            counts[value] = counts.get(value, 0) + 1
    findings = []
    for location, field_name, value, check in entries:
        if not _is_blank(value) and counts[value] > 1:
            findings.append((location, ValidationResult(
                check.severity, f"'{value}' is not unique", field_name, type(check).__name__,
            )))
    return findings


# =============================================================================
# AGGREGATION
# =============================================================================

def field_findings(obj: Any, schema) -> List[ValidationResult]:
    """Run the built-in checks declared on obj's fields."""
    results: List[ValidationResult] = []
    unique_groups: Dict[str, List[Tuple[str, str, Any, FieldCheck]]] = {}
    for fd in schema.fields:
        if not fd.checks:
            continue
        value = getattr(obj, fd.name, None)
        for check in fd.checks:
            if isinstance(check, ErrorIfNotUniqueInObject):
                group = unique_groups.setdefault(check.key or fd.name, [])
                group.extend(("", fd.name, element, check) for element in _elements(value))
            elif not isinstance(check, _UNIQUENESS_CHECKS):
                results.extend(check.findings(fd.name, value))
    for entries in unique_groups.values():
        results.extend(finding for _, finding in _duplicates(entries))
    return results


def validate(resolved) -> List[ValidationResult]:
    """
    All findings for one resolved object: field checks, then @error_check results.

    Args:
        resolved: ResolvedDependencies of the object
    """
    results = field_findings(resolved.obj, resolved.schema) + list(resolved.validation)
    if results:
        logger.debug(f"{resolved.schema.cls.__qualname__}: {len(results)} finding(s), worst {worst_severity(results)}")
    return results


def validate_tree(node) -> Dict[str, List[ValidationResult]]:
    """
    Findings for every object of a resolved tree, keyed by node path.

    Args:
        node: Root ResolvedNode

    Returns:
        Mapping of path -> findings, for paths with at least one finding
    """
    report: Dict[str, List[ValidationResult]] = {}
    for current in node.iter():
        results = validate(current.resolved)
        if results:
            report.setdefault(current.path, []).extend(results)

        # Uniqueness among the structured children of this node
        groups: Dict[str, List[Tuple[str, str, Any, FieldCheck]]] = {}
        for child in current.children:
            for fd in child.resolved.schema.fields:
                for check in fd.checks:
                    if isinstance(check, ErrorIfNotUniqueInParent):
                        value = getattr(child.obj, fd.name, None)
                        groups.setdefault(check.key or fd.name, []).extend(
                            (child.path, fd.name, element, check) for element in _elements(value)
                        )
        for entries in groups.values():
            for location, finding in _duplicates(entries):
                report.setdefault(location, []).append(finding)
    return report
