"""
Role Quorum Validator — decides whether a ring membership map is legal.

Two schemes are supported and the caller always names the one to apply:

- ``legacy``: roles are a subset of {owner, architect, member}. The ring must
  cover all three roles in one of three quorum shapes, so that no single
  removal can leave owner, architect or member duties unassigned.
- ``simplified``: each member holds ``admin`` or ``member`` and at least one
  member is an admin.

The validator is pure: it never touches storage and never raises for bad
input, it reports it through :class:`ValidationResult`.
"""
from collections.abc import Mapping
from typing import Any, Callable, Union

from .models import (
    LEGACY_ROLES,
    SIMPLIFIED_ROLES,
    RoleScheme,
    ValidationResult,
    coerce_roles,
)

EMPTY_RING_REASON = "Ring must have at least one member."
LEGACY_COVERAGE_REASON = (
    "Ring must have at least one owner, one architect, and one member."
)
LEGACY_QUORUM_REASON = (
    "Ring must have: (1) one person with all 3 roles, OR (2) two people with "
    "2 roles each + one person with 1 role covering all roles, OR (3) three "
    "people each with one role (owner, architect, member)."
)
SIMPLIFIED_ADMIN_REASON = "Ring must have at least one admin."


def _normalize(membership: Mapping[str, Any]) -> dict[str, list[str]]:
    normalized: dict[str, list[str]] = {}
    for identifier, spec in membership.items():
        # accept {"role": ..} / {"roles": ..} shapes and Member models
        if isinstance(spec, Mapping):
            spec = spec.get("roles", spec.get("role"))
        elif hasattr(spec, "roles"):
            spec = spec.roles
        normalized[str(identifier).strip().lower()] = coerce_roles(spec)
    return normalized


def _check_vocabulary(
    membership: dict[str, list[str]], allowed: frozenset
) -> Union[ValidationResult, None]:
    for identifier, roles in membership.items():
        if not roles:
            return ValidationResult(
                valid=False, reason=f"Member {identifier} has no role assigned."
            )
        unknown = [r for r in roles if r not in allowed]
        if unknown:
            return ValidationResult(
                valid=False,
                reason=(
                    f"Invalid role(s) {', '.join(sorted(unknown))} for "
                    f"{identifier}. Valid roles are: {', '.join(sorted(allowed))}"
                ),
            )
    return None


def validate_legacy(membership: dict[str, list[str]]) -> ValidationResult:
    """Validate an owner/architect/member ring."""
    invalid = _check_vocabulary(membership, LEGACY_ROLES)
    if invalid is not None:
        return invalid

    covered = set()
    for roles in membership.values():
        covered.update(roles)
    if not LEGACY_ROLES <= covered:
        return ValidationResult(valid=False, reason=LEGACY_COVERAGE_REASON)

    # (1) one person holds every role
    if any(LEGACY_ROLES <= set(roles) for roles in membership.values()):
        return ValidationResult(valid=True)

    multi = [set(roles) for roles in membership.values() if len(roles) >= 2]
    single = [set(roles) for roles in membership.values() if len(roles) == 1]

    # (2) two or more multi-role people covering everything, plus a
    # single-role person. Any two distinct 2-role sets already cover all
    # three roles, so checking the union of every multi-role member is the
    # same as asking whether some subset of them qualifies.
    if len(multi) >= 2 and len(single) >= 1:
        if LEGACY_ROLES <= set().union(*multi):
            return ValidationResult(valid=True)

    # (3) three or more single-role people covering everything
    if len(single) >= 3 and LEGACY_ROLES <= set().union(*single):
        return ValidationResult(valid=True)

    return ValidationResult(valid=False, reason=LEGACY_QUORUM_REASON)


def validate_simplified(membership: dict[str, list[str]]) -> ValidationResult:
    """Validate an admin/member ring."""
    invalid = _check_vocabulary(membership, SIMPLIFIED_ROLES)
    if invalid is not None:
        return invalid
    for identifier, roles in membership.items():
        if len(roles) != 1:
            return ValidationResult(
                valid=False,
                reason=f"Member {identifier} must hold exactly one role.",
            )
    if not any(roles[0] == "admin" for roles in membership.values()):
        return ValidationResult(valid=False, reason=SIMPLIFIED_ADMIN_REASON)
    return ValidationResult(valid=True)


_VALIDATORS: dict[RoleScheme, Callable[[dict[str, list[str]]], ValidationResult]] = {
    RoleScheme.LEGACY: validate_legacy,
    RoleScheme.SIMPLIFIED: validate_simplified,
}


def validate_ring_roles(
    membership: Mapping[str, Any],
    scheme: Union[RoleScheme, str] = RoleScheme.SIMPLIFIED,
) -> ValidationResult:
    """Check a proposed membership map against the scheme's quorum rules.

    Args:
        membership: Mapping of identifier to a role string, a list of roles,
            or a ``{"role": ...}`` / ``{"roles": [...]}`` mapping.
        scheme: Role scheme recorded on the ring.

    Returns:
        ValidationResult with ``valid`` and, when invalid, a readable reason.
    """
    try:
        scheme = RoleScheme(scheme)
    except ValueError:
        return ValidationResult(valid=False, reason=f"Unknown role scheme: {scheme}")
    if not membership:
        return ValidationResult(valid=False, reason=EMPTY_RING_REASON)
    return _VALIDATORS[scheme](_normalize(membership))
