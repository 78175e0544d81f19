from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from fractions import Fraction
from typing import Dict, Iterable, List, Optional, Tuple

from errors import ConfigurationError


# Bit positions are part of the stored pattern ids; append only.
ROLE_GROUPS: Tuple[str, ...] = ("FRONT", "BACK", "FLOATER")
ROLE_GROUP_BITS: Dict[str, int] = {group: 1 << index for index, group in enumerate(ROLE_GROUPS)}
ALL_GROUPS_MASK = (1 << len(ROLE_GROUPS)) - 1


def normalize_role(role: Optional[str]) -> str:
    return (role or "").strip().casefold()


def normalize_group(group: Optional[str]) -> str:
    label = (group or "").strip().upper()
    if label not in ROLE_GROUP_BITS:
        raise ConfigurationError(
            f"Unknown role group '{group}'. Expected one of: {', '.join(ROLE_GROUPS)}."
        )
    return label


def group_bit(group: str) -> int:
    return ROLE_GROUP_BITS[normalize_group(group)]


def pattern_mask(groups: Iterable[str]) -> int:
    mask = 0
    for group in groups:
        mask |= group_bit(group)
    return mask


def groups_for_mask(mask: int) -> List[str]:
    """Return the role groups encoded in ``mask`` in canonical order."""
    return [group for group in ROLE_GROUPS if mask & ROLE_GROUP_BITS[group]]


def mask_label(mask: int) -> str:
    groups = groups_for_mask(mask)
    return "+".join(groups) if groups else "(none)"


def non_empty_masks(pool_mask: int) -> List[int]:
    """Every non-empty sub-combination of ``pool_mask``, ascending."""
    return [mask for mask in range(1, ALL_GROUPS_MASK + 1) if mask & pool_mask == mask]


@dataclass(frozen=True)
class RoleAssignment:
    group: str
    is_trainee: bool
    weight: Fraction


class RoleResolver:
    """Explicit lookup table from imported role labels to standard role groups.

    The standard group name, the mapping's actual label and its trainee label
    all resolve. Anything else is unmapped and the caller must report it.
    """

    def __init__(self, mappings: Iterable) -> None:
        self._table: Dict[str, RoleAssignment] = {}
        for mapping in mappings:
            group = normalize_group(mapping.role_name)
            full = RoleAssignment(group=group, is_trainee=False, weight=Fraction(1))
            self._register(group, full)
            if mapping.actual_role_name:
                self._register(mapping.actual_role_name, full)
            if mapping.trainee_role_name:
                self._register(
                    mapping.trainee_role_name,
                    RoleAssignment(
                        group=group,
                        is_trainee=True,
                        weight=trainee_weight(mapping.trainee_percentage),
                    ),
                )

    def _register(self, label: str, assignment: RoleAssignment) -> None:
        key = normalize_role(label)
        existing = self._table.get(key)
        if existing is not None and existing != assignment:
            raise ConfigurationError(f"Role label '{label}' is mapped more than once.")
        self._table[key] = assignment

    def resolve(self, label: Optional[str]) -> Optional[RoleAssignment]:
        return self._table.get(normalize_role(label))


def trainee_weight(percentage) -> Fraction:
    if percentage is None:
        return Fraction(1)
    value = Fraction(Decimal(str(percentage)))
    if value < 0 or value > 100:
        raise ConfigurationError("Trainee percentage must be between 0 and 100.")
    return value / 100
