from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from database import DistributionPattern, PatternShare, RoleMapping, get_store
from errors import ConfigurationError, RecordNotFoundError
from roles import (
    ROLE_GROUPS,
    RoleResolver,
    group_bit,
    groups_for_mask,
    mask_label,
    non_empty_masks,
    normalize_group,
    normalize_role,
    trainee_weight,
)

HUNDRED = Decimal("100")


# ---------------------------------------------------------------------------
# Role mappings


def list_role_mappings(session, store_id: int) -> List[RoleMapping]:
    stmt = (
        select(RoleMapping)
        .where(RoleMapping.store_id == store_id)
        .order_by(RoleMapping.created_at.asc(), RoleMapping.id.asc())
    )
    return list(session.scalars(stmt))


def _clean_label(value: Optional[str]) -> Optional[str]:
    label = (value or "").strip()
    return label or None


def _check_label_collisions(mappings: Iterable[RoleMapping], candidate: RoleMapping) -> None:
    for existing in mappings:
        if existing is candidate or existing.id == candidate.id and candidate.id is not None:
            continue
        if existing.role_name == candidate.role_name:
            raise ConfigurationError(f'Standard Role Group "{candidate.role_name}" already exists.')
        for label, kind in (
            (candidate.actual_role_name, "Actual Role Name"),
            (candidate.trainee_role_name, "Trainee Actual Role Name"),
        ):
            if not label:
                continue
            taken = {
                normalize_role(existing.actual_role_name),
                normalize_role(existing.trainee_role_name),
                normalize_role(existing.role_name),
            }
            if normalize_role(label) in taken:
                raise ConfigurationError(f'{kind} "{label}" already exists.')
    # Building the resolver rejects a mapping whose own labels collide.
    RoleResolver([candidate])


def create_role_mapping(
    session,
    store_id: int,
    role_name: str,
    *,
    actual_role_name: Optional[str] = None,
    trainee_role_name: Optional[str] = None,
    trainee_percentage=None,
) -> RoleMapping:
    get_store(session, store_id)
    mapping = RoleMapping(
        store_id=store_id,
        role_name=normalize_group(role_name),
        actual_role_name=_clean_label(actual_role_name),
        trainee_role_name=_clean_label(trainee_role_name),
        trainee_percentage=_clean_trainee_percentage(trainee_percentage),
    )
    _check_label_collisions(list_role_mappings(session, store_id), mapping)
    session.add(mapping)
    session.commit()
    session.refresh(mapping)
    return mapping


def update_role_mapping(session, mapping_id: int, payload: Mapping[str, Any]) -> RoleMapping:
    mapping = session.get(RoleMapping, mapping_id)
    if not mapping:
        raise RecordNotFoundError(f"Role mapping {mapping_id} was not found.")
    new_group = normalize_group(payload.get("role_name", mapping.role_name))
    if new_group != mapping.role_name and mapping.role_name in groups_for_mask(
        pool_mask(session, mapping.store_id)
    ):
        raise ConfigurationError("Cannot rename a role group that is used in Tip Pool Distribution.")
    candidate = RoleMapping(
        store_id=mapping.store_id,
        role_name=new_group,
        actual_role_name=_clean_label(payload.get("actual_role_name", mapping.actual_role_name)),
        trainee_role_name=_clean_label(payload.get("trainee_role_name", mapping.trainee_role_name)),
        trainee_percentage=_clean_trainee_percentage(
            payload.get("trainee_percentage", mapping.trainee_percentage)
        ),
    )
    others = [item for item in list_role_mappings(session, mapping.store_id) if item.id != mapping.id]
    _check_label_collisions(others, candidate)
    mapping.role_name = candidate.role_name
    mapping.actual_role_name = candidate.actual_role_name
    mapping.trainee_role_name = candidate.trainee_role_name
    mapping.trainee_percentage = candidate.trainee_percentage
    session.commit()
    session.refresh(mapping)
    return mapping


def delete_role_mapping(session, mapping_id: int) -> None:
    mapping = session.get(RoleMapping, mapping_id)
    if not mapping:
        raise RecordNotFoundError(f"Role mapping {mapping_id} was not found.")
    if mapping.role_name in groups_for_mask(pool_mask(session, mapping.store_id)):
        raise ConfigurationError("Cannot delete. This role is used in Tip Pool Distribution.")
    session.delete(mapping)
    session.commit()


def _mapped_groups(session, store_id: int) -> List[str]:
    return [mapping.role_name for mapping in list_role_mappings(session, store_id)]


def _clean_trainee_percentage(value) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        percentage = Decimal(str(value))
    except InvalidOperation:
        raise ConfigurationError("Trainee percentage must be a number.")
    trainee_weight(percentage)
    return percentage


# ---------------------------------------------------------------------------
# Distribution patterns


def list_patterns(session, store_id: int) -> List[DistributionPattern]:
    stmt = (
        select(DistributionPattern)
        .options(selectinload(DistributionPattern.shares))
        .where(DistributionPattern.store_id == store_id)
        .order_by(DistributionPattern.mask.asc())
    )
    return list(session.scalars(stmt))


def pool_mask(session, store_id: int) -> int:
    mask = 0
    for pattern in list_patterns(session, store_id):
        mask |= pattern.mask
    return mask


def pattern_table(session, store_id: int) -> Dict[int, Dict[str, Decimal]]:
    """Return ``{mask: {group: percentage}}`` for O(1) lookup by the engine."""
    return {pattern.mask: pattern.percentages() for pattern in list_patterns(session, store_id)}


def default_percentages(mask: int) -> Dict[str, Decimal]:
    """Equal split across present groups; the first group absorbs the remainder."""
    present = groups_for_mask(mask)
    if not present:
        raise ConfigurationError("A distribution pattern needs at least one role group.")
    equal_share = HUNDRED // len(present)
    remainder = HUNDRED - equal_share * len(present)
    return {
        group: equal_share + (remainder if index == 0 else Decimal("0"))
        for index, group in enumerate(present)
    }


def pattern_problems(mask: int, percentages: Mapping[str, Any], pool: int) -> List[str]:
    """Return every reason ``percentages`` is not a valid split for ``mask``."""
    problems: List[str] = []
    label = mask_label(mask)
    if mask <= 0:
        return ["Pattern must contain at least one role group."]
    if mask & pool != mask:
        problems.append(f"Pattern {label} uses role groups outside the tip pool.")
    total = Decimal("0")
    for raw_group, raw_value in percentages.items():
        try:
            group = normalize_group(raw_group)
        except ConfigurationError as exc:
            problems.append(str(exc))
            continue
        try:
            value = Decimal(str(raw_value))
        except InvalidOperation:
            problems.append(f"Pattern {label}: percentage for {group} is not a number.")
            continue
        if value < 0 or value > HUNDRED:
            problems.append(f"Pattern {label}: percentage for {group} must be between 0 and 100.")
        if not mask & group_bit(group):
            if value != 0:
                problems.append(f"Pattern {label}: {group} is not on duty and must be 0%.")
            continue
        total += value
    if total != HUNDRED:
        problems.append(f"Total percentage must be 100% for pattern {label} (got {total}%).")
    return problems


def _write_shares(pattern: DistributionPattern, percentages: Mapping[str, Decimal], pool_groups: List[str]) -> None:
    existing = {share.role_group: share for share in pattern.shares}
    for group in pool_groups:
        value = Decimal(str(percentages.get(group, 0)))
        share = existing.get(group)
        if share is None:
            pattern.shares.append(PatternShare(role_group=group, percentage=value))
        else:
            share.percentage = value
    for group, share in existing.items():
        if group not in pool_groups:
            pattern.shares.remove(share)


def add_pool_group(session, store_id: int, role_group: str) -> List[DistributionPattern]:
    """Add a mapped role group to the tip pool, creating every new pattern with a default split."""
    group = normalize_group(role_group)
    get_store(session, store_id)
    if group not in _mapped_groups(session, store_id):
        raise RecordNotFoundError(f"Role group {group} has no role mapping for store {store_id}.")
    current_pool = pool_mask(session, store_id)
    if current_pool & group_bit(group):
        raise ConfigurationError("Role is already in tip pool")
    new_pool = current_pool | group_bit(group)
    pool_groups = groups_for_mask(new_pool)
    patterns = list_patterns(session, store_id)
    for pattern in patterns:
        _write_shares(pattern, pattern.percentages(), pool_groups)
    existing_masks = {pattern.mask for pattern in patterns}
    for mask in non_empty_masks(new_pool):
        if mask in existing_masks:
            continue
        pattern = DistributionPattern(store_id=store_id, mask=mask)
        _write_shares(pattern, default_percentages(mask), pool_groups)
        session.add(pattern)
    session.commit()
    return list_patterns(session, store_id)


def remove_pool_group(session, store_id: int, role_group: str) -> List[DistributionPattern]:
    group = normalize_group(role_group)
    bit = group_bit(group)
    current_pool = pool_mask(session, store_id)
    if not current_pool & bit:
        raise RecordNotFoundError("Role not found in tip pool")
    remaining_groups = groups_for_mask(current_pool & ~bit)
    for pattern in list_patterns(session, store_id):
        if pattern.mask & bit:
            session.delete(pattern)
        else:
            _write_shares(pattern, pattern.percentages(), remaining_groups)
    session.commit()
    return list_patterns(session, store_id)


def update_pattern_percentages(
    session, store_id: int, updates: Mapping[int, Mapping[str, Any]]
) -> List[DistributionPattern]:
    """Validate every submitted pattern first, then write them together."""
    patterns = {pattern.mask: pattern for pattern in list_patterns(session, store_id)}
    pool = 0
    for mask in patterns:
        pool |= mask
    problems: List[str] = []
    for mask, percentages in updates.items():
        mask = int(mask)
        if mask not in patterns:
            problems.append(f"Pattern {mask_label(mask)} is not configured for this store.")
            continue
        problems.extend(pattern_problems(mask, percentages, pool))
    if problems:
        raise ConfigurationError("; ".join(problems))
    pool_groups = groups_for_mask(pool)
    for mask, percentages in updates.items():
        cleaned = {normalize_group(group): Decimal(str(value)) for group, value in percentages.items()}
        _write_shares(patterns[int(mask)], cleaned, pool_groups)
    session.commit()
    return list_patterns(session, store_id)


def validate_tip_pool(session, store_id: int) -> List[str]:
    """Configuration-time check: exhaustive patterns, each summing to 100."""
    patterns = pattern_table(session, store_id)
    pool = 0
    for mask in patterns:
        pool |= mask
    problems: List[str] = []
    for mask in non_empty_masks(pool):
        if mask not in patterns:
            problems.append(f"Pattern {mask_label(mask)} is missing.")
    for mask, percentages in patterns.items():
        problems.extend(pattern_problems(mask, percentages, pool))
    unmapped = set(groups_for_mask(pool)) - set(_mapped_groups(session, store_id))
    for group in sorted(unmapped, key=ROLE_GROUPS.index):
        problems.append(f"Role group {group} is in the tip pool but has no role mapping.")
    return problems


def serialize_tip_pool(session, store_id: int) -> List[Dict[str, Any]]:
    return [
        {
            "id": pattern.id,
            "mask": pattern.mask,
            "label": mask_label(pattern.mask),
            "groups": groups_for_mask(pattern.mask),
            "percentages": {group: str(value) for group, value in pattern.percentages().items()},
        }
        for pattern in list_patterns(session, store_id)
    ]
