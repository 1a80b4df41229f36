"""Merge validated and hydrated identifiers into fetchable dataset targets."""

from collections.abc import Iterable, Mapping

from ..core.models import (
    CONTAINER_FALLBACK_DATASETS,
    LEAF_DATASETS,
    HydratedNode,
    ResolvedTarget,
    UnresolvedIdentifier,
    UnresolvedReason,
    ValidationOutcome,
    ValidationStatus,
)
from ..utils.log import get_logger
from .validator import MALFORMED

log = get_logger(__name__)


def _unresolved_reason(outcome: ValidationOutcome) -> UnresolvedReason:
    if outcome.status == ValidationStatus.UNREACHABLE:
        return UnresolvedReason.UNREACHABLE
    if outcome.detail == MALFORMED:
        return UnresolvedReason.INVALID_FORMAT
    return UnresolvedReason.VALIDATION_FAILED


class _TargetSet:
    """Targets keyed by (dataset kind, id); the first proposal for a pair is kept."""

    def __init__(self) -> None:
        self._by_id: dict[tuple[str, str], ResolvedTarget] = {}

    def propose(self, target: ResolvedTarget, source: str) -> None:
        pair = (str(target.dataset_kind), target.id)
        existing = self._by_id.get(pair)
        if existing is None:
            self._by_id[pair] = target
            return
        if (existing.format, existing.options) != (target.format, target.options):
            log.warning(
                "target_option_conflict",
                target=target.specifier,
                kept_format=existing.format,
                kept_options=existing.options,
                rejected_format=target.format,
                rejected_options=target.options,
                source=source,
            )

    def sorted(self) -> list[ResolvedTarget]:
        return sorted(self._by_id.values(), key=lambda t: t.key)


def resolve(
    validation: Mapping[str, ValidationOutcome],
    hydrated: Iterable[HydratedNode],
    failed_branches: Mapping[str, str] | None = None,
) -> tuple[list[ResolvedTarget], list[UnresolvedIdentifier]]:
    """Classify every validated identifier as contributing to a target or unresolved.

    Valid leaves become targets directly. Valid containers contribute through
    the leaves hydrated beneath them; a container none of whose descendants
    resolves falls back to its own dataset kind where one exists, otherwise it
    is unresolved with ``no_known_hydration_path``.

    Returns:
        Targets sorted by key, and unresolved identifiers in validation order.
    """
    failed_branches = failed_branches or {}
    children: dict[str, list[str]] = {}
    for node in hydrated:
        children.setdefault(node.parent.key, []).append(node.child.key)

    memo: dict[str, bool] = {}

    def reaches_leaf(key: str, path: frozenset[str]) -> bool:
        if key in memo:
            return memo[key]
        outcome = validation.get(key)
        if outcome is None or not outcome.is_valid:
            return False
        if outcome.identifier.kind in LEAF_DATASETS:
            return True
        found = any(
            reaches_leaf(child, path | {key}) for child in children.get(key, []) if child not in path
        )
        memo[key] = found
        return found

    targets = _TargetSet()
    unresolved: list[UnresolvedIdentifier] = []
    for key, outcome in validation.items():
        ref = outcome.identifier
        if not outcome.is_valid:
            unresolved.append(
                UnresolvedIdentifier(identifier=ref, reason=_unresolved_reason(outcome), detail=outcome.detail)
            )
            continue

        dataset_kind = LEAF_DATASETS.get(ref.kind)
        if dataset_kind is not None:
            targets.propose(ResolvedTarget.for_kind(dataset_kind, ref.value), source=key)
            continue

        if any(reaches_leaf(child, frozenset({key})) for child in children.get(key, [])):
            continue

        fallback = CONTAINER_FALLBACK_DATASETS.get(ref.kind)
        if fallback is not None:
            targets.propose(ResolvedTarget.for_kind(fallback, ref.value), source=key)
            continue

        detail = failed_branches.get(key)
        unresolved.append(
            UnresolvedIdentifier(
                identifier=ref,
                reason=UnresolvedReason.NO_KNOWN_HYDRATION_PATH,
                detail=f"hydration failed: {detail}" if detail else "no members found",
            )
        )

    resolved = targets.sorted()
    log.info("targets_resolved", resolved=len(resolved), unresolved=len(unresolved))
    return resolved, unresolved
