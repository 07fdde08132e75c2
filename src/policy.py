import logging
import re
from datetime import datetime, timedelta
from typing import Hashable, Protocol, Sequence, TypeVar

from src.config import DEFAULT_REMOTE
from src.git import GitError, GitRepository, ObjectNotFound, RawReference
from src.models import (
    ZERO_HASH,
    KeepPolicy,
    Limit,
    Operator,
    Reference,
    ReferenceKind,
    ReferencesSelector,
)
from src.utils import true_utcnow

PROTECTED_BRANCHES = ("master", "staging", "production")


class ReferenceResolutionError(GitError):
    def __init__(self, short_name: str, target: str, reason: Exception) -> None:
        self.short_name = short_name
        self.target = target
        super().__init__(f"Reference {short_name}: resolving {target} failed: {reason}")


class Dated(Protocol):
    @property
    def key(self) -> Hashable: ...

    created_at: datetime


T = TypeVar("T", bound=Dated)


def _classify(repository: GitRepository, raw: RawReference) -> Reference:
    if raw.is_tag:
        try:
            head = repository.commit(repository.resolve_revision(raw.target))
        except GitError as err:
            raise ReferenceResolutionError(raw.short_name, raw.target, err) from err
        try:
            created_at = repository.tag(raw.target).tagged_at
        except ObjectNotFound:
            # lightweight tag
            created_at = head.committed_at
        except GitError as err:
            raise ReferenceResolutionError(raw.short_name, raw.target, err) from err
        kind, scan_depth_limit = ReferenceKind.TAG, 1
    else:
        try:
            head = repository.commit(raw.target)
        except GitError as err:
            raise ReferenceResolutionError(raw.short_name, raw.target, err) from err
        created_at = head.committed_at
        kind, scan_depth_limit = ReferenceKind.BRANCH, -1

    return Reference(
        kind=kind,
        name=raw.name,
        short_name=raw.short_name,
        target=raw.target,
        head_commit=head,
        created_at=created_at,
        scan_depth_limit=scan_depth_limit,
    )


def classify_references(
    repository: GitRepository, remote: str = DEFAULT_REMOTE
) -> tuple[list[Reference], list[Reference]]:
    """Split remote branches of `remote` and tags into two lists.

    Local branches, other remotes and references without a target are skipped.
    Any reference that cannot be resolved aborts the whole classification.
    """
    branches: list[Reference] = []
    tags: list[Reference] = []
    for raw in repository.references():
        if not (raw.is_remote or raw.is_tag):
            continue
        if raw.is_remote and not raw.short_name.startswith(f"{remote}/"):
            continue
        if raw.target == ZERO_HASH:
            continue
        reference = _classify(repository, raw)
        if reference.kind == ReferenceKind.TAG:
            tags.append(reference)
        else:
            branches.append(reference)
    return branches, tags


def default_keep_policies() -> list[KeepPolicy]:
    week = timedelta(days=7)
    return [
        KeepPolicy(
            references=ReferencesSelector(tag=re.compile(".*"), limit=Limit(last=10)),
        ),
        KeepPolicy(
            references=ReferencesSelector(
                branch=re.compile(".*"),
                limit=Limit(last=10, in_=week, operator=Operator.AND),
            ),
            images_per_reference=Limit(last=2, in_=week, operator=Operator.AND),
        ),
        # must stay last: its images limit overrides the general branch policy
        KeepPolicy(
            references=ReferencesSelector(
                branch=re.compile(f"^({'|'.join(PROTECTED_BRANCHES)})$")
            ),
            images_per_reference=Limit(last=10),
        ),
    ]


def select_by_pattern(
    references: Sequence[Reference], pattern: re.Pattern
) -> list[Reference]:
    return [ref for ref in references if pattern.search(ref.name_without_remote)]


def filter_by_in(items: Sequence[T], in_: timedelta, now: datetime) -> list[T]:
    return [item for item in items if item.created_at > now - in_]


def filter_by_last(items: Sequence[T], last: int) -> list[T]:
    if last == -1:
        return list(items)
    return sorted(items, key=lambda item: item.created_at, reverse=True)[:last]


def merge_references(accumulated: Sequence[T], selected: Sequence[T]) -> list[T]:
    """Union by key; entries already accumulated are kept as they are."""
    result = list(accumulated)
    seen = {item.key for item in result}
    for item in selected:
        if item.key not in seen:
            seen.add(item.key)
            result.append(item)
    return result


def intersect_references(first: Sequence[T], second: Sequence[T]) -> list[T]:
    keys = {item.key for item in second}
    return [item for item in first if item.key in keys]


def apply_limit(
    items: Sequence[T], limit: Limit | None, now: datetime | None = None
) -> list[T]:
    """Apply a `last`/`in` limit to references or images.

    Without bounds nothing is dropped. With both bounds the two results are
    intersected, or united when the operator is Or.
    """
    if limit is None or limit.is_empty():
        return list(items)
    now = now or true_utcnow()

    by_time = filter_by_in(items, limit.in_, now) if limit.in_ is not None else None
    by_count = filter_by_last(items, limit.last) if limit.last is not None else None

    if by_time is None:
        return by_count  # type: ignore
    if by_count is None:
        return by_time

    if limit.operator == Operator.OR:
        return merge_references(by_count, by_time)
    return intersect_references(by_time, by_count)


def _log_policy_block(policy: KeepPolicy, selected: Sequence[Reference]) -> None:
    names = "\n".join(f"  {ref.short_name}" for ref in selected)
    logging.info(f"Keep policy {policy}: {len(selected)} references\n{names}".rstrip())


def select_references(
    branches: Sequence[Reference],
    tags: Sequence[Reference],
    keep_policies: Sequence[KeepPolicy] | None = None,
    now: datetime | None = None,
) -> list[Reference]:
    """Pick references worth scanning and attach their images limit.

    The first matching policy decides membership and position, the last
    matching policy decides the attached images limit.
    """
    policies = list(keep_policies) if keep_policies else default_keep_policies()
    now = now or true_utcnow()

    result_branches: list[Reference] = []
    result_tags: list[Reference] = []
    images_policies: dict[tuple[str, str, str], Limit | None] = {}

    for policy in policies:
        selector = policy.references
        if selector.kind == ReferenceKind.BRANCH:
            selected = select_by_pattern(branches, selector.pattern)
        else:
            selected = select_by_pattern(tags, selector.pattern)
        selected = apply_limit(selected, selector.limit, now)

        for ref in selected:
            images_policies[ref.key] = policy.images_per_reference

        if selector.kind == ReferenceKind.BRANCH:
            result_branches = merge_references(result_branches, selected)
        else:
            result_tags = merge_references(result_tags, selected)

        _log_policy_block(policy, selected)

    for ref in (*result_branches, *result_tags):
        ref.images_cleanup_keep_policy = images_policies[ref.key]

    result_branches.sort(key=lambda ref: ref.created_at, reverse=True)
    result_tags.sort(key=lambda ref: ref.created_at, reverse=True)
    return result_branches + result_tags


def get_references_to_scan(
    repository: GitRepository,
    keep_policies: Sequence[KeepPolicy] | None = None,
    remote: str = DEFAULT_REMOTE,
    now: datetime | None = None,
) -> list[Reference]:
    branches, tags = classify_references(repository, remote)
    return select_references(branches, tags, keep_policies, now)
